import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        bank_api_url: str,
        oauth_authorize_url: str,
        oauth_token_url: str,
        client_id: str,
        client_secret: str,
        fin_inst: str,
        redirect_uri: str,
        state_secret: str,
        http_timeout_secs: float,
        sync_lookback_days: int,
        sync_row_limit: int,
        account_numbers: list[str],
        keyword_table_path: Optional[str],
        collapse_hour: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.bank_api_url = bank_api_url
        self.oauth_authorize_url = oauth_authorize_url
        self.oauth_token_url = oauth_token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.fin_inst = fin_inst
        self.redirect_uri = redirect_uri
        self.state_secret = state_secret
        self.http_timeout_secs = http_timeout_secs
        self.sync_lookback_days = sync_lookback_days
        self.sync_row_limit = sync_row_limit
        self.account_numbers = account_numbers
        self.keyword_table_path = keyword_table_path
        self.collapse_hour = collapse_hour


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETSYNC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgetsync.db"
    database_url = os.getenv("BUDGETSYNC_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETSYNC_TIMEZONE", "Europe/Oslo")
    bank_api_url = os.getenv(
        "BUDGETSYNC_BANK_API_URL", "https://api.sparebank1.no/personal/banking"
    )
    oauth_authorize_url = os.getenv(
        "BUDGETSYNC_OAUTH_AUTHORIZE_URL", "https://api.sparebank1.no/oauth/authorize"
    )
    oauth_token_url = os.getenv(
        "BUDGETSYNC_OAUTH_TOKEN_URL", "https://api.sparebank1.no/oauth/token"
    )
    state_secret = os.getenv(
        "BUDGETSYNC_STATE_SECRET",
        "5d0c3f1e9a7b4c2d8e6f0a1b3c5d7e9f2a4b6c8d0e1f3a5b7c9d1e3f5a7b9c1d",
    )
    keyword_table_path = os.getenv("BUDGETSYNC_KEYWORD_TABLE") or None
    return Settings(
        database_url=database_url,
        timezone=timezone,
        bank_api_url=bank_api_url,
        oauth_authorize_url=oauth_authorize_url,
        oauth_token_url=oauth_token_url,
        client_id=os.getenv("BUDGETSYNC_CLIENT_ID", ""),
        client_secret=os.getenv("BUDGETSYNC_CLIENT_SECRET", ""),
        fin_inst=os.getenv("BUDGETSYNC_FIN_INST", "fid-smn"),
        redirect_uri=os.getenv("BUDGETSYNC_REDIRECT_URI", ""),
        state_secret=state_secret,
        http_timeout_secs=float(os.getenv("BUDGETSYNC_HTTP_TIMEOUT_SECS", "30")),
        sync_lookback_days=int(os.getenv("BUDGETSYNC_SYNC_LOOKBACK_DAYS", "90")),
        sync_row_limit=int(os.getenv("BUDGETSYNC_SYNC_ROW_LIMIT", "1000")),
        account_numbers=_split_list(os.getenv("BUDGETSYNC_ACCOUNT_NUMBERS", "")),
        keyword_table_path=keyword_table_path,
        collapse_hour=int(os.getenv("BUDGETSYNC_COLLAPSE_HOUR", "3")),
    )
