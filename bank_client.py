import logging
from datetime import date
from typing import Any, Optional, Sequence

import httpx

from config import get_settings
from models import TransactionSource

logger = logging.getLogger(__name__)

VENDOR_ACCEPT = "application/vnd.sparebank1.v1+json; charset=utf-8"


class BankApiError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BankAuthError(BankApiError):
    pass


class BankRateLimitError(BankApiError):
    def __init__(self, message: str, retry_after: Optional[str] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class BankClient:
    """Thin wrapper over the bank's REST API; returns payloads as delivered."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self._client = httpx.Client(
            base_url=base_url or settings.bank_api_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": VENDOR_ACCEPT,
            },
            timeout=timeout if timeout is not None else settings.http_timeout_secs,
            transport=transport,
        )

    def __enter__(self) -> "BankClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = self._client.get(path, params=params)
        except httpx.TransportError as exc:
            raise BankApiError(f"Bank API unreachable: {exc}") from exc

        logger.info(f"bank_api: GET {path} status={response.status_code}")
        if response.status_code in (401, 403):
            raise BankAuthError(
                "Bank API rejected the access token", status_code=response.status_code
            )
        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            logger.warning(f"bank_api_rate_limited: path={path} retry_after={retry_after}")
            raise BankRateLimitError(
                "Bank API rate limit exceeded", retry_after=retry_after
            )
        if response.is_error:
            raise BankApiError(
                f"Bank API error {response.status_code} on {path}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BankApiError(f"Bank API returned invalid JSON on {path}") from exc

    def get_accounts(self) -> list[dict[str, Any]]:
        data = self._get("/accounts")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("accounts"), list):
            return data["accounts"]
        raise BankApiError("Unexpected accounts response from bank API")

    def get_transactions(
        self,
        account_keys: Sequence[str],
        *,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        row_limit: Optional[int] = None,
        source: TransactionSource = TransactionSource.all,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"source": source.value}
        if account_keys:
            params["accountKey"] = list(account_keys)
        if from_date:
            params["fromDate"] = from_date.isoformat()
        if to_date:
            params["toDate"] = to_date.isoformat()
        if row_limit:
            params["rowLimit"] = row_limit

        data = self._get("/transactions", params=params)
        if isinstance(data, list):
            # one block per account
            rows: list[dict[str, Any]] = []
            for block in data:
                if isinstance(block, dict) and isinstance(
                    block.get("transactions"), list
                ):
                    rows.extend(block["transactions"])
            return rows
        if isinstance(data, dict) and isinstance(data.get("transactions"), list):
            return data["transactions"]
        return []
