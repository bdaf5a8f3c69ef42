from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import BookingStatus, TransactionSource


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BankAccountIn(CamelModel):
    """Account payload as returned by the bank's ``/accounts`` endpoint."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    key: str = Field(..., min_length=1)
    account_number: Optional[str] = None
    iban: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    balance: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    currency_code: Optional[str] = None
    type: Optional[str] = None
    product_type: Optional[str] = None
    product_id: Optional[str] = None
    description_code: Optional[str] = None
    disposal_role: Optional[str] = None
    owner: Optional[Any] = None
    account_properties: Optional[Any] = None


class BankTransactionIn(CamelModel):
    """Transaction payload as returned by the bank's ``/transactions`` endpoint.

    ``id`` is the provider's own identifier and is not unique across fetches;
    duplicate detection uses ``(amount, date, description)`` instead.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    non_unique_id: Optional[str] = None
    description: Optional[str] = None
    cleaned_description: Optional[str] = None
    remote_account_number: Optional[str] = None
    remote_account_name: Optional[str] = None
    amount: Decimal = Field(..., max_digits=15)
    date: int
    type_code: Optional[str] = None
    currency_code: Optional[str] = None
    can_show_details: Optional[bool] = None
    source: Optional[TransactionSource] = None
    is_confidential: Optional[bool] = None
    booking_status: Optional[BookingStatus] = None
    account_name: Optional[str] = None
    account_key: str = Field(..., min_length=1)
    account_currency: Optional[str] = None
    is_from_currency_account: Optional[bool] = None
    kid_or_message: Optional[str] = None
    account_number: Optional[Any] = None
    classification_input: Optional[Any] = None
    merchant: Optional[Any] = None


class SyncRequest(CamelModel):
    access_token: str = Field(..., min_length=1)
    user_email: str = Field(..., min_length=1, max_length=255)
    expires_at: Optional[datetime] = None
    force: bool = False


class CleanupRequest(CamelModel):
    user_email: str = Field(..., min_length=1, max_length=255)


class BudgetIn(CamelModel):
    user_email: str = Field(..., min_length=1, max_length=255)
    category_id: int
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    budgeted_amount: Decimal = Field(..., ge=0)
    alert_percentage: int = Field(default=80, ge=0, le=1000)


class MonthlyGoalIn(CamelModel):
    user_email: str = Field(..., min_length=1, max_length=255)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    total_budget: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class AuthorizeRequest(CamelModel):
    state: Optional[str] = None


class TokenExchangeRequest(CamelModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class TokenRefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)
