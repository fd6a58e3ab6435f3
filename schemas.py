from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config import get_settings
from models import TransactionType


def _check_new_password(password: str, confirm: str) -> None:
    if password != confirm:
        raise ValueError("Password confirmation does not match")
    minimum = get_settings().min_password_length
    if len(password) < minimum:
        raise ValueError(f"Password must be at least {minimum} characters")


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    group: Optional[str] = None
    type: TransactionType


class Transaction(BaseModel):
    """A stored transaction.

    ``category_name`` and ``category_type`` are copied from the category when
    the transaction is written and are never refreshed afterwards.
    ``category_type`` stays a plain string so records written with an unknown
    type can still be read.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    amount: int
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    category_type: Optional[str] = None
    date: datetime
    note: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    email: str = ""
    name: str = ""
    role: str = "user"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    group: Optional[str] = Field(default=None, max_length=100)
    type: TransactionType = TransactionType.expense

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value

    @field_validator("group")
    @classmethod
    def _strip_group(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    group: Optional[str] = Field(default=None, max_length=100)
    type: Optional[TransactionType] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value


class TransactionIn(BaseModel):
    amount: int = Field(..., ge=0)
    category_id: str = Field(..., min_length=1)
    date: datetime
    note: str = Field(default="", max_length=200)

    @field_validator("date", mode="before")
    @classmethod
    def _date_to_datetime(cls, value: object) -> object:
        if isinstance(value, str) and len(value.strip()) == 10:
            try:
                value = date.fromisoformat(value.strip())
            except ValueError:
                return value
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime(value.year, value.month, value.day)
        return value

    @field_validator("date")
    @classmethod
    def _date_in_local_range(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            try:
                value.astimezone(ZoneInfo(get_settings().timezone))
            except (OverflowError, OSError, ValueError):
                raise ValueError("Date is out of range") from None
        return value


class CredentialsIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1)


class RegisterIn(CredentialsIn):
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self) -> "RegisterIn":
        _check_new_password(self.password, self.confirm_password)
        return self


class PasswordChangeIn(BaseModel):
    current_password: Optional[str] = None
    new_password: str
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self) -> "PasswordChangeIn":
        _check_new_password(self.new_password, self.confirm_password)
        return self


class PasswordResetIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)


class PasswordResetConfirmIn(BaseModel):
    token: str
    new_password: str


class EmailVerificationIn(BaseModel):
    token: str


class ProfileIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value
