import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import FieldType

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_BULK_DELETE_DAYS = 36500


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class SignupIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name cannot be empty")
        return value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_RE.match(value):
            raise ValueError("Invalid email address")
        return value


class LoginIn(CamelModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_RE.match(value):
            raise ValueError("Invalid email address")
        return value


class UserOut(CamelModel):
    id: int
    name: str
    email: str


class FieldIn(CamelModel):
    key: str = Field(..., min_length=1, max_length=50)
    label: str = Field(default="", max_length=100)
    type: FieldType = FieldType.text
    options: list[str] = Field(default_factory=list)


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    fields: list[FieldIn] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name cannot be empty")
        return value


class SeedDefaultsIn(CamelModel):
    names: list[str] = Field(default_factory=list)


class CategoryOut(CamelModel):
    id: int
    name: str
    fields: list[FieldIn]


class ExpenseIn(CamelModel):
    category_id: int
    amount: Decimal = Field(..., gt=0)
    date: datetime
    item_name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("date")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return naive_utc(value)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _default_fields(cls, value: Any) -> Any:
        return {} if value is None else value


class CategoryRef(CamelModel):
    id: int
    name: str


class ExpenseOut(CamelModel):
    id: int
    category_id: int
    category: Optional[CategoryRef]
    item_name: Optional[str]
    amount: float
    date: datetime
    description: Optional[str]
    custom_fields: dict[str, Any]


class BulkDeleteIn(CamelModel):
    category_id: int
    days: Optional[int] = Field(default=None, gt=0, lt=MAX_BULK_DELETE_DAYS)
    start: Optional[datetime] = Field(default=None, alias="from")
    end: Optional[datetime] = Field(default=None, alias="to")

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)

    @model_validator(mode="after")
    def _one_mode(self) -> "BulkDeleteIn":
        has_range = self.start is not None or self.end is not None
        if self.days is not None and has_range:
            raise ValueError("Provide either days or from/to, not both")
        if self.days is None:
            if self.start is None or self.end is None:
                raise ValueError("Provide either days or both from and to dates")
        return self


class PaymentIn(CamelModel):
    category_id: int
    amount: Decimal = Field(..., gt=0)
    date: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=500)

    @field_validator("date")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class PaymentOut(CamelModel):
    id: int
    category_id: int
    amount: float
    date: datetime
    note: Optional[str]


class BalanceRow(CamelModel):
    category_id: int
    name: str
    total_expenses: float
    total_paid: float
    balance: float
