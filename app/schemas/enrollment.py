"""Request body of POST /v1/enrollments.

Pydantic does the structural validation (types, lengths, enums, nested
required fields).  Anything that needs the database (course exists and is
published, amount matches the price, modules belong to the course) is a
precondition checked by EnrollmentService, not here.

Card number and CVV are SecretStr so they never show up in a repr, a
log line or a validation error echo.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    IPvAnyAddress,
    SecretStr,
    field_validator,
    model_validator,
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_PHONE_RE = re.compile(
    r"^[+]?[(]?[0-9]{1,4}[)]?[-\s.]?[(]?[0-9]{1,4}[)]?[-\s.]?[0-9]{1,9}$"
)
_CARD_NUMBER_RE = re.compile(r"^[0-9]{13,19}$")
_CVV_RE = re.compile(r"^[0-9]{3,4}$")
_EARLIEST_BIRTH_DATE = date(1900, 1, 1)

PaymentMethod = Literal["credit_card", "debit_card", "paypal", "bank_transfer"]
CARD_METHODS = ("credit_card", "debit_card")


def _today() -> date:
    return datetime.now(UTC).date()


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# --- student ---


class AddressIn(_Schema):
    street: str = Field(max_length=255)
    city: str = Field(max_length=100)
    state: str | None = Field(default=None, max_length=100)
    country: str = Field(min_length=2, max_length=2)
    postal_code: str = Field(max_length=20)

    @field_validator("country")
    @classmethod
    def _upper_country(cls, v: str) -> str:
        return v.upper()

    def one_line(self) -> str:
        parts = [self.street, self.city, self.state, self.postal_code, self.country]
        return ", ".join(p for p in parts if p)


class NotificationPrefsIn(_Schema):
    email: bool | None = None
    sms: bool | None = None
    push: bool | None = None


class PreferencesIn(_Schema):
    language: Literal["en", "es", "fr", "de", "pt"] | None = None
    timezone: str | None = None
    notifications: NotificationPrefsIn | None = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}") from None
        return v


class StudentIn(_Schema):
    email: str = Field(max_length=255)
    first_name: str = Field(min_length=2, max_length=100)
    last_name: str = Field(min_length=2, max_length=100)
    phone: str | None = None
    date_of_birth: date | None = None
    address: AddressIn | None = None
    preferences: PreferencesIn | None = None

    @field_validator("email")
    @classmethod
    def _valid_email(cls, v: str) -> str:
        if not _EMAIL_RE.match(v):
            raise ValueError("must be a valid email address")
        return v.lower()

    @field_validator("phone")
    @classmethod
    def _valid_phone(cls, v: str | None) -> str | None:
        if v is not None and not _PHONE_RE.match(v):
            raise ValueError("must be a valid phone number")
        return v

    @field_validator("date_of_birth")
    @classmethod
    def _plausible_birth_date(cls, v: date | None) -> date | None:
        if v is None:
            return v
        if v >= _today():
            raise ValueError("date of birth must be in the past")
        if v <= _EARLIEST_BIRTH_DATE:
            raise ValueError("date of birth must be after 1900-01-01")
        return v


# --- course ---


class CustomFieldIn(_Schema):
    key: str = Field(max_length=100)
    value: str | None = Field(default=None, max_length=500)


class CourseRefIn(_Schema):
    code: str = Field(min_length=1, max_length=64)
    custom_fields: list[CustomFieldIn] | None = None


# --- payment ---


class CardIn(_Schema):
    number: SecretStr
    holder_name: str = Field(max_length=100)
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int
    cvv: SecretStr

    @field_validator("number")
    @classmethod
    def _valid_number(cls, v: SecretStr) -> SecretStr:
        if not _CARD_NUMBER_RE.match(v.get_secret_value()):
            raise ValueError("please provide a valid card number (13-19 digits)")
        return v

    @field_validator("cvv")
    @classmethod
    def _valid_cvv(cls, v: SecretStr) -> SecretStr:
        if not _CVV_RE.match(v.get_secret_value()):
            raise ValueError("CVV must be 3 or 4 digits")
        return v

    @field_validator("expiry_year")
    @classmethod
    def _year_in_range(cls, v: int) -> int:
        this_year = _today().year
        if v < this_year:
            raise ValueError("the card expiration year cannot be in the past")
        if v > this_year + 10:
            raise ValueError(f"the card expiration year cannot be after {this_year + 10}")
        return v

    @model_validator(mode="after")
    def _not_expired(self) -> CardIn:
        today = _today()
        if (self.expiry_year, self.expiry_month) < (today.year, today.month):
            raise ValueError("the card has expired")
        return self

    @property
    def last_four(self) -> str:
        return self.number.get_secret_value()[-4:]


class BillingAddressIn(_Schema):
    same_as_student: bool | None = None
    street: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=100)
    country: str | None = Field(default=None, min_length=2, max_length=2)
    postal_code: str | None = Field(default=None, max_length=20)

    @model_validator(mode="after")
    def _complete_unless_same(self) -> BillingAddressIn:
        if self.same_as_student:
            return self
        missing = [
            name
            for name in ("street", "city", "country", "postal_code")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                "billing address requires "
                + ", ".join(missing)
                + " unless same_as_student is true"
            )
        return self


class PaymentIn(_Schema):
    amount: Decimal = Field(ge=0, le=Decimal("999999.99"), decimal_places=2)
    currency: Literal["USD", "EUR", "GBP", "CAD"]
    method: PaymentMethod
    coupon_code: str | None = Field(default=None, max_length=50)
    card: CardIn | None = None
    billing_address: BillingAddressIn | None = None

    @model_validator(mode="after")
    def _card_for_card_methods(self) -> PaymentIn:
        if self.method in CARD_METHODS and self.card is None:
            raise ValueError(f"card details are required for {self.method}")
        return self


# --- enrollment options ---


class LessonUnlockIn(_Schema):
    lesson_id: int = Field(ge=1)
    is_mandatory: bool | None = None


class ModuleUnlockIn(_Schema):
    module_id: int = Field(ge=1)
    unlock_immediately: bool | None = None
    unlock_date: date | None = None
    lessons: list[LessonUnlockIn] | None = None

    @field_validator("unlock_date")
    @classmethod
    def _future_unlock(cls, v: date | None) -> date | None:
        if v is not None and v <= _today():
            raise ValueError("unlock date must be after today")
        return v


class EnrollmentOptionsIn(_Schema):
    start_immediately: bool = True
    send_welcome_email: bool = True
    grant_certificate: bool = False
    notes: str | None = Field(default=None, max_length=1000)
    modules: list[ModuleUnlockIn] | None = None


class MetadataIn(_Schema):
    source: str | None = Field(default=None, max_length=100)
    referrer: str | None = Field(default=None, max_length=255)
    utm_campaign: str | None = Field(default=None, max_length=100)
    utm_medium: str | None = Field(default=None, max_length=100)
    utm_source: str | None = Field(default=None, max_length=100)
    ip_address: IPvAnyAddress | None = None
    user_agent: str | None = Field(default=None, max_length=500)


class EnrollmentRequest(_Schema):
    student: StudentIn
    course: CourseRefIn
    payment: PaymentIn
    enrollment: EnrollmentOptionsIn = Field(default_factory=EnrollmentOptionsIn)
    metadata: MetadataIn | None = None


class LessonProgressIn(_Schema):
    """Body of POST /v1/enrollments/{id}/lessons/{lesson_id}/progress."""

    time_spent_minutes: int = Field(default=0, ge=0, le=24 * 60)
    score: Decimal | None = Field(default=None, ge=0, le=100, decimal_places=2)
    completed: bool = False
