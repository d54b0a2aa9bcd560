from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, field_validator


class BillingDetails(BaseModel):
    billing_name: str | None = None
    billing_company: str | None = None
    billing_vat: str | None = None
    billing_address: str | None = None
    billing_phone: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _strip(cls, value):
        if isinstance(value, str):
            return value.strip() or None
        return value

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "BillingDetails":
        return cls(**{name: record.get(name) for name in cls.model_fields})

    @property
    def is_complete(self) -> bool:
        return bool((self.billing_name or self.billing_company) and self.billing_address)


class ParsedAddress(BaseModel):
    line1: str
    line2: str | None = None
    city: str
    state: str | None = None
    postal_code: str = ""
    country: str = "RO"
