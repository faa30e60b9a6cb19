"""Polar Pydantic schemas: API contracts for checkout and portal flows."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MetadataValue = str | int | float | bool


class _RequestModel(BaseModel):
    # Site clients post camelCase; snake_case is accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CheckoutRequest(_RequestModel):
    interval: Literal["monthly", "annual"] = "monthly"
    email: str | None = None
    user_id: int | None = None
    customer_id: str | None = None
    product_id: str | None = None
    success_path: str = "/billing/success"
    return_path: str = "/pricing"
    metadata: dict[str, MetadataValue] | None = None

    @field_validator("interval", mode="before")
    @classmethod
    def normalize_interval(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("email", "customer_id", "product_id")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str | None) -> str | None:
        return v.lower() if v else v


class CheckoutResponse(BaseModel):
    ok: bool = True
    url: str
    checkout_id: str | None = None


class PortalRequest(_RequestModel):
    user_id: int | None = None
    customer_id: str | None = Field(default=None, description="Polar customer id")

    @field_validator("customer_id")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class PortalResponse(BaseModel):
    ok: bool = True
    url: str


class WebhookResponse(BaseModel):
    ok: bool = True
    code: str
    type: str
    duplicate: bool
    handled: bool | None = None
