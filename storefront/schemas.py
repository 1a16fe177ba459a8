"""
API request models.

Pydantic models validating request bodies at the edge, before any service
is called. ``parse_body`` turns pydantic failures into ``ValidationError``.
"""
from __future__ import annotations

import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from storefront.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# ============================================================================
# Sales & Orders
# ============================================================================

class SaleItemIn(_Request):
    inventory_id: int = Field(..., validation_alias=_alias("inventory_id", "inventoryId"))
    quantity: int = Field(..., gt=0)


class SaleClientIn(_Request):
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class OrderClientIn(SaleClientIn):
    email: str = Field(..., min_length=3)
    payment_info: Optional[Union[Dict[str, Any], str]] = Field(
        None,
        validation_alias=_alias("payment_info", "paymentInfo"),
    )


class CreateSaleRequest(_Request):
    payment_method: str = Field(..., min_length=1, validation_alias=_alias("payment_method", "paymentMethod"))
    items: List[SaleItemIn] = Field(..., min_length=1)
    client: Optional[SaleClientIn] = None


class CreateOrderRequest(_Request):
    items: List[SaleItemIn] = Field(..., min_length=1)
    client: OrderClientIn


class SalesQuery(_Request):
    status: Optional[str] = None
    type: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    search: Optional[str] = None
    start_date: Optional[datetime] = Field(None, validation_alias=_alias("start_date", "startDate"))
    end_date: Optional[datetime] = Field(None, validation_alias=_alias("end_date", "endDate"))


class CancelRequest(_Request):
    reason: str = Field(..., min_length=1)


class RefundRequest(_Request):
    message: str = Field(..., min_length=1)


class CompleteRefundRequest(_Request):
    message: str = Field(..., min_length=1)
    action: Literal["ACCEPT", "REJECT"]

    @field_validator("action", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


# ============================================================================
# Payments
# ============================================================================

class CallbackData(_Request):
    ref: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)


class CallbackPayload(_Request):
    """Provider webhook body: {"data": {"ref": ..., "status": ...}}."""
    data: CallbackData


# ============================================================================
# Inventory & Cart
# ============================================================================

class InventoryCreate(_Request):
    variant_reference: str = Field(..., min_length=1, validation_alias=_alias("variant_reference", "variantReference"))
    quantity: int = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)


class InventoryUpdate(_Request):
    quantity: Optional[int] = Field(None, ge=0)
    price: Optional[Decimal] = Field(None, ge=0)


class DiscountCreate(_Request):
    percentage: Decimal = Field(..., ge=0, le=100)
    start_date: datetime = Field(..., validation_alias=_alias("start_date", "startDate"))
    end_date: datetime = Field(..., validation_alias=_alias("end_date", "endDate"))
    start_hour: Optional[int] = Field(None, ge=0, le=23, validation_alias=_alias("start_hour", "startHour"))
    end_hour: Optional[int] = Field(None, ge=0, le=23, validation_alias=_alias("end_hour", "endHour"))

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _date_at_midnight_utc(cls, value: Any) -> Any:
        # A bare date means the start of that day in UTC
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        if isinstance(value, str) and len(value.strip()) == 10:
            return datetime.combine(date.fromisoformat(value.strip()), time.min, tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_windows(self) -> "DiscountCreate":
        if (self.start_hour is None) != (self.end_hour is None):
            raise ValueError("start_hour and end_hour must be provided together")
        return self


class CartAdd(_Request):
    inventory_id: int = Field(..., validation_alias=_alias("inventory_id", "inventoryId"))
    quantity: int = Field(..., gt=0)


def parse_body(model: Type[ModelT], data: Optional[Dict[str, Any]]) -> ModelT:
    """Validate `data` against `model`, raising ValidationError with pydantic's error list."""
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            "Request validation failed",
            details={"errors": json.loads(exc.json(include_url=False))},
        ) from None


__all__ = [
    "SaleItemIn",
    "SaleClientIn",
    "OrderClientIn",
    "CreateSaleRequest",
    "CreateOrderRequest",
    "SalesQuery",
    "CancelRequest",
    "RefundRequest",
    "CompleteRefundRequest",
    "CallbackData",
    "CallbackPayload",
    "InventoryCreate",
    "InventoryUpdate",
    "DiscountCreate",
    "CartAdd",
    "parse_body",
]
