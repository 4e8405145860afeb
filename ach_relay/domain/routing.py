"""Payment intent routing metadata.

The application tags each payment intent with string metadata telling which
payment table it belongs to. ``decode_routing`` turns that metadata into one
of the route types below, once, and rejects anything it cannot interpret.

``order_id`` has the form ``<ids>|<user_id>`` where ``<ids>`` is a single id
or a comma-separated list of rule payment ids.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from .enums import OrderType


class RoutingError(ValueError):
    """Routing metadata is present but cannot be interpreted."""


@dataclass(frozen=True)
class RequestPaymentRoute:
    user_id: str


@dataclass(frozen=True)
class AdditionalChargeRoute:
    cart_id: str | None
    user_id: str | None


@dataclass(frozen=True)
class CommissionRoute:
    admin_id: str | None = None
    month: int | None = None
    year: int | None = None

    @property
    def has_period(self) -> bool:
        return self.admin_id is not None and self.month is not None and self.year is not None


@dataclass(frozen=True)
class OrderRoute:
    ids: tuple[str, ...]
    user_id: str | None = None

    @property
    def is_batch(self) -> bool:
        return len(self.ids) > 1


@dataclass(frozen=True)
class ReferenceRoute:
    """No routing hints: find the record by its stored processor reference."""


Route = Union[RequestPaymentRoute, AdditionalChargeRoute, CommissionRoute, OrderRoute, ReferenceRoute]


def _text(metadata: Mapping[str, Any], key: str) -> str | None:
    value = metadata.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(metadata: Mapping[str, Any], key: str, low: int, high: int) -> int | None:
    text = _text(metadata, key)
    if text is None:
        return None
    try:
        value = int(text)
    except ValueError as exc:
        raise RoutingError(f"{key} must be an integer, got {text!r}") from exc
    if not low <= value <= high:
        raise RoutingError(f"{key} out of range: {value}")
    return value


def parse_order_id(raw: str) -> OrderRoute:
    ids_part, _, user_part = raw.partition("|")
    ids = tuple(item.strip() for item in ids_part.split(",") if item.strip())
    if not ids:
        raise RoutingError(f"order_id without ids: {raw!r}")
    return OrderRoute(ids=ids, user_id=user_part.strip() or None)


def decode_routing(metadata: Mapping[str, Any] | None) -> Route:
    metadata = metadata or {}
    order_type = _text(metadata, "order_type")
    if order_type is not None:
        try:
            kind = OrderType(order_type)
        except ValueError as exc:
            raise RoutingError(f"unknown order_type {order_type!r}") from exc
        if kind is OrderType.REQUEST_PAYMENT:
            user_id = _text(metadata, "user_id")
            if user_id is None:
                raise RoutingError("request_payment without user_id")
            return RequestPaymentRoute(user_id=user_id)
        if kind is OrderType.ADDITIONAL_CHARGE:
            cart_id = _text(metadata, "cart_id")
            user_id = _text(metadata, "user_id")
            if cart_id is None and user_id is None:
                raise RoutingError("additional_charge without cart_id or user_id")
            return AdditionalChargeRoute(cart_id=cart_id, user_id=user_id)
        return CommissionRoute(
            admin_id=_text(metadata, "admin_id"),
            month=_int(metadata, "month", 1, 12),
            year=_int(metadata, "year", 1970, 9999),
        )

    order_id = _text(metadata, "order_id")
    if order_id is not None:
        return parse_order_id(order_id)
    return ReferenceRoute()
