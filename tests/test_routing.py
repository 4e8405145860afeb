from __future__ import annotations

import pytest

from ach_relay.domain.routing import (
    AdditionalChargeRoute,
    CommissionRoute,
    OrderRoute,
    ReferenceRoute,
    RequestPaymentRoute,
    RoutingError,
    decode_routing,
    parse_order_id,
)


def test_request_payment_route() -> None:
    route = decode_routing({"order_type": "request_payment", "user_id": "42"})
    assert route == RequestPaymentRoute(user_id="42")


def test_additional_charge_prefers_cart() -> None:
    route = decode_routing({"order_type": "additional_charge", "cart_id": "c-9", "user_id": "42"})
    assert route == AdditionalChargeRoute(cart_id="c-9", user_id="42")
    route = decode_routing({"order_type": "additional_charge", "user_id": "42"})
    assert route == AdditionalChargeRoute(cart_id=None, user_id="42")


def test_commission_route_with_period() -> None:
    route = decode_routing({"order_type": "commission_payment", "admin_id": "3", "month": "5", "year": "2024"})
    assert route == CommissionRoute(admin_id="3", month=5, year=2024)
    assert route.has_period


def test_commission_route_without_period_falls_back_to_reference() -> None:
    route = decode_routing({"order_type": "commission_payment", "admin_id": "3"})
    assert isinstance(route, CommissionRoute)
    assert not route.has_period


def test_order_id_single_and_batch() -> None:
    single = decode_routing({"order_id": "55|42"})
    assert single == OrderRoute(ids=("55",), user_id="42")
    assert not single.is_batch

    batch = parse_order_id("7, 8,9|42")
    assert batch.ids == ("7", "8", "9")
    assert batch.is_batch


def test_order_id_without_user() -> None:
    assert parse_order_id("12") == OrderRoute(ids=("12",), user_id=None)


def test_no_hints_is_reference_route() -> None:
    assert decode_routing({}) == ReferenceRoute()
    assert decode_routing(None) == ReferenceRoute()
    assert decode_routing({"order_type": "  ", "something": "else"}) == ReferenceRoute()


@pytest.mark.parametrize(
    "metadata",
    [
        {"order_type": "gift_card"},
        {"order_type": "request_payment"},
        {"order_type": "additional_charge"},
        {"order_type": "commission_payment", "admin_id": "3", "month": "13", "year": "2024"},
        {"order_type": "commission_payment", "admin_id": "3", "month": "may", "year": "2024"},
        {"order_id": "|42"},
        {"order_id": " , |42"},
    ],
)
def test_malformed_metadata_is_rejected(metadata: dict[str, str]) -> None:
    with pytest.raises(RoutingError):
        decode_routing(metadata)
