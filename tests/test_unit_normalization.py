import pytest

from order_reconciliation.exceptions import GatewayResponseError
from order_reconciliation.integrations.normalization import (
    extract_fee,
    map_gateway_status,
    normalize_charge,
    unwrap_charge,
)
from order_reconciliation.models.db.enums import OrderStatus
from order_reconciliation.models.schemas.gateway import FeeRecognized, FeeUnrecognized


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("paid", OrderStatus.PAID),
        ("PAID", OrderStatus.PAID),
        ("confirmed", OrderStatus.PAID),
        ("paid_out", OrderStatus.PAID),
        ("completed", OrderStatus.PAID),
        ("refunded", OrderStatus.CANCELLED),
        ("cancelled", OrderStatus.CANCELLED),
        ("canceled", OrderStatus.CANCELLED),
        ("expired", OrderStatus.EXPIRED),
        ("pending", OrderStatus.PENDING),
        ("failed", OrderStatus.PENDING),
        ("something-new", OrderStatus.PENDING),
        (None, OrderStatus.PENDING),
    ],
)
def test_status_mapping_table(raw, expected):
    assert map_gateway_status(raw) is expected


def test_fee_priority_list_first_match_wins():
    payload = {"payment": {"fee": 80}, "data": {"payment": {"fee": 99}, "fee": 120}}
    assert extract_fee(payload) == FeeRecognized(fee=80, path=("payment", "fee"))

    payload = {"data": {"payment": {"fee": 99}, "fee": 120}}
    assert extract_fee(payload) == FeeRecognized(fee=99, path=("data", "payment", "fee"))

    payload = {"data": {"fee": 120}}
    assert extract_fee(payload) == FeeRecognized(fee=120, path=("data", "fee"))


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"payment": {}},
        {"payment": {"fee": "80"}},
        {"payment": {"fee": True}},
        {"payment": {"fee": -5}},
        {"payment": {"fee": 80.5}},
        {"payment": "fee"},
    ],
)
def test_fee_unrecognized_shapes(payload):
    assert isinstance(extract_fee(payload), FeeUnrecognized)


def test_fee_accepts_whole_float():
    assert extract_fee({"payment": {"fee": 80.0}}) == FeeRecognized(fee=80, path=("payment", "fee"))


def test_unwrap_prefers_data_envelope():
    body = unwrap_charge({"data": {"status": "PAID", "amount": 9000}, "status": "PENDING"})
    assert body["status"] == "PAID"
    assert unwrap_charge({"status": "EXPIRED"})["status"] == "EXPIRED"


@pytest.mark.parametrize("payload", [[], "PAID", {"data": {"amount": 9000}}, {"error": "boom"}])
def test_unwrap_rejects_payload_without_status(payload):
    with pytest.raises(GatewayResponseError):
        unwrap_charge(payload)


def test_normalize_charge_builds_gateway_view():
    payload = {"data": {"id": "bill_1", "status": "PAID_OUT", "amount": 9000, "payment": {"fee": 80}}}
    charge = normalize_charge("bill_1", payload)
    assert charge.reference == "bill_1"
    assert charge.gateway_status == "paid_out"
    assert charge.status is OrderStatus.PAID
    assert charge.amount == 9000
    assert charge.fee == 80
    assert charge.raw == payload


def test_normalize_charge_rejects_negative_amount():
    with pytest.raises(GatewayResponseError):
        normalize_charge("bill_1", {"status": "PAID", "amount": -1})
