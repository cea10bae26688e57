import pytest

from core.trading import BadRequest, CardRef, encode_payload, parse_payload
from cogs.collection import card_number_in_range, group_missing


@pytest.mark.parametrize("action", ["offer", "confirm", "cancel"])
def test_payload_round_trip(action):
    assert parse_payload(encode_payload(action, 12)) == (action, 12)


@pytest.mark.parametrize("custom_id", [
    None,
    "",
    "trade:confirm",
    "trade:confirm:",
    "trade:confirm:abc",
    "trade:confirm:0",
    "trade:confirm:-3",
    "trade:accept:5",
    "trade:confirm:5:extra",
    "trade:confirm:5\n",
    "shop:confirm:5",
])
def test_malformed_payload_is_bad_request(custom_id):
    with pytest.raises(BadRequest):
        parse_payload(custom_id)


def test_encode_rejects_unknown_action():
    with pytest.raises(ValueError):
        encode_payload("steal", 1)


def test_card_ref_parse():
    assert CardRef.parse(" Genetic  Apex ", "#036") == CardRef("Genetic Apex", "036")
    assert str(CardRef("SetA", "007")) == "SetA #007"
    with pytest.raises(BadRequest):
        CardRef.parse("", "1")


def test_card_number_range():
    assert card_number_in_range("007", 10)
    assert not card_number_in_range("011", 10)
    assert not card_number_in_range("0", 10)
    assert card_number_in_range("PROMO-5", 10)
    assert card_number_in_range("²", 10)


def test_group_missing():
    rows = [
        {"expansion": "SetA", "card_number": "001"},
        {"expansion": "SetB", "card_number": "004"},
        {"expansion": "SetA", "card_number": "002"},
    ]
    assert group_missing(rows) == {"SetA": ["001", "002"], "SetB": ["004"]}
