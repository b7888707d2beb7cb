"""
Unit tests for chat reply parsing.
"""
import pytest

from fleet_dispatch.domain.services.reply_parser import extract_order_reference


@pytest.mark.unit
@pytest.mark.parametrize(
    "text, expected",
    [
        ("ORD-1A2B3C4D", "ORD-1A2B3C4D"),
        ("ord-1a2b3c4d", "ORD-1A2B3C4D"),
        ("接單ORD-1A2B3C4D", "ORD-1A2B3C4D"),
        ("我接 ORD-1A2B3C4D 謝謝", "ORD-1A2B3C4D"),
        ("「ORD-1A2B3C4D」", "ORD-1A2B3C4D"),
        ("ORD-1A2B3C4D ORD-1A2B3C4D", "ORD-1A2B3C4D"),
    ],
)
def test_single_reference_extracted(text, expected):
    assert extract_order_reference(text) == expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "text",
    [
        None,
        "",
        "我接了",
        "ORD-1A2B3C4",
        "ORD-1A2B3C4D5",
        "XORD-1A2B3C4D",
        "ORD-1A2B3C4G",
        "ORD-1A2B3C4D 和 ORD-99999999",
    ],
)
def test_malformed_or_ambiguous_replies_ignored(text):
    assert extract_order_reference(text) is None
