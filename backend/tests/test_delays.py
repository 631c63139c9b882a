from datetime import timedelta

import pytest

from donor_crm.services.delays import node_delay, parse_delay, parse_delay_ms
from factories import node


@pytest.mark.parametrize(
    "value, expected",
    [
        ("10m", timedelta(minutes=10)),
        ("2h", timedelta(hours=2)),
        ("3d", timedelta(days=3)),
        ("2H", timedelta(hours=2)),
        (" 5 m ", timedelta(minutes=5)),
        ("0m", timedelta(0)),
    ],
)
def test_parse_delay_accepts_grammar(value, expected):
    assert parse_delay(value) == expected


@pytest.mark.parametrize("value", [None, "", "5", "abc", "10s", "1.5h", "-2h", 10, ["1h"]])
def test_parse_delay_treats_everything_else_as_no_delay(value):
    assert parse_delay(value) == timedelta(0)


def test_parse_delay_ms():
    assert parse_delay_ms("10m") == 600000
    assert parse_delay_ms("nonsense") == 0


def test_node_delay_reads_node_data():
    assert node_delay(node("n1", delay="1h")) == timedelta(hours=1)
    assert node_delay(node("n2")) == timedelta(0)
    assert node_delay(None) == timedelta(0)
