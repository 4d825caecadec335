import pytest

from pdc.planner import clamp_weight, split


@pytest.mark.parametrize("total", range(1, 25))
def test_split_conserves_capacity_for_every_weight(total):
    for weight in range(0, 101):
        stable, candidate = split(total, weight)
        assert stable + candidate == total
        assert stable >= 0
        assert (candidate >= 1) == (weight > 0)


@pytest.mark.parametrize(
    "total,weight,expected",
    [
        (6, 20, (5, 1)),  # 1.2 -> 1
        (6, 50, (3, 3)),
        (5, 50, (2, 3)),  # 2.5 rounds half up
        (3, 50, (1, 2)),  # 1.5 rounds half up
        (10, 1, (9, 1)),  # 0.1 -> 0, raised to the floor of 1
        (10, 14, (9, 1)),  # 1.4 -> 1
        (10, 15, (8, 2)),  # 1.5 -> 2
        (1, 100, (0, 1)),
        (4, 0, (4, 0)),
    ],
)
def test_split_round_half_up(total, weight, expected):
    assert split(total, weight) == expected


def test_split_clamps_weight():
    assert split(6, 150) == (0, 6)
    assert split(6, -10) == (6, 0)
    assert clamp_weight(101) == 100
    assert clamp_weight(-1) == 0
