# mergeeats-dispatch/tests/test_scoring.py

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import CENTER, T0, offset
from mergedispatch import scoring
from mergedispatch.models import GroupOrder, Order


def _order(oid, east_km=1.0, minutes=0, restaurant_id="R1"):
    return Order(oid, "U", restaurant_id, offset(CENTER, east_km=east_km), T0 + timedelta(minutes=minutes))


def test_single_order_has_no_efficiency():
    assert scoring.merge_efficiency([_order("A")]) == 0.0
    assert scoring.distance_efficiency([_order("A")]) == 0.0


def test_close_simultaneous_orders_score_high():
    tight = [_order("A", 1.0), _order("B", 1.2)]
    loose = [_order("A", 1.0), _order("B", 2.9, minutes=9, restaurant_id="R2")]

    assert scoring.merge_efficiency(tight) > scoring.merge_efficiency(loose)
    assert 0.0 < scoring.merge_efficiency(loose) <= 1.0
    assert scoring.preparation_alignment(loose) == 0.5


@pytest.mark.parametrize("spread, expected", [(0, 1.0), (7.5, 0.5), (15, 0.0), (30, 0.0)])
def test_time_compatibility(spread, expected):
    orders = [_order("A"), _order("B", minutes=spread)]
    assert scoring.time_compatibility(orders) == pytest.approx(expected)


def test_time_savings_scale_with_members():
    assert scoring.estimated_time_savings(1) == 0
    assert scoring.estimated_time_savings(3) == 24.0
    assert scoring.estimated_extra_stop_minutes(3) == 16.0


def test_group_summary_payload():
    a, b = _order("A"), _order("B", 1.3)
    group = GroupOrder("G1", ["R1"], ["A", "B"], T0, T0)

    summary = scoring.group_summary(group, [a, b])

    assert summary["memberIds"] == ["A", "B"]
    assert summary["activeMemberIds"] == ["A", "B"]
    assert summary["estimatedTimeSavingsMins"] == 12.0
    assert 0.0 < summary["mergeEfficiency"] <= 1.0
