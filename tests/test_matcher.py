# mergeeats-dispatch/tests/test_matcher.py

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from conftest import T0, place
from mergedispatch.matcher import orders_compatible
from mergedispatch.models import GroupOrder, GroupStatus, OrderStatus


def ids(orders):
    return [o.order_id for o in orders]


def _claim(engine, gid, order, status=GroupStatus.FORMING):
    engine.store.insert_group(GroupOrder(
        gid, [order.restaurant_id], [order.order_id], T0, T0 + timedelta(minutes=3), status=status,
    ))
    assert engine.store.claim_order(order.order_id, gid)


class TestFindCandidates:

    def test_closest_delivery_first(self, engine, make_order):
        trigger = place(engine, make_order(east_km=1.0))
        far = place(engine, make_order(east_km=1.6))
        mid = place(engine, make_order(east_km=1.2))
        near = place(engine, make_order(east_km=0.9))

        found = engine.matcher.find_candidates(trigger)

        assert ids(found) == [near.order_id, mid.order_id, far.order_id]

    def test_never_more_than_k_minus_one(self, make_engine, make_order):
        engine = make_engine(max_group_size=3)
        trigger = place(engine, make_order())
        for i in range(5):
            place(engine, make_order(east_km=1.05 + 0.05 * i))
        assert len(engine.matcher.find_candidates(trigger)) == 2

    def test_hard_constraints(self, engine, make_order):
        trigger = place(engine, make_order(east_km=1.0))
        next_door = place(engine, make_order(restaurant_id="R2", east_km=1.1))
        place(engine, make_order(restaurant_id="R3", east_km=1.1))
        place(engine, make_order(east_km=3.5))
        place(engine, make_order(east_km=1.1, order_time=T0 - timedelta(minutes=11)))
        place(engine, replace(make_order(east_km=1.1), status=OrderStatus.PREPARING))

        assert ids(engine.matcher.find_candidates(trigger)) == [next_door.order_id]

    def test_closed_restaurant_excluded(self, engine, make_order, restaurants):
        trigger = place(engine, make_order())
        place(engine, make_order(restaurant_id="R2", east_km=1.1))
        restaurants.set_open("R2", False)
        engine.restaurants.invalidate()

        assert engine.matcher.find_candidates(trigger) == []

    def test_no_chain_merges(self, engine, make_order):
        trigger = place(engine, make_order(east_km=0.0))
        east = place(engine, make_order(east_km=1.4))
        place(engine, make_order(east_km=-1.5))

        # Both are within reach of the trigger but 2.9 km from each other.
        assert ids(engine.matcher.find_candidates(trigger)) == [east.order_id]

    def test_orders_in_forming_groups_are_candidates(self, engine, make_order):
        trigger = place(engine, make_order())
        forming = place(engine, make_order(east_km=1.1))
        finalized = place(engine, make_order(east_km=1.2))
        _claim(engine, "G-FORM", forming)
        _claim(engine, "G-FIN", finalized, status=GroupStatus.FINALIZED)

        found = engine.matcher.find_candidates(trigger)

        assert ids(found) == [forming.order_id]
        assert found[0].group_order_id == "G-FORM"


class TestFindForGroup:

    def test_tops_up_with_unclaimed_compatible_orders(self, engine, make_order):
        member = place(engine, make_order())
        _claim(engine, "G9", member)
        free = place(engine, make_order(east_km=1.3))
        place(engine, make_order(east_km=3.5))
        other = place(engine, make_order(east_km=1.1))
        _claim(engine, "G10", other)

        group = engine.store.require_group("G9")
        found = engine.matcher.find_for_group(group, [engine.store.require_order(member.order_id)])

        assert ids(found) == [free.order_id]

    def test_respects_remaining_room(self, make_engine, make_order):
        engine = make_engine(max_group_size=2)
        member = place(engine, make_order())
        _claim(engine, "G9", member)
        place(engine, make_order(east_km=1.1))
        place(engine, make_order(east_km=1.2))

        group = engine.store.require_group("G9")
        assert len(engine.matcher.find_for_group(group, [member])) == 1


def test_orders_compatible_is_symmetric(engine, make_order, settings):
    a = place(engine, make_order(east_km=1.0))
    b = place(engine, make_order(restaurant_id="R2", east_km=2.5, order_time=T0 + timedelta(minutes=9)))
    assert orders_compatible(a, b, settings)
    assert orders_compatible(b, a, settings)
