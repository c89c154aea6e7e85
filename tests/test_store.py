# mergeeats-dispatch/tests/test_store.py

from __future__ import annotations

import pytest

from conftest import CENTER, T0
from mergedispatch.errors import StateConflict, ValidationError
from mergedispatch.models import (
    AssignmentStatus,
    DeliveryAssignment,
    GroupOrder,
    GroupStatus,
    Order,
    OrderStatus,
)
from mergedispatch.store import InMemoryStore, UnitLockTable


def _order(order_id: str, **kwargs) -> Order:
    return Order(order_id, f"user-{order_id}", "R1", CENTER, T0, **kwargs)


def _group(gid: str, members) -> GroupOrder:
    return GroupOrder(gid, ["R1"], list(members), T0, T0)


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    for oid in ("A", "B", "C"):
        s.insert_order(_order(oid))
    return s


class TestOrders:

    def test_insert_sets_version_and_clears_claim(self):
        s = InMemoryStore()
        stored = s.insert_order(_order("X", group_order_id="G9", version=7))
        assert stored.version == 1
        assert stored.group_order_id is None
        with pytest.raises(StateConflict):
            s.insert_order(_order("X"))

    def test_returned_copies_are_detached(self, store):
        copy_a = store.get_order("A")
        copy_a.status = OrderStatus.CANCELLED
        assert store.get_order("A").status is OrderStatus.PENDING

    def test_save_checks_version(self, store):
        a = store.get_order("A")
        a.status = OrderStatus.CONFIRMED
        saved = store.save_order(a)
        assert saved.version == 2

        stale = store.get_order("A")
        stale.version = 1
        with pytest.raises(StateConflict):
            store.save_order(stale)

    def test_save_cannot_rewrite_claim(self, store):
        a = store.get_order("A")
        a.group_order_id = "G1"
        with pytest.raises(StateConflict):
            store.save_order(a)

    def test_unknown_order(self, store):
        with pytest.raises(ValidationError):
            store.require_order("nope")
        assert store.get_orders(["A", "nope", "B"])[1].order_id == "B"


class TestClaims:

    def test_claim_is_compare_and_set(self, store):
        assert store.claim_order("A", "G1")
        assert not store.claim_order("A", "G2")
        assert store.get_order("A").group_order_id == "G1"

    def test_only_holder_releases(self, store):
        store.claim_order("A", "G1")
        assert not store.release_claim("A", "G2")
        assert store.release_claim("A", "G1")
        assert store.get_order("A").group_order_id is None

    def test_claim_requires_mergeable_status(self, store):
        b = store.get_order("B")
        b.status = OrderStatus.CONFIRMED
        b = store.save_order(b)
        b.status = OrderStatus.PREPARING
        store.save_order(b)
        assert not store.claim_order("B", "G1")

    def test_claim_refused_for_order_dispatched_alone(self, store):
        store.insert_assignment(DeliveryAssignment("C", ["C"], T0))
        assert not store.claim_order("C", "G1")

    def test_claimed_order_cannot_be_dispatched_alone(self, store):
        store.claim_order("A", "G1")
        with pytest.raises(StateConflict):
            store.insert_assignment(DeliveryAssignment("A", ["A"], T0))


class TestGroups:

    def test_membership_is_append_only(self, store):
        group = store.insert_group(_group("G1", ["A", "B"]))
        group.member_ids = ["B"]
        with pytest.raises(StateConflict):
            store.save_group(group)

    def test_membership_frozen_after_forming(self, store):
        group = store.insert_group(_group("G1", ["A", "B"]))
        group.status = GroupStatus.FINALIZED
        group = store.save_group(group)
        group.member_ids.append("C")
        with pytest.raises(StateConflict):
            store.save_group(group)

    def test_list_by_status(self, store):
        store.insert_group(_group("G1", ["A"]))
        assert [g.group_order_id for g in store.list_groups(GroupStatus.FORMING)] == ["G1"]
        assert store.list_groups(GroupStatus.FINALIZED) == []


class TestAssignments:

    def test_reinsert_after_terminal_keeps_versions_rising(self, store):
        first = store.insert_assignment(DeliveryAssignment("A", ["A"], T0))
        first.status = AssignmentStatus.FAILED
        failed = store.save_assignment(first)

        second = store.insert_assignment(DeliveryAssignment("A", ["A"], T0))

        assert second.version == failed.version + 1
        with pytest.raises(StateConflict):
            store.insert_assignment(DeliveryAssignment("A", ["A"], T0))

    def test_snapshot_round_trip_keeps_versions(self, store):
        store.claim_order("A", "G1")
        restored = InMemoryStore.from_snapshot(store.snapshot())
        assert restored.get_order("A").version == store.get_order("A").version
        assert restored.get_order("A").group_order_id == "G1"


def test_lock_table_hands_out_one_lock_per_key():
    table = UnitLockTable()
    assert table.lock_for("G1") is table.lock_for("G1")
    assert table.lock_for("G1") is not table.lock_for("G2")
    with table.hold("G1"):
        assert table.lock_for("G1").locked()
    assert len(table) == 2
    table.reset()
    assert len(table) == 0
