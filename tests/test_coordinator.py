# mergeeats-dispatch/tests/test_coordinator.py

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, place
from mergedispatch.coordinator import FINALIZE_CAPACITY, FINALIZE_DEADLINE
from mergedispatch.errors import StateConflict
from mergedispatch.models import AssignmentStatus, EventType, GroupStatus, MergeOutcome


def _form(engine, trigger):
    return engine.coordinator.try_merge(trigger, engine.matcher.find_candidates(trigger))


class TestTryMerge:

    def test_forms_group_with_trigger_first(self, engine, make_order):
        waiting = place(engine, make_order(east_km=1.0))
        trigger = place(engine, make_order(east_km=1.2))

        decision = _form(engine, trigger)

        assert decision.outcome is MergeOutcome.GROUPED
        assert not decision.joined_existing
        group = decision.group
        assert group.member_ids == [trigger.order_id, waiting.order_id]
        assert group.status is GroupStatus.FORMING
        assert group.formation_deadline == T0 + timedelta(minutes=3)
        assert engine.store.get_order(waiting.order_id).group_order_id == group.group_order_id
        formed = engine.outbox.peek()
        assert [e.event_type for e in formed] == [EventType.GROUP_FORMED]
        assert formed[0].payload["memberIds"] == group.member_ids

    def test_joins_forming_group(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))
        first = _form(engine, b).group
        c = place(engine, make_order(east_km=1.1))

        decision = _form(engine, c)

        assert decision.joined_existing
        assert decision.group.group_order_id == first.group_order_id
        assert decision.group.member_ids == [b.order_id, a.order_id, c.order_id]

    def test_does_not_join_group_with_a_distant_member(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=2.5))
        _form(engine, b)
        # 1.5 km from a but 3 km from b.
        c = place(engine, make_order(east_km=-0.5))

        decision = _form(engine, c)

        assert decision.outcome is MergeOutcome.INDIVIDUAL
        assert engine.store.get_order(c.order_id).group_order_id is None

    def test_lost_candidate_releases_trigger(self, engine, make_order):
        waiting = place(engine, make_order(east_km=1.0))
        trigger = place(engine, make_order(east_km=1.2))
        candidates = engine.matcher.find_candidates(trigger)
        engine.store.claim_order(waiting.order_id, "G-OTHER")

        decision = engine.coordinator.try_merge(trigger, candidates)

        assert decision.outcome is MergeOutcome.INDIVIDUAL
        assert engine.store.get_order(trigger.order_id).group_order_id is None
        assert engine.store.list_groups() == []

    def test_trigger_already_claimed_reports_its_group(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))
        group = _form(engine, b).group

        decision = engine.coordinator.try_merge(engine.store.require_order(a.order_id), [])

        assert decision.outcome is MergeOutcome.GROUPED
        assert decision.group.group_order_id == group.group_order_id

    def test_size_cap_finalizes_and_unindexes(self, make_engine, make_order):
        engine = make_engine(max_group_size=2)
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))

        group = _form(engine, b).group

        assert group.status is GroupStatus.FINALIZED
        assert group.finalize_reason == "size cap reached"
        assert a.order_id not in engine.order_index
        assert b.order_id not in engine.order_index


class TestExtendFinalizeDisband:

    def test_extend_tops_up_from_the_index(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))
        gid = _form(engine, b).group.group_order_id
        late = place(engine, make_order(east_km=1.4))

        group = engine.coordinator.extend(gid)

        assert group.member_ids[-1] == late.order_id
        assert engine.store.get_order(late.order_id).group_order_id == gid

    def test_extend_leaves_finalized_group_alone(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))
        gid = _form(engine, b).group.group_order_id
        engine.coordinator.finalize(gid, FINALIZE_CAPACITY)
        late = place(engine, make_order(east_km=1.1))

        group = engine.coordinator.extend(gid, [late])

        assert group.size == 2
        assert engine.store.get_order(late.order_id).group_order_id is None

    def test_finalize_only_once(self, engine, make_order, clock):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))
        gid = _form(engine, b).group.group_order_id
        clock.advance(180)

        first = engine.coordinator.finalize(gid, FINALIZE_DEADLINE)
        second = engine.coordinator.finalize(gid, FINALIZE_CAPACITY)

        assert first.status is GroupStatus.FINALIZED
        assert first.finalized_at == T0 + timedelta(minutes=3)
        assert second is None
        assert engine.store.require_group(gid).finalize_reason == FINALIZE_DEADLINE

    def test_disband_releases_every_claim(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(east_km=1.2))
        gid = _form(engine, b).group.group_order_id

        survivors = engine.coordinator.disband(gid, "test")

        assert survivors == [b.order_id, a.order_id]
        assert engine.store.require_group(gid).status is GroupStatus.DISBANDED
        assert engine.store.require_group(gid).disband_reason == "test"
        assert all(o.group_order_id is None for o in engine.store.list_orders())
        assert engine.coordinator.disband(gid, "again") == []

    def test_disband_refuses_group_with_live_offer(self, make_engine, make_order, partners):
        engine = make_engine(max_group_size=2)
        engine.submit_order(make_order())
        engine.submit_order(make_order(east_km=1.1))
        assert engine.get_assignment("G1").status is AssignmentStatus.OFFERED

        with pytest.raises(StateConflict):
            engine.coordinator.disband("G1", "test")

        assert engine.store.require_group("G1").status is GroupStatus.FINALIZED
        assert partners.get("P1").busy
        assert engine.on_partner_offer("P1", "G1", True) is AssignmentStatus.IN_PROGRESS
        assert engine.store.require_group("G1").status is GroupStatus.ASSIGNED

    def test_forming_groups_for_restaurant(self, engine, make_order):
        a = place(engine, make_order(east_km=1.0))
        b = place(engine, make_order(restaurant_id="R2", east_km=1.2))
        gid = _form(engine, b).group.group_order_id

        assert [g.group_order_id for g in engine.coordinator.forming_groups_for_restaurant("R1")] == [gid]
        assert [g.group_order_id for g in engine.coordinator.forming_groups_for_restaurant("R2")] == [gid]
        assert engine.coordinator.forming_groups_for_restaurant("R3") == []


def test_cluster_key_groups_colocated_pickups(engine, make_order):
    r1 = place(engine, make_order(restaurant_id="R1"))
    r1_again = place(engine, make_order(restaurant_id="R1", east_km=1.5))
    r3 = place(engine, make_order(restaurant_id="R3"))

    assert engine.coordinator.cluster_key(r1) == engine.coordinator.cluster_key(r1_again)
    assert engine.coordinator.cluster_key(r1) != engine.coordinator.cluster_key(r3)
