# mergeeats-dispatch/tests/test_lifecycle.py

from __future__ import annotations

from unittest import mock

import pytest

from conftest import CENTER, T0
from mergedispatch.errors import DirectoryUnavailable, StateConflict
from mergedispatch.lifecycle import (
    ASSIGNMENT_TRANSITIONS,
    GROUP_TRANSITIONS,
    ORDER_TRANSITIONS,
    EventOutbox,
    LifecycleStateMachine,
    can_transition,
)
from mergedispatch.models import (
    AssignmentStatus,
    DeliveryAssignment,
    EventType,
    GroupOrder,
    GroupStatus,
    Order,
    OrderStatus,
)
from mergedispatch.store import InMemoryStore


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def outbox(sink) -> EventOutbox:
    return EventOutbox(sink)


@pytest.fixture
def machine(store, outbox, clock) -> LifecycleStateMachine:
    return LifecycleStateMachine(store, outbox, clock)


@pytest.mark.parametrize("table, current, target, allowed", [
    (ORDER_TRANSITIONS, OrderStatus.PENDING, OrderStatus.CONFIRMED, True),
    (ORDER_TRANSITIONS, OrderStatus.PENDING, OrderStatus.READY, False),
    (ORDER_TRANSITIONS, OrderStatus.DELIVERED, OrderStatus.CANCELLED, False),
    (GROUP_TRANSITIONS, GroupStatus.ASSIGNED, GroupStatus.FINALIZED, True),
    (GROUP_TRANSITIONS, GroupStatus.IN_TRANSIT, GroupStatus.DISBANDED, False),
    (GROUP_TRANSITIONS, GroupStatus.DISBANDED, GroupStatus.FORMING, False),
    (ASSIGNMENT_TRANSITIONS, AssignmentStatus.REJECTED, AssignmentStatus.OFFERED, True),
    (ASSIGNMENT_TRANSITIONS, AssignmentStatus.OFFERED, AssignmentStatus.IN_PROGRESS, False),
    (ASSIGNMENT_TRANSITIONS, AssignmentStatus.COMPLETED, AssignmentStatus.FAILED, False),
])
def test_transition_tables(table, current, target, allowed):
    assert can_transition(table, current, target) is allowed


def test_terminal_states_have_no_exits():
    for table in (ORDER_TRANSITIONS, GROUP_TRANSITIONS, ASSIGNMENT_TRANSITIONS):
        for status, targets in table.items():
            if status.is_terminal:
                assert targets == frozenset()


class TestTransitions:

    def test_order_transition_saves_and_queues_event(self, store, machine, outbox):
        order = store.insert_order(Order("O1", "U1", "R1", CENTER, T0))

        saved = machine.transition_order(order, OrderStatus.CONFIRMED)

        assert saved.version == 2
        assert store.get_order("O1").status is OrderStatus.CONFIRMED
        (event,) = outbox.peek()
        assert event.event_type is EventType.ORDER_STATUS_CHANGED
        assert event.dedup_key == ("O1", "CONFIRMED", 2)
        assert event.payload["previousStatus"] == "PENDING"
        assert event.occurred_at == T0

    def test_rejected_transition_changes_nothing(self, store, machine, outbox):
        order = store.insert_order(Order("O1", "U1", "R1", CENTER, T0))

        with pytest.raises(StateConflict) as exc:
            machine.transition_order(order, OrderStatus.READY)

        assert exc.value.current_status == "PENDING"
        assert store.get_order("O1").version == 1
        assert outbox.pending == 0

    def test_unit_driven_statuses_need_the_unit(self, store, machine):
        order = store.insert_order(Order("O1", "U1", "R1", CENTER, T0, status=OrderStatus.READY))
        with pytest.raises(StateConflict):
            machine.transition_order(order, OrderStatus.PICKED_UP)
        assert machine.transition_order(order, OrderStatus.PICKED_UP, unit_driven=True).status \
            is OrderStatus.PICKED_UP

    def test_group_and_assignment_event_types(self, store, machine, outbox):
        group = store.insert_group(GroupOrder("G1", ["R1"], ["O1", "O2"], T0, T0))
        machine.transition_group(group, GroupStatus.FINALIZED)
        assignment = store.insert_assignment(DeliveryAssignment("G1", ["O1", "O2"], T0, group_order_id="G1"))
        assignment = machine.transition_assignment(assignment, AssignmentStatus.OFFERED)
        machine.transition_assignment(assignment, AssignmentStatus.ACCEPTED)

        assert [e.event_type for e in outbox.peek()] == [
            EventType.GROUP_FINALIZED,
            EventType.DELIVERY_OFFERED,
            EventType.DELIVERY_ASSIGNED,
        ]
        assert [e.version for e in outbox.peek()] == [2, 2, 3]


class TestOutbox:

    def _event(self, machine, store, order_id):
        order = store.insert_order(Order(order_id, "U", "R1", CENTER, T0))
        machine.transition_order(order, OrderStatus.CONFIRMED)

    def test_flush_publishes_in_order(self, machine, store, outbox, sink):
        for oid in ("O1", "O2", "O3"):
            self._event(machine, store, oid)

        assert outbox.flush() == 3
        assert [e.entity_id for e in sink.events] == ["O1", "O2", "O3"]
        assert outbox.pending == 0

    def test_flush_stops_at_first_failure(self, machine, store, clock):
        sink = mock.Mock()
        sink.publish.side_effect = [None, DirectoryUnavailable("down"), None, None]
        outbox = EventOutbox(sink)
        machine = LifecycleStateMachine(store, outbox, clock)
        for oid in ("O1", "O2", "O3"):
            self._event(machine, store, oid)

        assert outbox.flush() == 1
        assert [e.entity_id for e in outbox.peek()] == ["O2", "O3"]

        assert outbox.flush() == 2
        published = [c.args[0].entity_id for c in sink.publish.call_args_list]
        assert published == ["O1", "O2", "O2", "O3"]
