# mergeeats-dispatch/mergedispatch/lifecycle.py
"""
State machine for orders, groups and delivery assignments.

Every status change in the engine goes through ``LifecycleStateMachine``:
- the transition is checked against the tables below
- the entity is saved (version + 1)
- exactly one DomainEvent is queued in the outbox

The outbox is flushed by the engine after all locks are released. A failed
publish leaves the event queued for the next flush, so consumers see every
event at least once and deduplicate on ``(entity_id, new_status, version)``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional

from .errors import StateConflict
from .models import (
    UNIT_DRIVEN_ORDER_STATUSES,
    AssignmentStatus,
    DeliveryAssignment,
    DomainEvent,
    EventType,
    GroupOrder,
    GroupStatus,
    Order,
    OrderStatus,
)
from .store import InMemoryStore

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLES
# =============================================================================

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.PICKED_UP, OrderStatus.CANCELLED}),
    OrderStatus.PICKED_UP: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

GROUP_TRANSITIONS: Dict[GroupStatus, FrozenSet[GroupStatus]] = {
    GroupStatus.FORMING: frozenset({GroupStatus.FINALIZED, GroupStatus.DISBANDED}),
    GroupStatus.FINALIZED: frozenset({GroupStatus.ASSIGNED, GroupStatus.DISBANDED}),
    # Back to FINALIZED when the partner cancels before pickup.
    GroupStatus.ASSIGNED: frozenset(
        {GroupStatus.IN_TRANSIT, GroupStatus.FINALIZED, GroupStatus.DISBANDED}
    ),
    GroupStatus.IN_TRANSIT: frozenset({GroupStatus.COMPLETED}),
    GroupStatus.COMPLETED: frozenset(),
    GroupStatus.DISBANDED: frozenset(),
}

ASSIGNMENT_TRANSITIONS: Dict[AssignmentStatus, FrozenSet[AssignmentStatus]] = {
    AssignmentStatus.PENDING: frozenset({AssignmentStatus.OFFERED, AssignmentStatus.FAILED}),
    AssignmentStatus.OFFERED: frozenset({AssignmentStatus.ACCEPTED, AssignmentStatus.REJECTED}),
    AssignmentStatus.REJECTED: frozenset(
        {AssignmentStatus.OFFERED, AssignmentStatus.PENDING, AssignmentStatus.FAILED}
    ),
    AssignmentStatus.ACCEPTED: frozenset({AssignmentStatus.IN_PROGRESS, AssignmentStatus.FAILED}),
    AssignmentStatus.IN_PROGRESS: frozenset({AssignmentStatus.COMPLETED, AssignmentStatus.FAILED}),
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.FAILED: frozenset(),
}

_GROUP_EVENTS: Dict[GroupStatus, EventType] = {
    GroupStatus.FINALIZED: EventType.GROUP_FINALIZED,
    GroupStatus.DISBANDED: EventType.GROUP_DISBANDED,
}

_ASSIGNMENT_EVENTS: Dict[AssignmentStatus, EventType] = {
    AssignmentStatus.OFFERED: EventType.DELIVERY_OFFERED,
    AssignmentStatus.ACCEPTED: EventType.DELIVERY_ASSIGNED,
}


def can_transition(table: Dict[Any, FrozenSet[Any]], current: Any, target: Any) -> bool:
    """True if ``table`` allows ``current -> target``."""
    return target in table.get(current, frozenset())


# =============================================================================
# OUTBOX
# =============================================================================

class EventOutbox:
    """
    FIFO of events waiting to be published.

    ``flush`` publishes in order and stops at the first failure; the failed
    event and everything after it stay queued.
    """

    def __init__(self, sink) -> None:
        self._sink = sink
        self._queue: Deque[DomainEvent] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

    def add(self, event: DomainEvent) -> None:
        with self._lock:
            self._queue.append(event)

    def flush(self) -> int:
        """
        Publish queued events.

        Returns:
            Number of events published by this call
        """
        published = 0
        with self._flush_lock:
            while True:
                with self._lock:
                    if not self._queue:
                        return published
                    event = self._queue[0]
                try:
                    self._sink.publish(event)
                except Exception as e:
                    logger.warning(
                        f"Publishing {event.event_type.value} for {event.entity_id} failed, "
                        f"{self.pending} event(s) kept for retry: {e}"
                    )
                    return published
                with self._lock:
                    self._queue.popleft()
                published += 1

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def peek(self) -> List[DomainEvent]:
        with self._lock:
            return list(self._queue)


# =============================================================================
# STATE MACHINE
# =============================================================================

class LifecycleStateMachine:
    """
    Validates and applies transitions for all three entity kinds.

    Callers hold the unit lock of the entity they transition. The machine
    never takes unit locks itself.
    """

    def __init__(
        self,
        store: InMemoryStore,
        outbox: EventOutbox,
        clock: Callable[[], datetime],
    ) -> None:
        self.store = store
        self.outbox = outbox
        self.clock = clock

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def transition_order(
        self,
        order: Order,
        target: OrderStatus,
        unit_driven: bool = False,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """
        Move an order to ``target`` and save it.

        Args:
            order: Fresh copy of the order (its version is checked on save)
            target: New status
            unit_driven: True when the dispatch unit drives the change.
                PICKED_UP, IN_TRANSIT and DELIVERED require it.
            payload: Extra event payload

        Returns:
            The saved order

        Raises:
            StateConflict: Transition not allowed, or the order changed
        """
        if target in UNIT_DRIVEN_ORDER_STATUSES and not unit_driven:
            raise StateConflict(
                f"Order {order.order_id} reaches {target.value} only with its delivery unit",
                order.order_id, order.status.value,
            )
        if not can_transition(ORDER_TRANSITIONS, order.status, target):
            raise StateConflict(
                f"Order {order.order_id}: {order.status.value} -> {target.value} not allowed",
                order.order_id, order.status.value,
            )
        previous = order.status
        order.status = target
        saved = self.store.save_order(order)
        body = {"previousStatus": previous.value, "groupOrderId": saved.group_order_id}
        body.update(payload or {})
        self._emit(EventType.ORDER_STATUS_CHANGED, "order", saved.order_id,
                   target.value, saved.version, body)
        return saved

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    def transition_group(
        self,
        group: GroupOrder,
        target: GroupStatus,
        payload: Optional[Dict[str, Any]] = None,
    ) -> GroupOrder:
        """Move a group to ``target``, save it and queue the matching event."""
        if not can_transition(GROUP_TRANSITIONS, group.status, target):
            raise StateConflict(
                f"Group {group.group_order_id}: {group.status.value} -> {target.value} not allowed",
                group.group_order_id, group.status.value,
            )
        previous = group.status
        group.status = target
        saved = self.store.save_group(group)
        body = {"previousStatus": previous.value, "partnerId": saved.assigned_partner_id}
        body.update(payload or {})
        event_type = _GROUP_EVENTS.get(target, EventType.GROUP_STATUS_CHANGED)
        self._emit(event_type, "group", saved.group_order_id, target.value, saved.version, body)
        return saved

    def group_formed(self, group: GroupOrder, payload: Optional[Dict[str, Any]] = None) -> None:
        """Queue the event for a newly inserted group."""
        self._emit(EventType.GROUP_FORMED, "group", group.group_order_id,
                   group.status.value, group.version, payload or {})

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    def transition_assignment(
        self,
        assignment: DeliveryAssignment,
        target: AssignmentStatus,
        payload: Optional[Dict[str, Any]] = None,
    ) -> DeliveryAssignment:
        """Move an assignment to ``target``, save it and queue the matching event."""
        if not can_transition(ASSIGNMENT_TRANSITIONS, assignment.status, target):
            raise StateConflict(
                f"Assignment {assignment.dispatch_id}: "
                f"{assignment.status.value} -> {target.value} not allowed",
                assignment.dispatch_id, assignment.status.value,
            )
        previous = assignment.status
        assignment.status = target
        saved = self.store.save_assignment(assignment)
        body = {
            "previousStatus": previous.value,
            "partnerId": saved.partner_id,
            "groupOrderId": saved.group_order_id,
            "orderIds": list(saved.order_ids),
            "retryCount": saved.retry_count,
        }
        body.update(payload or {})
        event_type = _ASSIGNMENT_EVENTS.get(target, EventType.ASSIGNMENT_STATUS_CHANGED)
        self._emit(event_type, "assignment", saved.dispatch_id, target.value, saved.version, body)
        return saved

    # -------------------------------------------------------------------------

    def _emit(
        self,
        event_type: EventType,
        entity_kind: str,
        entity_id: str,
        new_status: str,
        version: int,
        payload: Dict[str, Any],
    ) -> None:
        event = DomainEvent(
            event_type=event_type,
            entity_kind=entity_kind,
            entity_id=entity_id,
            new_status=new_status,
            version=version,
            occurred_at=self.clock(),
            payload=payload,
        )
        logger.debug(f"Queued {event_type.value} {entity_id} -> {new_status} v{version}")
        self.outbox.add(event)
