# mergeeats-dispatch/mergedispatch/engine.py
"""
ConsolidationEngine: the boundary of the consolidation subsystem.

Wires the store, the two geo indices, the matcher, the coordinator, the
scheduler and the lifecycle state machine around injected collaborators
(restaurant directory, partner directory, notification sink) and exposes the
operations the rest of the platform calls:

- submit_order / cancel_order / get_group_status
- restaurant-driven: confirm_order, mark_preparing, mark_ready,
  restaurant_capacity_signal
- partner-driven: on_partner_offer, partner_cancelled, mark_picked_up,
  mark_in_transit, mark_delivered, update_partner, remove_partner
- periodic: sweep_formation, sweep_assignments
- restart: recover

Every public operation flushes the event outbox before returning, after all
locks have been released.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .coordinator import FINALIZE_CAPACITY, FINALIZE_DEADLINE, ConsolidationCoordinator, new_group_id
from .directory import (
    CachedRestaurantDirectory,
    NotificationSink,
    PartnerDirectory,
    RestaurantDirectory,
    utc_now,
)
from .errors import DirectoryUnavailable, DispatchError, StateConflict, ValidationError
from .geo_index import GeoIndex
from .lifecycle import EventOutbox, LifecycleStateMachine
from .matcher import EligibilityMatcher
from .models import (
    AssignmentStatus,
    CancelResult,
    DeliveryAssignment,
    GeoPoint,
    GroupStatus,
    GroupView,
    MergeDecision,
    MergeOutcome,
    Order,
    OrderStatus,
    PartnerRecord,
    SubmitResult,
)
from .scheduler import AssignmentScheduler
from .settings import EngineSettings
from .store import InMemoryStore, UnitLockTable

logger = logging.getLogger(__name__)

# Attempts for operations that can lose a race against a concurrent claim.
CONFLICT_ATTEMPTS = 3


def new_tracking_id() -> str:
    return f"TRK-{uuid.uuid4().hex[:10].upper()}"


class ConsolidationEngine:
    """
    Order consolidation and delivery assignment engine.

    Example:
        >>> engine = ConsolidationEngine(restaurants, partners, sink)
        >>> result = engine.submit_order(order)
        >>> result.outcome
        <MergeOutcome.INDIVIDUAL: 'INDIVIDUAL'>
    """

    def __init__(
        self,
        restaurants: RestaurantDirectory,
        partners: PartnerDirectory,
        sink: NotificationSink,
        settings: Optional[EngineSettings] = None,
        store: Optional[InMemoryStore] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_group_id,
    ) -> None:
        self.settings = settings or EngineSettings.from_config()
        self.clock = clock
        self.store = store or InMemoryStore()
        self.locks = UnitLockTable()

        self.order_index = GeoIndex("orders", self.settings.geo_cell_size_km)
        self.partner_index = GeoIndex("partners", self.settings.geo_cell_size_km)
        self.restaurants = CachedRestaurantDirectory(
            restaurants, self.settings.directory_staleness, clock
        )
        self.partners = partners

        # Orders stored but whose merge attempt was cut short by a directory outage.
        self._unplaced: Set[str] = set()
        self._unplaced_lock = threading.Lock()

        self.outbox = EventOutbox(sink)
        self.lifecycle = LifecycleStateMachine(self.store, self.outbox, clock)
        self.matcher = EligibilityMatcher(
            self.store, self.order_index, self.restaurants, self.settings
        )
        self.coordinator = ConsolidationCoordinator(
            self.store, self.locks, self.order_index, self.lifecycle, self.matcher,
            self.settings, clock, id_factory,
        )
        self.scheduler = AssignmentScheduler(
            self.store, self.locks, self.partner_index, partners, self.lifecycle,
            self.coordinator, self.settings, clock,
        )

    # =========================================================================
    # ORDERS
    # =========================================================================

    def submit_order(self, order: Order) -> SubmitResult:
        """
        Accept a new order and try to merge it.

        Replaying a known order id is a no-op that returns the current
        outcome with ``duplicate=True``. The exception is an order whose
        merge attempt failed on a directory outage: replaying it runs the
        merge attempt again.

        Returns:
            SubmitResult; ``accepted=False`` with a reason for invalid input

        Raises:
            DirectoryUnavailable: The restaurant directory could not be reached
        """
        if order.order_id:
            existing = self.store.get_order(order.order_id)
            if existing is not None:
                if self._take_unplaced(existing.order_id):
                    return self._place_again(existing)
                return self._existing_result(existing)

        try:
            prepared = self._validate(order)
        except ValidationError as e:
            logger.info(f"Rejected order {order.order_id or '<no id>'}: {e}")
            return SubmitResult(accepted=False, order_id=order.order_id, reason=str(e))

        try:
            stored = self.store.insert_order(prepared)
        except StateConflict:
            return self._existing_result(self.store.require_order(order.order_id))

        try:
            return self._place(stored)
        except DirectoryUnavailable:
            with self._unplaced_lock:
                self._unplaced.add(stored.order_id)
            raise
        finally:
            self.outbox.flush()

    def _take_unplaced(self, order_id: str) -> bool:
        with self._unplaced_lock:
            if order_id not in self._unplaced:
                return False
            self._unplaced.discard(order_id)
            return True

    def _place_again(self, order: Order) -> SubmitResult:
        if order.group_order_id is not None or not order.status.is_mergeable:
            return self._existing_result(order)
        logger.info(f"Retrying merge attempt of {order.order_id}")
        try:
            return self._place(order)
        except DirectoryUnavailable:
            with self._unplaced_lock:
                self._unplaced.add(order.order_id)
            raise
        finally:
            self.outbox.flush()

    def _validate(self, order: Order) -> Order:
        if not order.order_id or not order.user_id or not order.restaurant_id:
            raise ValidationError("order_id, user_id and restaurant_id are required")
        if not isinstance(order.delivery_address, GeoPoint) or not order.delivery_address.is_valid():
            raise ValidationError(f"Invalid delivery address: {order.delivery_address!r}")
        if not isinstance(order.order_time, datetime):
            raise ValidationError("order_time must be a datetime")
        if not order.status.is_mergeable:
            raise ValidationError(f"Orders enter the engine PENDING or CONFIRMED, not {order.status.value}")

        restaurant = self.restaurants.get_restaurant(order.restaurant_id)
        if restaurant is None:
            raise ValidationError(f"Unknown restaurant: {order.restaurant_id}")
        if not restaurant.accepts_online_orders:
            raise ValidationError(f"Restaurant {order.restaurant_id} does not accept online orders")
        if not restaurant.is_open:
            raise ValidationError(f"Restaurant {order.restaurant_id} is closed")
        if not restaurant.location.is_valid():
            raise ValidationError(f"Restaurant {order.restaurant_id} has no valid location")

        return replace(
            order,
            items=list(order.items),
            group_order_id=None,
            tracking_id=order.tracking_id or new_tracking_id(),
            pickup_location=restaurant.location,
            dispatch_after=order.order_time + self.settings.formation_window,
            cancellation_reason=None,
            version=0,
        )

    def _place(self, order: Order) -> SubmitResult:
        if not self.settings.consolidation_enabled:
            assignment = self.scheduler.assign_single(order)
            return SubmitResult(True, order.order_id, outcome=MergeOutcome.INDIVIDUAL, assignment=assignment)

        self.order_index.upsert(order.order_id, order.delivery_address, order.order_time)
        candidates = self.matcher.find_candidates(order)
        if candidates:
            decision = self.coordinator.try_merge(order, candidates)
        else:
            decision = MergeDecision(MergeOutcome.INDIVIDUAL, order.order_id)

        if decision.is_grouped and decision.group is not None:
            group = decision.group
            assignment = None
            if group.status is GroupStatus.FINALIZED:
                assignment = self.scheduler.assign(group)
            return SubmitResult(
                True, order.order_id, outcome=MergeOutcome.GROUPED,
                group_order_id=group.group_order_id, assignment=assignment,
            )

        assignment = None
        if order.dispatch_after is not None and order.dispatch_after <= self.clock():
            self.order_index.remove(order.order_id)
            assignment = self.scheduler.assign_single(self.store.require_order(order.order_id))
        return SubmitResult(True, order.order_id, outcome=MergeOutcome.INDIVIDUAL, assignment=assignment)

    def _existing_result(self, order: Order) -> SubmitResult:
        if order.group_order_id is not None:
            return SubmitResult(
                True, order.order_id, outcome=MergeOutcome.GROUPED,
                group_order_id=order.group_order_id,
                assignment=self.store.get_assignment(order.group_order_id),
                duplicate=True,
            )
        return SubmitResult(
            True, order.order_id, outcome=MergeOutcome.INDIVIDUAL,
            assignment=self.store.get_assignment(order.order_id),
            duplicate=True,
        )

    def cancel_order(self, order_id: str, reason: str = "customer request") -> CancelResult:
        """
        Cancel an order.

        Ungrouped orders can be cancelled while PENDING or CONFIRMED. Group
        members can be cancelled until pickup; they stay in the member list
        and the group carries on with the rest. A group left without active
        members is disbanded and its partner released.
        """
        for attempt in range(1, CONFLICT_ATTEMPTS + 1):
            order = self.store.get_order(order_id)
            if order is None:
                return CancelResult(False, order_id, reason=f"Unknown order: {order_id}")
            key = order.group_order_id or order_id
            released: List[Optional[str]] = []
            try:
                with self.locks.hold(key):
                    fresh = self.store.require_order(order_id)
                    if (fresh.group_order_id or order_id) != key:
                        continue
                    if fresh.group_order_id is not None:
                        result = self._cancel_member_locked(fresh, reason, released)
                    else:
                        result = self._cancel_single_locked(fresh, reason, released)
            except StateConflict:
                if attempt == CONFLICT_ATTEMPTS or not self._changed(order_id, order.version):
                    raise
                continue
            finally:
                self.scheduler.release_partners(released)

            if result.accepted:
                self.order_index.remove(order_id)
                logger.info(f"Cancelled {order_id} ({reason})")
            self.outbox.flush()
            return result
        raise StateConflict(f"Order {order_id} kept changing during cancellation", order_id)

    def _cancel_single_locked(self, order: Order, reason: str, released: List[Optional[str]]) -> CancelResult:
        if not order.status.is_mergeable:
            return CancelResult(False, order.order_id, reason=f"Order is {order.status.value}")
        assignment = self.store.get_assignment(order.order_id)
        if assignment is not None and not assignment.status.is_terminal:
            self.scheduler.fail_locked(assignment, "order cancelled", released)
        order.cancellation_reason = reason
        self.lifecycle.transition_order(order, OrderStatus.CANCELLED, payload={"reason": reason})
        return CancelResult(True, order.order_id)

    def _cancel_member_locked(self, order: Order, reason: str, released: List[Optional[str]]) -> CancelResult:
        gid = order.group_order_id
        group = self.store.require_group(gid)
        if order.status.is_terminal or order.status.is_picked_up or \
                group.status in (GroupStatus.IN_TRANSIT, GroupStatus.COMPLETED):
            return CancelResult(
                False, order.order_id, reason=f"Order is {order.status.value}", group_order_id=gid
            )

        order.cancellation_reason = reason
        self.lifecycle.transition_order(order, OrderStatus.CANCELLED, payload={"reason": reason})
        group.cancelled_member_ids.append(order.order_id)
        group = self.store.save_group(group)

        if group.active_member_ids:
            return CancelResult(True, order.order_id, group_order_id=gid)

        assignment = self.store.get_assignment(gid)
        if assignment is not None and not assignment.status.is_terminal:
            self.scheduler.fail_locked(assignment, "all members cancelled", released)
        self.coordinator.disband_locked(group, "all members cancelled")
        return CancelResult(True, order.order_id, group_order_id=gid, group_disbanded=True)

    def get_group_status(self, group_order_id: str) -> GroupView:
        """
        Raises:
            ValidationError: Unknown group id
        """
        group = self.store.require_group(group_order_id)
        orders = self.store.get_orders(group.member_ids)
        return GroupView.build(group, orders, self.store.get_assignment(group_order_id))

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.store.get_order(order_id)

    def get_assignment(self, dispatch_id: str) -> Optional[DeliveryAssignment]:
        return self.store.get_assignment(dispatch_id)

    # =========================================================================
    # RESTAURANT-DRIVEN
    # =========================================================================

    def confirm_order(self, order_id: str) -> Order:
        return self._restaurant_transition(order_id, OrderStatus.CONFIRMED)

    def mark_preparing(self, order_id: str) -> Order:
        return self._restaurant_transition(order_id, OrderStatus.PREPARING)

    def mark_ready(self, order_id: str) -> Order:
        return self._restaurant_transition(order_id, OrderStatus.READY)

    def _restaurant_transition(self, order_id: str, target: OrderStatus) -> Order:
        for attempt in range(1, CONFLICT_ATTEMPTS + 1):
            order = self.store.require_order(order_id)
            key = order.group_order_id or order_id
            try:
                with self.locks.hold(key):
                    fresh = self.store.require_order(order_id)
                    if (fresh.group_order_id or order_id) != key:
                        continue
                    saved = self.lifecycle.transition_order(fresh, target)
            except StateConflict:
                if attempt == CONFLICT_ATTEMPTS or not self._changed(order_id, order.version):
                    raise
                continue
            self.outbox.flush()
            return saved
        raise StateConflict(f"Order {order_id} kept changing", order_id)

    def _changed(self, order_id: str, version: int) -> bool:
        current = self.store.get_order(order_id)
        return current is not None and current.version != version

    def restaurant_capacity_signal(self, restaurant_id: str) -> List[str]:
        """
        The restaurant cannot take more merged work right now: finalize its
        FORMING groups and dispatch them.

        Returns:
            Ids of the groups finalized by this call
        """
        finalized: List[str] = []
        try:
            for forming in self.coordinator.forming_groups_for_restaurant(restaurant_id):
                group = self.coordinator.finalize(forming.group_order_id, FINALIZE_CAPACITY)
                if group is None:
                    continue
                finalized.append(group.group_order_id)
                self.scheduler.assign(group)
        finally:
            self.outbox.flush()
        return finalized

    # =========================================================================
    # PARTNER-DRIVEN
    # =========================================================================

    def on_partner_offer(self, partner_id: str, dispatch_id: str, accepted: bool) -> AssignmentStatus:
        """Apply a partner's accept/reject answer to an open offer."""
        try:
            return self.scheduler.on_offer_response(partner_id, dispatch_id, accepted)
        finally:
            self.outbox.flush()

    def partner_cancelled(self, dispatch_id: str, partner_id: str) -> DeliveryAssignment:
        try:
            return self.scheduler.partner_cancelled(dispatch_id, partner_id)
        finally:
            self.outbox.flush()

    def mark_picked_up(self, dispatch_id: str) -> DeliveryAssignment:
        try:
            return self.scheduler.mark_picked_up(dispatch_id)
        finally:
            self.outbox.flush()

    def mark_in_transit(self, dispatch_id: str) -> DeliveryAssignment:
        try:
            return self.scheduler.mark_in_transit(dispatch_id)
        finally:
            self.outbox.flush()

    def mark_delivered(self, dispatch_id: str) -> DeliveryAssignment:
        try:
            return self.scheduler.mark_delivered(dispatch_id)
        finally:
            self.outbox.flush()

    def update_partner(self, record: PartnerRecord) -> None:
        self.scheduler.update_partner(record)

    def remove_partner(self, partner_id: str) -> None:
        self.scheduler.remove_partner(partner_id)

    # =========================================================================
    # SWEEPS
    # =========================================================================

    def sweep_formation(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One pass over forming groups and held individual orders.

        - FORMING groups are topped up, then finalized and dispatched once
          their formation deadline has passed
        - Ungrouped orders whose hold has elapsed are dispatched alone

        Returns:
            Counts of extended, finalized and individually dispatched units
        """
        now = now or self.clock()
        stats = {"extended": 0, "finalized": 0, "dispatched_alone": 0}

        for forming in self.store.list_groups(GroupStatus.FORMING):
            gid = forming.group_order_id
            try:
                group = self.coordinator.extend(gid)
                if group.size > forming.size:
                    stats["extended"] += 1
            except DispatchError as e:
                logger.warning(f"Extending {gid} failed: {e}")
                group = self.store.require_group(gid)
            try:
                if group.status is GroupStatus.FORMING and now >= group.formation_deadline:
                    group = self.coordinator.finalize(gid, FINALIZE_DEADLINE)
                    if group is not None:
                        stats["finalized"] += 1
                if group is not None and group.status is GroupStatus.FINALIZED:
                    self.scheduler.assign(group)
            except DispatchError as e:
                logger.warning(f"Finalizing {gid} failed: {e}")

        for order_id in self.order_index.ids():
            order = self.store.get_order(order_id)
            if order is None or order.group_order_id is not None:
                continue
            if order.status.is_terminal:
                self.order_index.remove(order_id)
                continue
            if order.dispatch_after is not None and order.dispatch_after > now:
                continue
            self.order_index.remove(order_id)
            try:
                self.scheduler.assign_single(order)
                stats["dispatched_alone"] += 1
            except DispatchError as e:
                logger.warning(f"Standalone dispatch of {order_id} failed: {e}")

        self.outbox.flush()
        if any(stats.values()):
            logger.debug(f"Formation sweep at {now}: {stats}")
        return stats

    def sweep_assignments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One pass over assignments.

        - Offers past the acceptance timeout are treated as rejections
        - PENDING and REJECTED assignments get another offer attempt
        - Orders left without a live unit (failed standalone dispatch,
          deferred fallback) are dispatched alone again

        Returns:
            Counts of timed-out offers, retried units and re-dispatched orders
        """
        now = now or self.clock()
        stats = {
            "timed_out": len(self.scheduler.expire_offers(now)),
            "retried": self.scheduler.retry_waiting(),
            "redispatched": self._dispatch_orphans(now),
        }
        self.outbox.flush()
        return stats

    def _dispatch_orphans(self, now: datetime) -> int:
        dispatched = 0
        for order in self.store.list_orders(self._is_orphan):
            if order.order_id in self.order_index:
                continue
            assignment = self.store.get_assignment(order.order_id)
            if assignment is not None and not assignment.status.is_terminal:
                continue
            if order.dispatch_after is not None and order.dispatch_after > now:
                continue
            try:
                self.scheduler.assign_single(order)
                dispatched += 1
            except DispatchError as e:
                logger.warning(f"Re-dispatch of {order.order_id} failed: {e}")
        return dispatched

    def _is_orphan(self, order: Order) -> bool:
        # Runs under the store lock: only look at the order itself.
        return order.group_order_id is None and not order.status.is_terminal

    # =========================================================================
    # RECOVERY
    # =========================================================================

    def recover(self) -> Dict[str, Any]:
        """
        Rebuild in-memory state from the store.

        Resets the lock table, rebuilds the order index from stored orders
        and drops the partner snapshot (refreshed on the next search), then
        re-queues finalized groups and waiting assignments that lost their
        offer. Call before the engine takes traffic.
        """
        self.locks.reset()
        self.order_index.clear()
        self.scheduler.reset_partners()
        self.restaurants.invalidate()

        forming = {g.group_order_id for g in self.store.list_groups(GroupStatus.FORMING)}
        indexed = 0
        for order in self.store.list_orders(lambda o: not o.status.is_terminal):
            if order.group_order_id is not None:
                keep = order.group_order_id in forming
            else:
                keep = self.store.get_assignment(order.order_id) is None
            if keep:
                self.order_index.upsert(order.order_id, order.delivery_address, order.order_time)
                indexed += 1

        requeued = 0
        for group in self.store.list_groups(GroupStatus.FINALIZED):
            assignment = self.store.get_assignment(group.group_order_id)
            if assignment is not None and not assignment.status.is_terminal:
                continue
            try:
                self.scheduler.assign(group)
                requeued += 1
            except DispatchError as e:
                logger.warning(f"Re-queueing {group.group_order_id} failed: {e}")
        requeued += self.scheduler.retry_waiting()

        self.outbox.flush()
        summary = {
            "orders": len(self.store.list_orders()),
            "indexed_orders": indexed,
            "forming_groups": len(forming),
            "requeued_units": requeued,
        }
        logger.info(f"Recovered engine state: {summary}")
        return summary

    def flush_events(self) -> int:
        return self.outbox.flush()
