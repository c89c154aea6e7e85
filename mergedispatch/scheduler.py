# mergeeats-dispatch/mergedispatch/scheduler.py
"""
Assignment Scheduler for the MergeEats engine.

Offers each dispatch unit (a finalized group, or a standalone order) to one
delivery partner at a time:

1. Search centre = centroid of the members' pickup locations (or the nearest
   pickup when the centroid falls outside the service area)
2. Candidates = available partners within ``assignment_radius_km``, closest
   first, then longest idle, excluding partners already tried and partners
   whose capacity is below the unit's order count
3. ``reserve`` the first candidate and send the offer. A failed reservation
   skips the partner without costing a retry
4. Reject, timeout or an empty search cost one retry. After ``retry_budget``
   retries a group is disbanded and its members dispatched alone; a
   standalone assignment fails and the sweep starts over

Partner index queries and directory refreshes happen before the unit lock is
taken; index updates for reserved/released partners happen after it is
released.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import utils
from .coordinator import ConsolidationCoordinator
from .directory import PartnerDirectory
from .errors import AssignmentExhausted, DirectoryUnavailable, DispatchError, StateConflict, ValidationError
from .geo_index import GeoIndex
from .lifecycle import LifecycleStateMachine
from .models import (
    AssignmentStatus,
    DeliveryAssignment,
    GeoPoint,
    GroupOrder,
    GroupStatus,
    Order,
    OrderStatus,
    PartnerRecord,
)
from .settings import EngineSettings
from .store import InMemoryStore, UnitLockTable

logger = logging.getLogger(__name__)

WAITING_STATUSES = (AssignmentStatus.PENDING, AssignmentStatus.REJECTED)
DISBAND_REASSIGN = "reassigning individually"


class AssignmentScheduler:
    """
    Drives DeliveryAssignments from PENDING to COMPLETED or FAILED.

    Attributes:
        store: Record store
        locks: Unit lock table
        partner_index: GeoIndex over available partners
        partners: Partner directory (listing, reserve, release)
        lifecycle: State machine used for every status change
        coordinator: Used to disband groups whose budget is spent
        settings: Engine settings
    """

    def __init__(
        self,
        store: InMemoryStore,
        locks: UnitLockTable,
        partner_index: GeoIndex,
        partners: PartnerDirectory,
        lifecycle: LifecycleStateMachine,
        coordinator: ConsolidationCoordinator,
        settings: EngineSettings,
        clock: Callable[[], datetime],
    ) -> None:
        self.store = store
        self.locks = locks
        self.partner_index = partner_index
        self.partners = partners
        self.lifecycle = lifecycle
        self.coordinator = coordinator
        self.settings = settings
        self.clock = clock

        self._known: Dict[str, PartnerRecord] = {}
        self._refreshed_at: Dict[Tuple[int, int], datetime] = {}
        self._partner_lock = threading.Lock()

    # =========================================================================
    # PARTNER FEED
    # =========================================================================

    def update_partner(self, record: PartnerRecord) -> None:
        """Apply one availability update to the partner index."""
        with self._partner_lock:
            self._known[record.partner_id] = record
        if record.is_available:
            self.partner_index.upsert(record.partner_id, record.location, record.idle_since)
        else:
            self.partner_index.remove(record.partner_id)

    def remove_partner(self, partner_id: str) -> None:
        with self._partner_lock:
            self._known.pop(partner_id, None)
        self.partner_index.remove(partner_id)

    def reset_partners(self) -> None:
        """Forget the partner snapshot; the next search refreshes it."""
        with self._partner_lock:
            self._known.clear()
            self._refreshed_at.clear()
        self.partner_index.clear()

    def _refresh_partners(self, center: GeoPoint) -> None:
        # One refresh per assignment-radius cell per staleness period.
        size = self.settings.assignment_radius_km
        key = (
            math.floor(center.lat / utils.km_to_lat_degrees(size)),
            math.floor(center.lng / utils.km_to_lng_degrees(size, center.lat)),
        )
        now = self.clock()
        with self._partner_lock:
            last = self._refreshed_at.get(key)
        if last is not None and now - last <= self.settings.directory_staleness:
            return

        try:
            records = self.partners.list_available_partners(center, size)
        except DirectoryUnavailable as e:
            logger.warning(f"Partner refresh failed, using the last snapshot: {e}")
            return

        listed = {r.partner_id for r in records}
        for record in records:
            self.update_partner(record)
        for partner_id in self.partner_index.query(center, size, filter=lambda p: p not in listed):
            self.partner_index.remove(partner_id)
        with self._partner_lock:
            self._refreshed_at[key] = now
        logger.debug(f"Refreshed {len(records)} partners around {center}")

    # =========================================================================
    # SEARCH
    # =========================================================================

    def search_center(self, orders: List[Order]) -> GeoPoint:
        """
        Where to look for a partner for a set of orders.

        Returns:
            Centroid of the pickup locations, or the pickup nearest to it if
            the centroid is outside the service area
        """
        pickups = [o.pickup_location or o.delivery_address for o in orders]
        center = utils.centroid(pickups)
        if utils.in_service_area(center, self.settings.service_area):
            return center
        return utils.nearest_point(center, pickups)

    def rank_partners(self, center: GeoPoint, exclude: Set[str], order_count: int = 1) -> List[str]:
        """
        Partner ids in offer order: nearest first, then longest idle.

        Partners whose capacity is below ``order_count`` are left out.
        """
        self._refresh_partners(center)
        with self._partner_lock:
            too_small = {
                pid for pid, record in self._known.items() if record.capacity < order_count
            }
        return self.partner_index.query(
            center, self.settings.assignment_radius_km,
            filter=lambda p: p not in exclude and p not in too_small,
        )

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def assign(self, group: GroupOrder) -> DeliveryAssignment:
        """
        Create the assignment of a FINALIZED group and make the first offer.

        Idempotent: a group with a live assignment gets that assignment back.

        Raises:
            StateConflict: The group is not FINALIZED
        """
        gid = group.group_order_id
        with self.locks.hold(gid):
            group = self.store.require_group(gid)
            existing = self.store.get_assignment(gid)
            if existing is not None and not existing.status.is_terminal:
                return existing
            if group.status is not GroupStatus.FINALIZED:
                raise StateConflict(
                    f"Group {gid} is {group.status.value}, cannot assign", gid, group.status.value
                )
            self.store.insert_assignment(DeliveryAssignment(
                dispatch_id=gid,
                order_ids=group.active_member_ids,
                created_at=self.clock(),
                group_order_id=gid,
            ))
            logger.info(f"Dispatching group {gid} with {group.active_member_ids}")
        return self._advance(gid)

    def assign_single(self, order: Order) -> DeliveryAssignment:
        """
        Dispatch one order on its own. Never creates a GroupOrder.

        Raises:
            StateConflict: The order is terminal or claimed by a group
        """
        oid = order.order_id
        with self.locks.hold(oid):
            fresh = self.store.require_order(oid)
            existing = self.store.get_assignment(oid)
            if existing is not None and not existing.status.is_terminal:
                return existing
            if fresh.status.is_terminal or fresh.group_order_id is not None:
                raise StateConflict(
                    f"Order {oid} cannot be dispatched alone", oid, fresh.status.value
                )
            self.store.insert_assignment(DeliveryAssignment(
                dispatch_id=oid, order_ids=[oid], created_at=self.clock(),
            ))
            logger.info(f"Dispatching order {oid} alone")
        return self._advance(oid)

    def _advance(self, dispatch_id: str) -> DeliveryAssignment:
        """Offer a waiting assignment to the next partner."""
        assignment = self.store.get_assignment(dispatch_id)
        if assignment is None or assignment.status not in WAITING_STATUSES:
            return assignment

        orders = self._active_orders(assignment)
        if not orders:
            return assignment
        ranked = self.rank_partners(
            self.search_center(orders), set(assignment.tried_partner_ids), len(orders)
        )

        # Directory I/O happens before the unit lock; the state is re-read under it.
        taken: List[str] = []
        partner_id = self._reserve_first(ranked, taken)
        unused: List[str] = []
        survivors: List[str] = []
        try:
            with self.locks.hold(dispatch_id):
                assignment = self.store.get_assignment(dispatch_id)
                if (assignment.status not in WAITING_STATUSES
                        or partner_id in assignment.tried_partner_ids):
                    unused.append(partner_id)
                    return assignment
                try:
                    assignment = self._offer_locked(assignment, partner_id)
                except AssignmentExhausted as e:
                    assignment, survivors = self._exhaust_locked(dispatch_id, e)
        finally:
            for taken_id in taken:
                self.partner_index.remove(taken_id)
            self.release_partners(unused)

        self._dispatch_survivors(survivors)
        return assignment

    def _reserve_first(self, ranked: List[str], taken: List[str]) -> Optional[str]:
        for partner_id in ranked:
            taken.append(partner_id)
            if self.partners.reserve(partner_id):
                return partner_id
            logger.debug(f"Partner {partner_id} already taken, skipping")
        return None

    def _offer_locked(
        self, assignment: DeliveryAssignment, partner_id: Optional[str]
    ) -> DeliveryAssignment:
        if partner_id is not None:
            now = self.clock()
            assignment.partner_id = partner_id
            assignment.tried_partner_ids.append(partner_id)
            assignment.offered_at = now
            assignment = self.lifecycle.transition_assignment(
                assignment, AssignmentStatus.OFFERED,
                {"offerExpiresAt": (now + self.settings.offer_timeout).isoformat()},
            )
            logger.info(f"Offered {assignment.dispatch_id} to {partner_id}")
            return assignment

        assignment.retry_count += 1
        logger.info(
            f"No partner for {assignment.dispatch_id} "
            f"(attempt {assignment.retry_count}/{self.settings.retry_budget})"
        )
        if assignment.status is AssignmentStatus.REJECTED:
            assignment = self.lifecycle.transition_assignment(
                assignment, AssignmentStatus.PENDING, {"reason": "no partner available"}
            )
        else:
            assignment = self.store.save_assignment(assignment)
        self._check_budget(assignment)
        return assignment

    def _check_budget(self, assignment: DeliveryAssignment) -> None:
        if assignment.retry_count >= self.settings.retry_budget:
            raise AssignmentExhausted(assignment.dispatch_id, assignment.retry_count)

    def _exhaust_locked(
        self, dispatch_id: str, error: AssignmentExhausted
    ) -> Tuple[DeliveryAssignment, List[str]]:
        logger.warning(str(error))
        assignment = self.store.get_assignment(dispatch_id)
        assignment.failure_reason = "retry budget exhausted"
        assignment.partner_id = None
        assignment = self.lifecycle.transition_assignment(
            assignment, AssignmentStatus.FAILED, {"reason": assignment.failure_reason}
        )
        if assignment.is_standalone:
            return assignment, []

        group = self.store.require_group(assignment.group_order_id)
        if group.status.is_terminal:
            return assignment, []
        _, survivors = self.coordinator.disband_locked(group, DISBAND_REASSIGN)
        return assignment, survivors

    def _dispatch_survivors(self, order_ids: List[str]) -> None:
        for order_id in order_ids:
            order = self.store.get_order(order_id)
            if order is None:
                continue
            try:
                self.assign_single(order)
            except DispatchError as e:
                # The assignment sweep picks up orders left without a unit.
                logger.warning(f"Standalone dispatch of {order_id} deferred: {e}")

    # =========================================================================
    # OFFER RESPONSES
    # =========================================================================

    def on_offer_response(self, partner_id: str, dispatch_id: str, accepted: bool) -> AssignmentStatus:
        """
        Apply a partner's answer to an open offer.

        Returns:
            IN_PROGRESS on accept; on reject the status after the next offer
            attempt (OFFERED, PENDING, or FAILED once the budget is spent)

        Raises:
            ValidationError: Unknown dispatch id
            StateConflict: No open offer of this unit to this partner
        """
        released: List[str] = []
        survivors: List[str] = []
        with self.locks.hold(dispatch_id):
            assignment = self.store.get_assignment(dispatch_id)
            if assignment is None:
                raise ValidationError(f"Unknown dispatch: {dispatch_id}")
            if assignment.status is not AssignmentStatus.OFFERED or assignment.partner_id != partner_id:
                raise StateConflict(
                    f"No open offer of {dispatch_id} to {partner_id}",
                    dispatch_id, assignment.status.value,
                )
            if accepted:
                assignment = self._accept_locked(assignment)
            else:
                assignment, survivors = self._reject_locked(assignment, "rejected", released)

        self.release_partners(released)
        self._dispatch_survivors(survivors)
        if assignment.status in WAITING_STATUSES:
            assignment = self._advance(dispatch_id)
        return assignment.status

    def _accept_locked(self, assignment: DeliveryAssignment) -> DeliveryAssignment:
        group = None
        if not assignment.is_standalone:
            # Group state is checked before anything is written.
            group = self.store.require_group(assignment.group_order_id)
            if group.status is not GroupStatus.FINALIZED:
                raise StateConflict(
                    f"Group {group.group_order_id} is {group.status.value}, cannot accept",
                    group.group_order_id, group.status.value,
                )
        assignment.assigned_at = self.clock()
        assignment = self.lifecycle.transition_assignment(assignment, AssignmentStatus.ACCEPTED)
        assignment = self.lifecycle.transition_assignment(assignment, AssignmentStatus.IN_PROGRESS)
        if group is not None:
            group.assigned_partner_id = assignment.partner_id
            self.lifecycle.transition_group(group, GroupStatus.ASSIGNED)
        logger.info(f"Partner {assignment.partner_id} accepted {assignment.dispatch_id}")
        return assignment

    def _reject_locked(
        self, assignment: DeliveryAssignment, reason: str, released: List[str]
    ) -> Tuple[DeliveryAssignment, List[str]]:
        partner_id = assignment.partner_id
        released.append(partner_id)
        assignment.retry_count += 1
        assignment.partner_id = None
        assignment = self.lifecycle.transition_assignment(
            assignment, AssignmentStatus.REJECTED, {"rejectedBy": partner_id, "reason": reason}
        )
        try:
            self._check_budget(assignment)
        except AssignmentExhausted as e:
            return self._exhaust_locked(assignment.dispatch_id, e)
        return assignment, []

    def release_partners(self, partner_ids: List[Optional[str]]) -> None:
        """Return partners to the directory and the index (call without locks)."""
        now = self.clock()
        for partner_id in partner_ids:
            if partner_id is None:
                continue
            try:
                self.partners.release(partner_id)
            except DirectoryUnavailable as e:
                logger.warning(f"Releasing partner {partner_id} failed: {e}")
                continue
            with self._partner_lock:
                record = self._known.get(partner_id)
            if record is not None:
                self.update_partner(replace(record, busy=False, idle_since=now))

    # =========================================================================
    # SWEEP HOOKS
    # =========================================================================

    def expire_offers(self, now: datetime) -> List[str]:
        """Reject every offer older than the acceptance timeout."""
        expired: List[str] = []
        for stale in self.store.list_assignments(AssignmentStatus.OFFERED):
            if stale.offered_at is None or stale.offered_at + self.settings.offer_timeout > now:
                continue
            released: List[str] = []
            survivors: List[str] = []
            try:
                with self.locks.hold(stale.dispatch_id):
                    assignment = self.store.get_assignment(stale.dispatch_id)
                    if (assignment.status is not AssignmentStatus.OFFERED
                            or assignment.offered_at != stale.offered_at):
                        continue
                    logger.warning(
                        f"Offer of {assignment.dispatch_id} to {assignment.partner_id} timed out"
                    )
                    assignment, survivors = self._reject_locked(assignment, "timeout", released)
                self.release_partners(released)
                self._dispatch_survivors(survivors)
                expired.append(stale.dispatch_id)
                if assignment.status in WAITING_STATUSES:
                    self._advance(stale.dispatch_id)
            except DispatchError as e:
                logger.warning(f"Timeout handling of {stale.dispatch_id} failed: {e}")
        return expired

    def retry_waiting(self) -> int:
        """Make another offer attempt for every PENDING or REJECTED assignment."""
        attempted = 0
        for waiting in self.store.list_assignments():
            if waiting.status not in WAITING_STATUSES:
                continue
            try:
                self._advance(waiting.dispatch_id)
                attempted += 1
            except DispatchError as e:
                logger.warning(f"Offer retry of {waiting.dispatch_id} failed: {e}")
        return attempted

    # =========================================================================
    # PARTNER-DRIVEN PROGRESS
    # =========================================================================

    def partner_cancelled(self, dispatch_id: str, partner_id: str) -> DeliveryAssignment:
        """
        The assigned partner dropped the unit before pickup.

        The current assignment fails, a group goes back to FINALIZED, and a
        new assignment for the same unit re-enters the offer loop with the
        retry count carried over (plus one).

        Raises:
            StateConflict: The partner does not hold the unit, or the orders
                were already picked up
        """
        released: List[str] = []
        survivors: List[str] = []
        with self.locks.hold(dispatch_id):
            assignment = self._require_assignment(dispatch_id)
            if (assignment.partner_id != partner_id or assignment.status
                    not in (AssignmentStatus.ACCEPTED, AssignmentStatus.IN_PROGRESS)):
                raise StateConflict(
                    f"Partner {partner_id} does not hold {dispatch_id}",
                    dispatch_id, assignment.status.value,
                )
            orders = self._active_orders(assignment)
            if any(o.status.is_picked_up for o in orders):
                raise StateConflict(
                    f"{dispatch_id} was already picked up", dispatch_id, assignment.status.value
                )

            released.append(partner_id)
            assignment.failure_reason = "partner cancelled"
            assignment = self.lifecycle.transition_assignment(
                assignment, AssignmentStatus.FAILED, {"reason": assignment.failure_reason}
            )
            if not assignment.is_standalone:
                group = self.store.require_group(assignment.group_order_id)
                group.assigned_partner_id = None
                self.lifecycle.transition_group(
                    group, GroupStatus.FINALIZED, {"reason": "partner cancelled"}
                )
            logger.warning(f"Partner {partner_id} cancelled {dispatch_id} before pickup")

            replacement = self.store.insert_assignment(DeliveryAssignment(
                dispatch_id=dispatch_id,
                order_ids=[o.order_id for o in orders],
                created_at=self.clock(),
                group_order_id=assignment.group_order_id,
                retry_count=assignment.retry_count + 1,
                tried_partner_ids=list(assignment.tried_partner_ids),
            ))
            try:
                self._check_budget(replacement)
            except AssignmentExhausted as e:
                replacement, survivors = self._exhaust_locked(dispatch_id, e)

        self.release_partners(released)
        self._dispatch_survivors(survivors)
        if replacement.status in WAITING_STATUSES:
            replacement = self._advance(dispatch_id)
        return replacement

    def mark_picked_up(self, dispatch_id: str) -> DeliveryAssignment:
        """
        The partner collected the unit. Every active order must be READY.

        Raises:
            StateConflict: Assignment not in progress, or an order not READY
        """
        with self.locks.hold(dispatch_id):
            assignment = self._require_in_progress(dispatch_id)
            orders = self._active_orders(assignment)
            not_ready = [o.order_id for o in orders if o.status is not OrderStatus.READY]
            if not_ready:
                raise StateConflict(
                    f"{dispatch_id} cannot be picked up, not ready: {not_ready}",
                    dispatch_id, assignment.status.value,
                )
            for order in orders:
                self.lifecycle.transition_order(order, OrderStatus.PICKED_UP, unit_driven=True)
            if not assignment.is_standalone:
                group = self.store.require_group(assignment.group_order_id)
                self.lifecycle.transition_group(group, GroupStatus.IN_TRANSIT)
        logger.info(f"{dispatch_id} picked up by {assignment.partner_id}")
        return assignment

    def mark_in_transit(self, dispatch_id: str) -> DeliveryAssignment:
        with self.locks.hold(dispatch_id):
            assignment = self._require_in_progress(dispatch_id)
            for order in self._active_orders(assignment):
                self.lifecycle.transition_order(order, OrderStatus.IN_TRANSIT, unit_driven=True)
        return assignment

    def mark_delivered(self, dispatch_id: str) -> DeliveryAssignment:
        """Deliver every active order, complete the unit and free the partner."""
        with self.locks.hold(dispatch_id):
            assignment = self._require_in_progress(dispatch_id)
            for order in self._active_orders(assignment):
                self.lifecycle.transition_order(order, OrderStatus.DELIVERED, unit_driven=True)
            if not assignment.is_standalone:
                group = self.store.require_group(assignment.group_order_id)
                self.lifecycle.transition_group(group, GroupStatus.COMPLETED)
            assignment.completed_at = self.clock()
            assignment = self.lifecycle.transition_assignment(assignment, AssignmentStatus.COMPLETED)
            partner_id = assignment.partner_id
        self.release_partners([partner_id])
        logger.info(f"{dispatch_id} delivered by {partner_id}")
        return assignment

    # =========================================================================
    # CANCELLATION SUPPORT
    # =========================================================================

    def fail_locked(
        self, assignment: DeliveryAssignment, reason: str, released: List[str]
    ) -> DeliveryAssignment:
        """
        Fail a live assignment whose unit lock the caller holds.

        An open offer is withdrawn first (OFFERED -> REJECTED -> FAILED).
        The partner, if any, is appended to ``released``.
        """
        if assignment.status.is_terminal:
            return assignment
        if assignment.partner_id is not None:
            released.append(assignment.partner_id)
        if assignment.status is AssignmentStatus.OFFERED:
            assignment = self.lifecycle.transition_assignment(
                assignment, AssignmentStatus.REJECTED, {"reason": reason}
            )
        assignment.failure_reason = reason
        assignment.partner_id = None
        return self.lifecycle.transition_assignment(
            assignment, AssignmentStatus.FAILED, {"reason": reason}
        )

    # -------------------------------------------------------------------------

    def _require_assignment(self, dispatch_id: str) -> DeliveryAssignment:
        assignment = self.store.get_assignment(dispatch_id)
        if assignment is None:
            raise ValidationError(f"Unknown dispatch: {dispatch_id}")
        return assignment

    def _require_in_progress(self, dispatch_id: str) -> DeliveryAssignment:
        assignment = self._require_assignment(dispatch_id)
        if assignment.status is not AssignmentStatus.IN_PROGRESS:
            raise StateConflict(
                f"{dispatch_id} is {assignment.status.value}, not IN_PROGRESS",
                dispatch_id, assignment.status.value,
            )
        return assignment

    def _active_orders(self, assignment: DeliveryAssignment) -> List[Order]:
        return [
            o for o in self.store.get_orders(assignment.order_ids)
            if o.status is not OrderStatus.CANCELLED
        ]
