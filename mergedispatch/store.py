# mergeeats-dispatch/mergedispatch/store.py
"""
Versioned record store and the per-unit lock table.

The store holds Order, GroupOrder and DeliveryAssignment records. It is the
engine's only persistence seam; every access goes through an explicit
function with stated pre- and post-conditions. Nothing is loaded lazily and
nothing cascades: saving a group never touches its orders.

Records are copied on the way in and on the way out, so a caller holding a
record can never mutate stored state without calling a ``save_*`` function.

Versioning:
    Every record carries a ``version``. Inserts store version 1. ``save_*``
    requires the caller's copy to carry the stored version (optimistic
    concurrency) and stores ``version + 1``; a mismatch raises StateConflict.

Claims:
    ``Order.group_order_id`` is never written by ``save_order``. It changes
    only through ``claim_order`` (compare-and-set from None) and
    ``release_claim`` (compare-and-set back to None).
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import StateConflict, ValidationError
from .models import AssignmentStatus, DeliveryAssignment, GroupOrder, GroupStatus, Order

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Thread-safe in-memory implementation of the record store."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._groups: Dict[str, GroupOrder] = {}
        self._assignments: Dict[str, DeliveryAssignment] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # ORDERS
    # =========================================================================

    def insert_order(self, order: Order) -> Order:
        """
        Store a new order.

        Pre: no order with the same id exists.
        Post: stored copy has version 1 and no group claim.

        Raises:
            StateConflict: If the id is already taken
        """
        with self._lock:
            if order.order_id in self._orders:
                raise StateConflict(f"Order {order.order_id} already exists", order.order_id)
            stored = copy.deepcopy(order)
            stored.version = 1
            stored.group_order_id = None
            self._orders[order.order_id] = stored
            return copy.deepcopy(stored)

    def get_order(self, order_id: str) -> Optional[Order]:
        """Return a copy of the order, or None if unknown."""
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order is not None else None

    def require_order(self, order_id: str) -> Order:
        """Like ``get_order`` but raises ValidationError for an unknown id."""
        order = self.get_order(order_id)
        if order is None:
            raise ValidationError(f"Unknown order: {order_id}")
        return order

    def get_orders(self, order_ids: List[str]) -> List[Order]:
        """Return copies of the known orders among ``order_ids``, in that order."""
        with self._lock:
            return [copy.deepcopy(self._orders[i]) for i in order_ids if i in self._orders]

    def save_order(self, order: Order) -> Order:
        """
        Persist changes to an order.

        Pre: ``order.version`` equals the stored version and
            ``order.group_order_id`` equals the stored claim.
        Post: stored version is incremented; the returned copy carries it.

        Raises:
            ValidationError: Unknown order
            StateConflict: Stale version or an attempt to rewrite the claim
        """
        with self._lock:
            stored = self._orders.get(order.order_id)
            if stored is None:
                raise ValidationError(f"Unknown order: {order.order_id}")
            if stored.version != order.version:
                raise StateConflict(
                    f"Order {order.order_id} changed (v{order.version} != v{stored.version})",
                    order.order_id, stored.status.value,
                )
            if stored.group_order_id != order.group_order_id:
                raise StateConflict(
                    f"Order {order.order_id} group claim is written only by claim_order",
                    order.order_id, stored.status.value,
                )
            updated = copy.deepcopy(order)
            updated.version = stored.version + 1
            self._orders[order.order_id] = updated
            return copy.deepcopy(updated)

    def claim_order(self, order_id: str, group_order_id: str) -> bool:
        """
        Atomically claim an order for a group.

        Succeeds only if the order exists, has no claim, is still mergeable
        (PENDING or CONFIRMED) and has not been dispatched on its own.

        Post (on success): ``group_order_id`` is set and the version bumped.

        Returns:
            True if this call won the claim
        """
        with self._lock:
            stored = self._orders.get(order_id)
            if stored is None or stored.group_order_id is not None:
                return False
            if not stored.status.is_mergeable:
                return False
            standalone = self._assignments.get(order_id)
            if standalone is not None and not standalone.status.is_terminal:
                return False
            stored.group_order_id = group_order_id
            stored.version += 1
            return True

    def release_claim(self, order_id: str, group_order_id: str) -> bool:
        """
        Clear a claim held by ``group_order_id``.

        Only the group that holds the claim can release it. Used when a new
        group fails to form and when a group is disbanded.

        Returns:
            True if the claim was held by that group and is now cleared
        """
        with self._lock:
            stored = self._orders.get(order_id)
            if stored is None or stored.group_order_id != group_order_id:
                return False
            stored.group_order_id = None
            stored.version += 1
            return True

    def list_orders(self, predicate: Optional[Callable[[Order], bool]] = None) -> List[Order]:
        """Return copies of all orders matching ``predicate``."""
        with self._lock:
            return [
                copy.deepcopy(o) for o in self._orders.values()
                if predicate is None or predicate(o)
            ]

    # =========================================================================
    # GROUPS
    # =========================================================================

    def insert_group(self, group: GroupOrder) -> GroupOrder:
        """
        Store a new group.

        Raises:
            StateConflict: If the id is already taken
        """
        with self._lock:
            if group.group_order_id in self._groups:
                raise StateConflict(f"Group {group.group_order_id} already exists", group.group_order_id)
            stored = copy.deepcopy(group)
            stored.version = 1
            self._groups[group.group_order_id] = stored
            return copy.deepcopy(stored)

    def get_group(self, group_order_id: str) -> Optional[GroupOrder]:
        with self._lock:
            group = self._groups.get(group_order_id)
            return copy.deepcopy(group) if group is not None else None

    def require_group(self, group_order_id: str) -> GroupOrder:
        group = self.get_group(group_order_id)
        if group is None:
            raise ValidationError(f"Unknown group order: {group_order_id}")
        return group

    def save_group(self, group: GroupOrder) -> GroupOrder:
        """
        Persist changes to a group.

        Pre: ``group.version`` equals the stored version. A frozen group's
            member list must be unchanged.
        Post: stored version is incremented.

        Raises:
            ValidationError: Unknown group
            StateConflict: Stale version, or membership changed after FORMING
        """
        with self._lock:
            stored = self._groups.get(group.group_order_id)
            if stored is None:
                raise ValidationError(f"Unknown group order: {group.group_order_id}")
            if stored.version != group.version:
                raise StateConflict(
                    f"Group {group.group_order_id} changed (v{group.version} != v{stored.version})",
                    group.group_order_id, stored.status.value,
                )
            if stored.status.is_frozen and stored.member_ids != group.member_ids:
                raise StateConflict(
                    f"Group {group.group_order_id} membership is frozen",
                    group.group_order_id, stored.status.value,
                )
            if group.member_ids[: len(stored.member_ids)] != stored.member_ids:
                raise StateConflict(
                    f"Group {group.group_order_id} membership is append-only",
                    group.group_order_id, stored.status.value,
                )
            updated = copy.deepcopy(group)
            updated.version = stored.version + 1
            self._groups[group.group_order_id] = updated
            return copy.deepcopy(updated)

    def list_groups(self, status: Optional[GroupStatus] = None) -> List[GroupOrder]:
        """Return copies of all groups, optionally only those in ``status``."""
        with self._lock:
            return [
                copy.deepcopy(g) for g in self._groups.values()
                if status is None or g.status is status
            ]

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    def insert_assignment(self, assignment: DeliveryAssignment) -> DeliveryAssignment:
        """
        Store a new assignment for a dispatch unit.

        Pre: no assignment exists for ``dispatch_id``, or the existing one is
            terminal (a standalone order can be dispatched again after a
            failed attempt).
        Post: stored copy has version ``previous + 1`` (1 for a first insert)
            so event versions keep increasing per dispatch id.

        Pre (standalone): the order exists and holds no group claim. Checked
            under the same lock as ``claim_order``, so an order is never both
            dispatched alone and claimed by a group.

        Raises:
            StateConflict: A live assignment already exists, or the
                standalone order was claimed by a group
        """
        with self._lock:
            existing = self._assignments.get(assignment.dispatch_id)
            if existing is not None and not existing.status.is_terminal:
                raise StateConflict(
                    f"Dispatch {assignment.dispatch_id} already has a live assignment",
                    assignment.dispatch_id, existing.status.value,
                )
            if assignment.group_order_id is None:
                order = self._orders.get(assignment.dispatch_id)
                if order is None or order.group_order_id is not None:
                    raise StateConflict(
                        f"Order {assignment.dispatch_id} cannot be dispatched alone",
                        assignment.dispatch_id,
                    )
            stored = copy.deepcopy(assignment)
            stored.version = existing.version + 1 if existing is not None else 1
            self._assignments[assignment.dispatch_id] = stored
            return copy.deepcopy(stored)

    def get_assignment(self, dispatch_id: str) -> Optional[DeliveryAssignment]:
        with self._lock:
            a = self._assignments.get(dispatch_id)
            return copy.deepcopy(a) if a is not None else None

    def save_assignment(self, assignment: DeliveryAssignment) -> DeliveryAssignment:
        """
        Persist changes to an assignment.

        Raises:
            ValidationError: Unknown dispatch id
            StateConflict: Stale version
        """
        with self._lock:
            stored = self._assignments.get(assignment.dispatch_id)
            if stored is None:
                raise ValidationError(f"Unknown dispatch: {assignment.dispatch_id}")
            if stored.version != assignment.version:
                raise StateConflict(
                    f"Assignment {assignment.dispatch_id} changed "
                    f"(v{assignment.version} != v{stored.version})",
                    assignment.dispatch_id, stored.status.value,
                )
            updated = copy.deepcopy(assignment)
            updated.version = stored.version + 1
            self._assignments[assignment.dispatch_id] = updated
            return copy.deepcopy(updated)

    def list_assignments(
        self, status: Optional[AssignmentStatus] = None
    ) -> List[DeliveryAssignment]:
        with self._lock:
            return [
                copy.deepcopy(a) for a in self._assignments.values()
                if status is None or a.status is status
            ]

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of every record, suitable for ``from_snapshot``."""
        with self._lock:
            return {
                "orders": copy.deepcopy(self._orders),
                "groups": copy.deepcopy(self._groups),
                "assignments": copy.deepcopy(self._assignments),
            }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "InMemoryStore":
        """Rebuild a store from ``snapshot()`` output, keeping versions."""
        store = cls()
        store._orders = copy.deepcopy(snapshot.get("orders", {}))
        store._groups = copy.deepcopy(snapshot.get("groups", {}))
        store._assignments = copy.deepcopy(snapshot.get("assignments", {}))
        logger.info(
            f"Store restored: {len(store._orders)} orders, {len(store._groups)} groups, "
            f"{len(store._assignments)} assignments"
        )
        return store


class UnitLockTable:
    """
    Single-writer locks keyed by dispatch unit id (group id, standalone order
    id) or by restaurant cluster key.

    Locks are created on first use and never removed while the engine runs;
    ``reset`` drops them all during recovery.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the ``with`` block."""
        lock = self.lock_for(key)
        with lock:
            yield

    def reset(self) -> None:
        with self._guard:
            self._locks = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
