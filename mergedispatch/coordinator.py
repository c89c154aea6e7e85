# mergeeats-dispatch/mergedispatch/coordinator.py
"""
Consolidation Coordinator for the MergeEats engine.

Turns matcher candidates into GroupOrders, race-free:
- try_merge: join the trigger to a FORMING group, or form a new group
- extend: top up a FORMING group from fresh candidates
- finalize: freeze membership (size cap, deadline, capacity signal)
- disband: dissolve a group and release its members' claims

Locking:
    restaurant-cluster lock -> group lock -> store lock. Claims go through
    the store's compare-and-set, so two triggers racing for the same
    candidate can never both win it. The order index is only touched after
    the group lock has been released.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Tuple

from . import scoring, utils
from .errors import StateConflict
from .geo_index import GeoIndex
from .lifecycle import LifecycleStateMachine
from .matcher import EligibilityMatcher, compatible_with_all
from .models import GroupOrder, GroupStatus, MergeDecision, MergeOutcome, Order
from .settings import EngineSettings
from .store import InMemoryStore, UnitLockTable

logger = logging.getLogger(__name__)

FINALIZE_SIZE_CAP = "size cap reached"
FINALIZE_DEADLINE = "formation deadline"
FINALIZE_CAPACITY = "restaurant capacity"


def new_group_id() -> str:
    return f"GRP-{uuid.uuid4().hex[:12].upper()}"


class ConsolidationCoordinator:
    """
    Owns GroupOrder membership.

    Attributes:
        store: Record store
        locks: Unit lock table (groups and restaurant clusters)
        order_index: GeoIndex over mergeable orders
        lifecycle: State machine used for every status change
        matcher: Candidate source for ``extend``
        settings: Engine settings
    """

    def __init__(
        self,
        store: InMemoryStore,
        locks: UnitLockTable,
        order_index: GeoIndex,
        lifecycle: LifecycleStateMachine,
        matcher: EligibilityMatcher,
        settings: EngineSettings,
        clock: Callable[[], datetime],
        id_factory: Callable[[], str] = new_group_id,
    ) -> None:
        self.store = store
        self.locks = locks
        self.order_index = order_index
        self.lifecycle = lifecycle
        self.matcher = matcher
        self.settings = settings
        self.clock = clock
        self.id_factory = id_factory

    # =========================================================================
    # MERGE
    # =========================================================================

    def cluster_key(self, order: Order) -> str:
        """
        Lock key of the restaurant cluster an order belongs to.

        Co-located restaurants usually fall into the same grid cell, so
        concurrent triggers for them serialize on one lock.
        """
        point = order.pickup_location or order.delivery_address
        size = self.settings.restaurant_proximity_km
        row = math.floor(point.lat / utils.km_to_lat_degrees(size))
        col = math.floor(point.lng / utils.km_to_lng_degrees(size, point.lat))
        return f"cluster:{row}:{col}"

    def try_merge(self, trigger: Order, candidates: List[Order]) -> MergeDecision:
        """
        Attempt to place ``trigger`` in a group.

        Tries every FORMING group referenced by the candidates first (in rank
        order), then forms a new group from the unclaimed candidates.

        Args:
            trigger: The newly arrived order
            candidates: Output of ``EligibilityMatcher.find_candidates``

        Returns:
            GROUPED with the group, or INDIVIDUAL if no claim succeeded
        """
        with self.locks.hold(self.cluster_key(trigger)):
            decision = self._join_existing(trigger, candidates)
            if decision is None:
                decision = self._form_new(trigger, candidates)

        if decision.group is not None and decision.group.status is GroupStatus.FINALIZED:
            self._drop_from_index(decision.group.member_ids)
        return decision

    def _forming_groups(self, candidates: List[Order]) -> Iterator[str]:
        seen = set()
        for c in candidates:
            gid = c.group_order_id
            if gid is not None and gid not in seen:
                seen.add(gid)
                yield gid

    def _join_existing(self, trigger: Order, candidates: List[Order]) -> Optional[MergeDecision]:
        for gid in self._forming_groups(candidates):
            with self.locks.hold(gid):
                group = self.store.get_group(gid)
                if group is None or group.status is not GroupStatus.FORMING:
                    continue
                if group.size >= self.settings.max_group_size:
                    continue
                members = self.store.get_orders(group.active_member_ids)
                if not compatible_with_all(trigger, members, self.settings):
                    continue
                if not self.store.claim_order(trigger.order_id, gid):
                    return self._lost_trigger(trigger)

                group.member_ids.append(trigger.order_id)
                if trigger.restaurant_id not in group.restaurant_ids:
                    group.restaurant_ids.append(trigger.restaurant_id)
                group = self.store.save_group(group)
                logger.info(f"Order {trigger.order_id} joined {gid} ({group.size} members)")

                if group.size >= self.settings.max_group_size:
                    group = self._finalize_locked(group, FINALIZE_SIZE_CAP)
                return MergeDecision(MergeOutcome.GROUPED, trigger.order_id, group, joined_existing=True)
        return None

    def _form_new(self, trigger: Order, candidates: List[Order]) -> MergeDecision:
        gid = self.id_factory()
        with self.locks.hold(gid):
            if not self.store.claim_order(trigger.order_id, gid):
                return self._lost_trigger(trigger)

            admitted: List[Order] = [self.store.require_order(trigger.order_id)]
            for candidate in candidates:
                if len(admitted) >= self.settings.max_group_size:
                    break
                fresh = self.store.get_order(candidate.order_id)
                if fresh is None or fresh.group_order_id is not None or not fresh.status.is_mergeable:
                    continue
                if not compatible_with_all(fresh, admitted, self.settings):
                    continue
                if self.store.claim_order(fresh.order_id, gid):
                    admitted.append(fresh)
                else:
                    logger.debug(f"Lost claim on {fresh.order_id} while forming {gid}")

            if len(admitted) == 1:
                self.store.release_claim(trigger.order_id, gid)
                logger.debug(f"Order {trigger.order_id}: no candidate could be claimed")
                return MergeDecision(MergeOutcome.INDIVIDUAL, trigger.order_id)

            now = self.clock()
            restaurant_ids: List[str] = []
            for o in admitted:
                if o.restaurant_id not in restaurant_ids:
                    restaurant_ids.append(o.restaurant_id)
            group = self.store.insert_group(GroupOrder(
                group_order_id=gid,
                restaurant_ids=restaurant_ids,
                member_ids=[o.order_id for o in admitted],
                created_at=now,
                formation_deadline=now + self.settings.formation_window,
            ))
            self.lifecycle.group_formed(group, scoring.group_summary(group, admitted))
            logger.info(f"Formed {gid} with {group.member_ids}, deadline {group.formation_deadline}")

            if group.size >= self.settings.max_group_size:
                group = self._finalize_locked(group, FINALIZE_SIZE_CAP)
            return MergeDecision(MergeOutcome.GROUPED, trigger.order_id, group)

    def _lost_trigger(self, trigger: Order) -> MergeDecision:
        # Someone else claimed the trigger (or it left PENDING/CONFIRMED).
        fresh = self.store.get_order(trigger.order_id)
        if fresh is not None and fresh.group_order_id is not None:
            return MergeDecision(
                MergeOutcome.GROUPED, trigger.order_id,
                self.store.get_group(fresh.group_order_id), joined_existing=True,
            )
        return MergeDecision(MergeOutcome.INDIVIDUAL, trigger.order_id)

    # =========================================================================
    # EXTEND / FINALIZE / DISBAND
    # =========================================================================

    def extend(self, group_id: str, candidates: Optional[List[Order]] = None) -> GroupOrder:
        """
        Top up a FORMING group.

        Args:
            group_id: Group to extend
            candidates: Orders to try, in rank order. When omitted they come
                from ``EligibilityMatcher.find_for_group``.

        Returns:
            The group after the attempt (unchanged if nothing was claimed or
            it is no longer FORMING)
        """
        if candidates is None:
            group = self.store.require_group(group_id)
            members = self.store.get_orders(group.active_member_ids)
            candidates = self.matcher.find_for_group(group, members)

        finalized = False
        with self.locks.hold(group_id):
            group = self.store.require_group(group_id)
            if group.status is not GroupStatus.FORMING or not candidates:
                return group

            members = self.store.get_orders(group.active_member_ids)
            added = 0
            for candidate in candidates:
                if group.size >= self.settings.max_group_size:
                    break
                fresh = self.store.get_order(candidate.order_id)
                if fresh is None or fresh.group_order_id is not None or not fresh.status.is_mergeable:
                    continue
                if not compatible_with_all(fresh, members, self.settings):
                    continue
                if not self.store.claim_order(fresh.order_id, group_id):
                    continue
                group.member_ids.append(fresh.order_id)
                if fresh.restaurant_id not in group.restaurant_ids:
                    group.restaurant_ids.append(fresh.restaurant_id)
                members.append(fresh)
                added += 1

            if added:
                group = self.store.save_group(group)
                logger.info(f"Extended {group_id} by {added} to {group.size} members")
                if group.size >= self.settings.max_group_size:
                    group = self._finalize_locked(group, FINALIZE_SIZE_CAP)
                    finalized = True

        if finalized:
            self._drop_from_index(group.member_ids)
        return group

    def finalize(self, group_id: str, reason: str) -> Optional[GroupOrder]:
        """
        Freeze a FORMING group.

        Returns:
            The finalized group, or None if it was no longer FORMING (another
            thread finalized or disbanded it first)
        """
        with self.locks.hold(group_id):
            group = self.store.require_group(group_id)
            if group.status is not GroupStatus.FORMING:
                return None
            group = self._finalize_locked(group, reason)
        self._drop_from_index(group.member_ids)
        return group

    def _finalize_locked(self, group: GroupOrder, reason: str) -> GroupOrder:
        members = self.store.get_orders(group.active_member_ids)
        group.finalize_reason = reason
        group.finalized_at = self.clock()
        group = self.lifecycle.transition_group(
            group, GroupStatus.FINALIZED,
            dict(scoring.group_summary(group, members), reason=reason),
        )
        logger.info(f"Finalized {group.group_order_id} ({reason}): {group.active_member_ids}")
        return group

    def disband(self, group_id: str, reason: str) -> List[str]:
        """
        Dissolve a group that has no live assignment. See ``disband_locked``.

        Returns:
            Ids of the members still to be delivered

        Raises:
            StateConflict: The group's assignment is still live; it has to
                fail first so its partner is released
        """
        with self.locks.hold(group_id):
            group = self.store.require_group(group_id)
            if group.status.is_terminal:
                return []
            assignment = self.store.get_assignment(group_id)
            if assignment is not None and not assignment.status.is_terminal:
                raise StateConflict(
                    f"Group {group_id} has a live assignment ({assignment.status.value})",
                    group_id, group.status.value,
                )
            _, survivors = self.disband_locked(group, reason)
        return survivors

    def disband_locked(self, group: GroupOrder, reason: str) -> Tuple[GroupOrder, List[str]]:
        """
        Disband a group whose lock the caller holds.

        Clears every member's claim (the only permitted overwrite of the
        back-reference) and moves the group to DISBANDED.

        Returns:
            (saved group, ids of active members that are not yet terminal)
        """
        for member_id in group.member_ids:
            self.store.release_claim(member_id, group.group_order_id)

        group.disband_reason = reason
        group = self.lifecycle.transition_group(
            group, GroupStatus.DISBANDED,
            {"reason": reason, "memberIds": list(group.member_ids)},
        )
        survivors = [
            o.order_id for o in self.store.get_orders(group.active_member_ids)
            if not o.status.is_terminal
        ]
        logger.info(f"Disbanded {group.group_order_id} ({reason}); survivors {survivors}")
        return group, survivors

    def forming_groups_for_restaurant(self, restaurant_id: str) -> List[GroupOrder]:
        return [
            g for g in self.store.list_groups(GroupStatus.FORMING)
            if restaurant_id in g.restaurant_ids
        ]

    def _drop_from_index(self, order_ids: List[str]) -> None:
        for order_id in order_ids:
            self.order_index.remove(order_id)
