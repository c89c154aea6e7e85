# mergeeats-dispatch/mergedispatch/matcher.py
"""
Merge eligibility.

The matcher answers one question: which orders could share a delivery run
with this order (or with this forming group)? It reads the order index and
the store but never writes. Claims are made later by the coordinator, which
re-validates every candidate under its own locks.

Eligibility rules (all must hold):
1. Same restaurant, or restaurant locations within ``restaurant_proximity_km``
2. Delivery addresses pairwise within ``merge_radius_km``
3. Order times within ``merge_time_window_mins`` of each other
4. Status PENDING or CONFIRMED
5. Not claimed, or claimed by a group that is still FORMING
6. The candidate's restaurant is open
"""

from __future__ import annotations

import logging
from typing import Dict, List

from . import utils
from .directory import RestaurantDirectory
from .geo_index import GeoIndex
from .models import GroupOrder, GroupStatus, Order
from .settings import EngineSettings
from .store import InMemoryStore

logger = logging.getLogger(__name__)


def restaurants_compatible(a: Order, b: Order, proximity_km: float) -> bool:
    """Same restaurant, or co-located restaurants."""
    if a.restaurant_id == b.restaurant_id:
        return True
    if a.pickup_location is None or b.pickup_location is None:
        return False
    return utils.distance_km(a.pickup_location, b.pickup_location) <= proximity_km


def orders_compatible(a: Order, b: Order, settings: EngineSettings) -> bool:
    """
    Pairwise merge compatibility of two orders, ignoring status and claims.

    Used by the matcher for ranking and by the coordinator when it
    re-validates a candidate under lock.
    """
    if not restaurants_compatible(a, b, settings.restaurant_proximity_km):
        return False
    if utils.distance_km(a.delivery_address, b.delivery_address) > settings.merge_radius_km:
        return False
    gap = abs(utils.minutes_between(a.order_time, b.order_time))
    return gap <= settings.merge_time_window_mins


def compatible_with_all(order: Order, others: List[Order], settings: EngineSettings) -> bool:
    return all(orders_compatible(order, o, settings) for o in others)


class EligibilityMatcher:
    """
    Finds merge candidates.

    Attributes:
        store: Record store (fresh reads of candidates)
        order_index: GeoIndex over mergeable orders
        restaurants: Restaurant directory, for the open check
        settings: Engine settings
    """

    def __init__(
        self,
        store: InMemoryStore,
        order_index: GeoIndex,
        restaurants: RestaurantDirectory,
        settings: EngineSettings,
    ) -> None:
        self.store = store
        self.order_index = order_index
        self.restaurants = restaurants
        self.settings = settings

    def find_candidates(self, trigger: Order) -> List[Order]:
        """
        Orders that could be merged with ``trigger``.

        Args:
            trigger: The newly arrived order

        Returns:
            Up to K-1 orders, closest delivery address first, then closest
            order time. Each returned order is compatible with the trigger
            and with every other returned order. Empty means dispatch alone.
        """
        ids = self.order_index.query(
            trigger.delivery_address,
            self.settings.merge_radius_km,
            filter=lambda i: i != trigger.order_id,
        )
        open_cache: Dict[str, bool] = {}
        eligible: List[Order] = []
        for order in self.store.get_orders(ids):
            if not self._is_mergeable(order, allow_forming=True):
                continue
            if not orders_compatible(trigger, order, self.settings):
                continue
            if not self._restaurant_open(order.restaurant_id, open_cache):
                continue
            eligible.append(order)

        eligible.sort(key=lambda o: (
            utils.distance_km(trigger.delivery_address, o.delivery_address),
            abs((o.order_time - trigger.order_time).total_seconds()),
            o.order_id,
        ))
        selected = self._admit_pairwise(eligible, [], self.settings.max_group_size - 1)
        logger.debug(
            f"Trigger {trigger.order_id}: {len(ids)} nearby, {len(eligible)} eligible, "
            f"{len(selected)} selected"
        )
        return selected

    def find_for_group(self, group: GroupOrder, members: List[Order]) -> List[Order]:
        """
        Unclaimed orders that could top up a FORMING group.

        Args:
            group: The group being extended
            members: Its active member orders

        Returns:
            Up to ``K - group.size`` orders, compatible with every member and
            with each other, closest to the members' delivery centroid first
        """
        room = self.settings.max_group_size - group.size
        if group.status is not GroupStatus.FORMING or room <= 0 or not members:
            return []

        center = utils.centroid([m.delivery_address for m in members])
        member_ids = set(group.member_ids)
        earliest = min(m.order_time for m in members)
        ids = self.order_index.query(
            center, self.settings.merge_radius_km, filter=lambda i: i not in member_ids
        )
        open_cache: Dict[str, bool] = {}
        eligible: List[Order] = []
        for order in self.store.get_orders(ids):
            if not self._is_mergeable(order, allow_forming=False):
                continue
            if not compatible_with_all(order, members, self.settings):
                continue
            if not self._restaurant_open(order.restaurant_id, open_cache):
                continue
            eligible.append(order)

        eligible.sort(key=lambda o: (
            utils.distance_km(center, o.delivery_address),
            abs((o.order_time - earliest).total_seconds()),
            o.order_id,
        ))
        return self._admit_pairwise(eligible, [], room)

    # -------------------------------------------------------------------------

    def _is_mergeable(self, order: Order, allow_forming: bool) -> bool:
        if not order.status.is_mergeable:
            return False
        if order.group_order_id is None:
            return True
        if not allow_forming:
            return False
        group = self.store.get_group(order.group_order_id)
        return group is not None and group.status is GroupStatus.FORMING

    def _restaurant_open(self, restaurant_id: str, cache: Dict[str, bool]) -> bool:
        if restaurant_id not in cache:
            info = self.restaurants.get_restaurant(restaurant_id)
            cache[restaurant_id] = info is not None and info.is_open
        return cache[restaurant_id]

    def _admit_pairwise(
        self, ranked: List[Order], admitted: List[Order], limit: int
    ) -> List[Order]:
        # Greedy in rank order: a candidate that is too far from an already
        # admitted one is dropped, which rules out chain merges.
        selected: List[Order] = []
        for order in ranked:
            if len(selected) >= limit:
                break
            if compatible_with_all(order, admitted + selected, self.settings):
                selected.append(order)
        return selected
