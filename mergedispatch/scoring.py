# mergeeats-dispatch/mergedispatch/scoring.py
"""
Scoring functions for consolidated delivery units.

These figures are informational: they travel in the payload of group events
and feed the simulation report, but never decide membership. Eligibility is
decided by the matcher's hard constraints alone.

Key Design Principles:
1. Every factor is a 0-1 score, higher is better
2. A single order has no merge efficiency (0.0)
3. Time savings grow linearly with the number of merged orders
"""

from __future__ import annotations

from typing import Any, Dict, List

from . import config, utils
from .models import GroupOrder, Order


def distance_efficiency(orders: List[Order]) -> float:
    """
    Share of drive distance saved by serving the orders in one run.

    Compares ``len(orders)`` standalone trips of average length against a
    single run through the drop-offs in member order plus the restaurant leg.

    Args:
        orders: Members of the dispatch unit, in join order

    Returns:
        Score in [0, 1]
    """
    if len(orders) < 2:
        return 0.0

    individual_km = len(orders) * config.AVG_SINGLE_DELIVERY_KM
    chained_km = config.BASE_ROUTE_KM
    for a, b in zip(orders, orders[1:]):
        chained_km += utils.distance_km(a.delivery_address, b.delivery_address)

    return max(0.0, (individual_km - chained_km) / individual_km)


def time_compatibility(orders: List[Order]) -> float:
    """1.0 when all orders were placed together, 0.0 once the spread reaches the window."""
    if not orders:
        return 0.0
    times = [o.order_time for o in orders]
    spread = utils.minutes_between(min(times), max(times))
    window = config.TIME_COMPATIBILITY_WINDOW_MINS
    return max(0.0, min(1.0, (window - spread) / window))


def preparation_alignment(orders: List[Order]) -> float:
    # One kitchen is perfectly aligned; co-located kitchens are half as good.
    restaurants = {o.restaurant_id for o in orders}
    return 1.0 if len(restaurants) == 1 else 0.5


def merge_efficiency(orders: List[Order]) -> float:
    """
    Weighted merge efficiency of a set of orders.

    Returns:
        Score in [0, 1], or 0.0 for fewer than two orders
    """
    if len(orders) < 2:
        return 0.0
    return (
        config.W_DISTANCE_EFFICIENCY * distance_efficiency(orders)
        + config.W_TIME_COMPATIBILITY * time_compatibility(orders)
        + config.W_PREPARATION_ALIGNMENT * preparation_alignment(orders)
    )


def estimated_time_savings(order_count: int) -> float:
    """Partner minutes saved by merging ``order_count`` orders into one run."""
    return max(0, order_count - 1) * config.TIME_SAVED_PER_MERGED_ORDER_MINS


def estimated_extra_stop_minutes(order_count: int) -> float:
    """Minutes a merged run adds for its extra drop-offs."""
    return max(0, order_count - 1) * config.EXTRA_STOP_MINS


def group_summary(group: GroupOrder, orders: List[Order]) -> Dict[str, Any]:
    """
    Payload fragment describing a group, attached to group events.

    Args:
        group: The group
        orders: Its active member orders
    """
    return {
        "memberIds": list(group.member_ids),
        "activeMemberIds": [o.order_id for o in orders],
        "restaurantIds": list(group.restaurant_ids),
        "mergeEfficiency": round(merge_efficiency(orders), 3),
        "estimatedTimeSavingsMins": estimated_time_savings(len(orders)),
        "extraStopMins": estimated_extra_stop_minutes(len(orders)),
    }
