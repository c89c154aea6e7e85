# mergeeats-dispatch/mergedispatch/config.py
"""
Configuration parameters for the MergeEats consolidation engine.

This module centralizes all tunable parameters, making it easy to:
- Adjust how aggressively orders are merged
- Tune the partner offer loop
- Point the HTTP collaborators at real services

Engine components never read these values directly. They are snapshotted
into an ``EngineSettings`` instance (see ``settings.py``) which is injected
into every component, so tests and simulations can override single fields.
"""

from datetime import datetime, time
from typing import Final, Optional, Tuple

# =============================================================================
# MERGE ELIGIBILITY
# =============================================================================

MERGE_RADIUS_KM: float = 2.0
"""
Maximum pairwise distance between delivery addresses of co-grouped orders.
Checked between every pair of members, not just against the group centroid.
"""

RESTAURANT_PROXIMITY_KM: float = 0.5
"""
Maximum distance between two restaurants for their orders to share a run.
Orders from the same restaurant are always compatible.
"""

MERGE_TIME_WINDOW_MINS: float = 10.0
"""Sliding window on order time: candidates must be this close to the trigger."""

MAX_GROUP_SIZE: int = 4
"""
Maximum orders per group (K). A group that reaches K is finalized at once.
The matcher never returns more than K-1 candidates.
"""

# =============================================================================
# GROUP FORMATION
# =============================================================================

FORMATION_WINDOW_MINS: float = 3.0
"""
Time after group creation by which a FORMING group must finalize.
Also used as the hold time before an unmerged order is dispatched alone.
"""

# =============================================================================
# PARTNER ASSIGNMENT
# =============================================================================

ASSIGNMENT_RADIUS_KM: float = 10.0
"""Search radius around the pickup centroid when looking for partners."""

OFFER_TIMEOUT_SECONDS: float = 45.0
"""How long a partner has to accept an offer before it counts as rejected."""

ASSIGNMENT_RETRY_BUDGET: int = 3
"""
Failed offer attempts (rejections, timeouts, empty searches) before a group
is disbanded and its members are dispatched one by one.
"""

PARTNER_MAX_ORDERS: int = 5
"""
Orders a partner carries in one run when the directory does not say.
Partners are only offered units that fit their capacity.
"""

SERVICE_AREA: Optional[Tuple[float, float, float, float]] = None
"""
Serviceable bounding box as (min_lat, min_lng, max_lat, max_lng).
None means everywhere is serviceable. When the pickup centroid of a group
falls outside, the nearest member pickup is used as the search centre.
"""

# =============================================================================
# SWEEPS AND FRESHNESS
# =============================================================================

SWEEP_INTERVAL_SECONDS: float = 5.0
"""Interval of the formation-deadline and assignment-timeout sweeps."""

DIRECTORY_STALENESS_SECONDS: float = 10.0
"""
Freshness bound of cached restaurant records. Partner availability is
always re-checked at offer time, so stale partner data only costs an offer.
"""

GEO_CELL_SIZE_KM: float = 1.0
"""Edge length of a GeoIndex grid cell. Roughly the typical query radius."""

CONSOLIDATION_ENABLED: bool = True
"""When False every order is dispatched alone at once (no-merge baseline)."""

# =============================================================================
# MERGE SCORING
# =============================================================================
# Used for the efficiency and time-savings figures published with groups.
# They never gate membership.

W_DISTANCE_EFFICIENCY: float = 0.4
"""Weight of the distance saving factor in the merge efficiency score."""

W_TIME_COMPATIBILITY: float = 0.3
"""Weight of the order-time spread factor in the merge efficiency score."""

W_PREPARATION_ALIGNMENT: float = 0.3
"""Weight of the same-restaurant factor in the merge efficiency score."""

AVG_SINGLE_DELIVERY_KM: float = 5.0
"""Assumed average length of a standalone delivery trip."""

TIME_COMPATIBILITY_WINDOW_MINS: float = 15.0
"""Order-time spread at which the time compatibility factor drops to zero."""

BASE_ROUTE_KM: float = 2.0
"""Restaurant leg added to the drop-off chain of a merged run."""

TIME_SAVED_PER_MERGED_ORDER_MINS: float = 12.0
"""Estimated partner minutes saved for each order beyond the first."""

EXTRA_STOP_MINS: float = 8.0
"""Estimated extra minutes added to a run for each additional drop-off."""

AVG_SPEED_KMH: float = 30.0
"""Average partner speed in km/h, used by the simulation."""

# =============================================================================
# HTTP COLLABORATORS
# =============================================================================

RESTAURANT_SERVICE_URL: str = "http://localhost:8082"
"""Base URL of the restaurant service."""

DELIVERY_SERVICE_URL: str = "http://localhost:8084"
"""Base URL of the delivery-partner service."""

NOTIFICATION_SERVICE_URL: str = "http://localhost:8085"
"""Base URL of the notification service."""

HTTP_TIMEOUT_SECONDS: float = 3.0
"""Timeout for collaborator requests. Fail fast, the caller retries."""

BACKOFF_BASE_SECONDS: float = 0.2
"""First delay of ``utils.call_with_backoff``; doubles on every attempt."""

BACKOFF_MAX_ATTEMPTS: int = 4
"""Attempts made by ``utils.call_with_backoff`` before giving up."""

# =============================================================================
# SIMULATION
# =============================================================================

SIMULATION_START: Final[time] = datetime.strptime("18:00:00", "%H:%M:%S").time()
"""Simulation start time (dinner rush)."""

SIMULATION_TICK_SECONDS: int = 15
"""Simulated seconds per tick."""

PARTNER_ACCEPT_PROBABILITY: float = 0.7
"""Probability that a simulated partner accepts an offer."""

PARTNER_RESPONSE_SECONDS: int = 30
"""Simulated seconds a partner takes to answer an offer."""

PREPARATION_MINS: float = 12.0
"""Simulated restaurant preparation time."""
