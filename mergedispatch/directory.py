# mergeeats-dispatch/mergedispatch/directory.py
"""
Collaborator contracts and their adapters.

The engine talks to three external services:
- RestaurantDirectory: restaurant location and open/online flags
- PartnerDirectory: available partners, atomic reserve/release at offer time
- NotificationSink: fire-and-forget event publishing

Each contract has an in-memory implementation (tests, simulation) and an HTTP
implementation built on ``requests``. HTTP transport and parsing failures are
turned into ``DirectoryUnavailable`` so callers can retry with backoff.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from . import config, utils
from .errors import DirectoryUnavailable
from .models import DomainEvent, GeoPoint, PartnerRecord, RestaurantInfo

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CONTRACTS
# =============================================================================

class RestaurantDirectory(ABC):
    """Read-only restaurant lookups."""

    @abstractmethod
    def get_restaurant(self, restaurant_id: str) -> Optional[RestaurantInfo]:
        """Return the restaurant, or None if the id is unknown."""


class PartnerDirectory(ABC):
    """Partner availability and reservation."""

    @abstractmethod
    def list_available_partners(self, center: GeoPoint, radius_km: float) -> List[PartnerRecord]:
        """Partners that were available when the directory last refreshed."""

    @abstractmethod
    def reserve(self, partner_id: str) -> bool:
        """Atomically claim a partner for an offer. False if already taken."""

    @abstractmethod
    def release(self, partner_id: str) -> None:
        """Return a reserved partner to the available pool."""


class NotificationSink(ABC):
    """Event consumer. Delivery is at-least-once."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Publish one event. Raises on failure so the outbox can retry."""


# =============================================================================
# IN-MEMORY ADAPTERS
# =============================================================================

class InMemoryRestaurantDirectory(RestaurantDirectory):
    """Dictionary-backed restaurant directory."""

    def __init__(self, restaurants: Optional[List[RestaurantInfo]] = None) -> None:
        self._restaurants: Dict[str, RestaurantInfo] = {}
        self._lock = threading.Lock()
        self.reachable = True
        self.lookups = 0
        for r in restaurants or []:
            self.add(r)

    def add(self, restaurant: RestaurantInfo) -> None:
        with self._lock:
            self._restaurants[restaurant.restaurant_id] = restaurant

    def set_open(self, restaurant_id: str, is_open: bool) -> None:
        with self._lock:
            self._restaurants[restaurant_id].is_open = is_open

    def get_restaurant(self, restaurant_id: str) -> Optional[RestaurantInfo]:
        if not self.reachable:
            raise DirectoryUnavailable("Restaurant directory unreachable")
        with self._lock:
            self.lookups += 1
            r = self._restaurants.get(restaurant_id)
            if r is None:
                return None
            return RestaurantInfo(
                restaurant_id=r.restaurant_id,
                location=r.location,
                is_open=r.is_open,
                accepts_online_orders=r.accepts_online_orders,
                name=r.name,
            )


class InMemoryPartnerDirectory(PartnerDirectory):
    """
    Dictionary-backed partner directory.

    ``reserve`` flips ``busy`` under a lock, so two offers can never hold the
    same partner.
    """

    def __init__(self, partners: Optional[List[PartnerRecord]] = None, clock: Clock = utc_now) -> None:
        self._partners: Dict[str, PartnerRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.reachable = True
        for p in partners or []:
            self.add(p)

    def add(self, partner: PartnerRecord) -> None:
        with self._lock:
            self._partners[partner.partner_id] = partner

    def get(self, partner_id: str) -> Optional[PartnerRecord]:
        with self._lock:
            return self._partners.get(partner_id)

    def move(self, partner_id: str, location: GeoPoint) -> None:
        with self._lock:
            self._partners[partner_id].location = location

    def list_available_partners(self, center: GeoPoint, radius_km: float) -> List[PartnerRecord]:
        if not self.reachable:
            raise DirectoryUnavailable("Partner directory unreachable")
        with self._lock:
            return [
                replace(p) for p in self._partners.values()
                if p.is_available and utils.distance_km(center, p.location) <= radius_km
            ]

    def reserve(self, partner_id: str) -> bool:
        if not self.reachable:
            raise DirectoryUnavailable("Partner directory unreachable")
        with self._lock:
            p = self._partners.get(partner_id)
            if p is None or not p.is_available:
                return False
            p.busy = True
            return True

    def release(self, partner_id: str) -> None:
        if not self.reachable:
            raise DirectoryUnavailable("Partner directory unreachable")
        with self._lock:
            p = self._partners.get(partner_id)
            if p is not None and p.busy:
                p.busy = False
                p.idle_since = self._clock()


class InMemoryNotificationSink(NotificationSink):
    """Collects published events. Set ``fail`` to simulate an outage."""

    def __init__(self) -> None:
        self.events: List[DomainEvent] = []
        self.fail = False
        self._lock = threading.Lock()

    def publish(self, event: DomainEvent) -> None:
        if self.fail:
            raise DirectoryUnavailable("Notification sink unreachable")
        with self._lock:
            self.events.append(event)

    def unique_events(self) -> List[DomainEvent]:
        """Events with at-least-once duplicates removed, in first-seen order."""
        seen = set()
        unique: List[DomainEvent] = []
        with self._lock:
            for e in self.events:
                if e.dedup_key not in seen:
                    seen.add(e.dedup_key)
                    unique.append(e)
        return unique

    def of_type(self, event_type) -> List[DomainEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type is event_type]


# =============================================================================
# CACHING
# =============================================================================

class CachedRestaurantDirectory(RestaurantDirectory):
    """
    Restaurant lookups with a freshness bound.

    A cached record is served until it is older than ``staleness``. Unknown
    ids are never cached, so a newly onboarded restaurant is visible at once.
    """

    def __init__(self, inner: RestaurantDirectory, staleness: timedelta, clock: Clock = utc_now) -> None:
        self._inner = inner
        self._staleness = staleness
        self._clock = clock
        self._cache: Dict[str, Tuple[RestaurantInfo, datetime]] = {}
        self._lock = threading.Lock()

    def get_restaurant(self, restaurant_id: str) -> Optional[RestaurantInfo]:
        now = self._clock()
        with self._lock:
            hit = self._cache.get(restaurant_id)
        if hit is not None and now - hit[1] <= self._staleness:
            return hit[0]

        info = self._inner.get_restaurant(restaurant_id)
        if info is not None:
            with self._lock:
                self._cache[restaurant_id] = (info, now)
        return info

    def invalidate(self, restaurant_id: Optional[str] = None) -> None:
        """Drop one cached record, or all of them."""
        with self._lock:
            if restaurant_id is None:
                self._cache.clear()
            else:
                self._cache.pop(restaurant_id, None)


# =============================================================================
# HTTP ADAPTERS
# =============================================================================

def _parse_point(data: Dict[str, Any]) -> GeoPoint:
    return GeoPoint(float(data["latitude"]), float(data["longitude"]))


def _parse_timestamp(value: Optional[str], default: datetime) -> datetime:
    if not value:
        return default
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _HttpClient:
    """Shared ``requests`` plumbing: base URL, timeout, error translation."""

    def __init__(self, base_url: str, timeout: float, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            logger.warning(f"{method} {url} timed out")
            raise DirectoryUnavailable(f"{method} {url} timed out")
        except requests.exceptions.RequestException as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise DirectoryUnavailable(f"{method} {url} failed: {e}")
        if response.status_code >= 500:
            raise DirectoryUnavailable(f"{method} {url} returned {response.status_code}")
        return response


class HttpRestaurantDirectory(_HttpClient, RestaurantDirectory):
    """Restaurant service client (``GET /api/restaurants/{id}``)."""

    def __init__(
        self,
        base_url: str = config.RESTAURANT_SERVICE_URL,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(base_url, timeout, session)

    def get_restaurant(self, restaurant_id: str) -> Optional[RestaurantInfo]:
        response = self._request("GET", f"/api/restaurants/{restaurant_id}")
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            data = response.json()
            return RestaurantInfo(
                restaurant_id=data["restaurantId"],
                location=_parse_point(data["address"]),
                is_open=bool(data.get("isOpen", True)),
                accepts_online_orders=bool(data.get("acceptsOnlineOrders", True)),
                name=data.get("name", ""),
            )
        except requests.exceptions.HTTPError as e:
            raise DirectoryUnavailable(f"Restaurant lookup failed: {e}")
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Restaurant response parsing failed: {e}")
            raise DirectoryUnavailable(f"Malformed restaurant response: {e}")


class HttpPartnerDirectory(_HttpClient, PartnerDirectory):
    """Delivery-partner service client (``/partners/...``)."""

    def __init__(
        self,
        base_url: str = config.DELIVERY_SERVICE_URL,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(base_url, timeout, session)
        self._clock = clock

    def list_available_partners(self, center: GeoPoint, radius_km: float) -> List[PartnerRecord]:
        response = self._request(
            "GET", "/partners/available",
            params={"latitude": center.lat, "longitude": center.lng, "radiusKm": radius_km},
        )
        now = self._clock()
        try:
            response.raise_for_status()
            partners = []
            for row in response.json():
                partners.append(PartnerRecord(
                    partner_id=row["partnerId"],
                    location=_parse_point(row["currentLocation"]),
                    idle_since=_parse_timestamp(row.get("lastActiveAt"), now),
                    capacity=int(row.get("maxOrders", config.PARTNER_MAX_ORDERS)),
                    busy=row.get("status", "ONLINE") != "ONLINE",
                    vehicle_type=str(row.get("vehicleType", "motorbike")).lower(),
                    rating=float(row.get("rating", 5.0)),
                ))
            return partners
        except requests.exceptions.HTTPError as e:
            raise DirectoryUnavailable(f"Partner listing failed: {e}")
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Partner response parsing failed: {e}")
            raise DirectoryUnavailable(f"Malformed partner response: {e}")

    def reserve(self, partner_id: str) -> bool:
        response = self._request("POST", f"/partners/{partner_id}/reserve")
        if response.status_code in (404, 409):
            return False
        try:
            response.raise_for_status()
            return bool(response.json().get("reserved", False))
        except requests.exceptions.HTTPError as e:
            raise DirectoryUnavailable(f"Partner reservation failed: {e}")
        except (ValueError, AttributeError) as e:
            raise DirectoryUnavailable(f"Malformed reservation response: {e}")

    def release(self, partner_id: str) -> None:
        response = self._request("POST", f"/partners/{partner_id}/release")
        if response.status_code == 404:
            logger.warning(f"Released unknown partner {partner_id}")
            return
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise DirectoryUnavailable(f"Partner release failed: {e}")


class HttpNotificationSink(_HttpClient, NotificationSink):
    """Notification service client (``POST /notifications/events``)."""

    def __init__(
        self,
        base_url: str = config.NOTIFICATION_SERVICE_URL,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(base_url, timeout, session)

    def publish(self, event: DomainEvent) -> None:
        response = self._request("POST", "/notifications/events", json=event.to_dict())
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise DirectoryUnavailable(f"Event publish failed: {e}")
