# mergeeats-dispatch/tests/conftest.py
"""Shared fixtures: a fake clock, in-memory collaborators and an engine factory."""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from mergedispatch import utils
from mergedispatch.directory import (
    InMemoryNotificationSink,
    InMemoryPartnerDirectory,
    InMemoryRestaurantDirectory,
)
from mergedispatch.engine import ConsolidationEngine
from mergedispatch.models import GeoPoint, Order, PartnerRecord, RestaurantInfo
from mergedispatch.settings import EngineSettings
from mergedispatch.simulation import FakeClock

T0 = datetime(2025, 1, 15, 18, 0, tzinfo=timezone.utc)
CENTER = GeoPoint(25.2854, 51.5310)


def offset(origin: GeoPoint, east_km: float = 0.0, north_km: float = 0.0) -> GeoPoint:
    """Point ``east_km`` east and ``north_km`` north of ``origin``."""
    return GeoPoint(
        origin.lat + utils.km_to_lat_degrees(north_km),
        origin.lng + utils.km_to_lng_degrees(east_km, origin.lat),
    )


# R1 and R2 are next door to each other; R3 is across town.
R1 = RestaurantInfo("R1", CENTER, name="Shawarma House")
R2 = RestaurantInfo("R2", offset(CENTER, east_km=0.3), name="Karak Corner")
R3 = RestaurantInfo("R3", offset(CENTER, east_km=6.0), name="Sushi Bay")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def restaurants() -> InMemoryRestaurantDirectory:
    return InMemoryRestaurantDirectory([replace(R1), replace(R2), replace(R3)])


@pytest.fixture
def partners(clock) -> InMemoryPartnerDirectory:
    return InMemoryPartnerDirectory([
        PartnerRecord("P1", offset(CENTER, north_km=0.5), idle_since=T0 - timedelta(minutes=5)),
        PartnerRecord("P2", offset(CENTER, north_km=1.0), idle_since=T0 - timedelta(minutes=5)),
        PartnerRecord("P3", offset(CENTER, north_km=2.0), idle_since=T0 - timedelta(minutes=5)),
    ], clock=clock)


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def make_engine(restaurants, partners, sink, clock, settings) -> Callable[..., ConsolidationEngine]:
    """Build an engine; keyword arguments override single settings fields."""

    def factory(store=None, **overrides) -> ConsolidationEngine:
        counter = itertools.count(1)
        return ConsolidationEngine(
            restaurants,
            partners,
            sink,
            settings=replace(settings, **overrides),
            store=store,
            clock=clock,
            id_factory=lambda: f"G{next(counter)}",
        )

    return factory


@pytest.fixture
def engine(make_engine) -> ConsolidationEngine:
    return make_engine()


@pytest.fixture
def make_order(clock) -> Callable[..., Order]:
    """Order factory; delivery address given as km offsets from the city centre."""
    counter = itertools.count(1)

    def factory(
        restaurant_id: str = "R1",
        east_km: float = 1.0,
        north_km: float = 0.0,
        order_time: Optional[datetime] = None,
        order_id: Optional[str] = None,
    ) -> Order:
        n = next(counter)
        return Order(
            order_id=order_id or f"O{n}",
            user_id=f"U{n}",
            restaurant_id=restaurant_id,
            delivery_address=offset(CENTER, east_km, north_km),
            order_time=order_time or clock(),
        )

    return factory


def place(engine: ConsolidationEngine, order: Order) -> Order:
    """Store and index an order directly, bypassing the merge attempt."""
    info = engine.restaurants.get_restaurant(order.restaurant_id)
    stored = engine.store.insert_order(replace(order, pickup_location=info.location))
    engine.order_index.upsert(stored.order_id, stored.delivery_address, stored.order_time)
    return stored


def statuses(events, entity_id: str) -> List[str]:
    """New statuses published for one entity, in order."""
    return [e.new_status for e in events if e.entity_id == entity_id]
