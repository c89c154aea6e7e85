# mergeeats-dispatch/mergedispatch/simulation.py
"""
Simulation harness for the MergeEats consolidation engine.

Replays an order stream through a real ``ConsolidationEngine`` wired to
in-memory directories and a fake clock. Key responsibilities:
- Time management (tick-based, default 15 simulated seconds per tick)
- Order injection based on order time
- Simulated kitchens (confirm, prepare, ready) and partners (accept or
  reject offers, drive to the restaurant, deliver)
- Running the formation and assignment sweeps every tick
- KPI calculation and reporting

Running the same stream with consolidation switched off gives the no-merge
baseline the CLI and dashboard compare against.

KEY METRIC: Trips Saved = orders delivered - delivery runs
"""

from __future__ import annotations

import csv
import logging
import os
import random
import statistics
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from . import config, utils
from .directory import InMemoryNotificationSink, InMemoryPartnerDirectory, InMemoryRestaurantDirectory
from .engine import ConsolidationEngine
from .errors import DispatchError
from .models import (
    AssignmentStatus,
    EventType,
    GeoPoint,
    GroupStatus,
    Order,
    OrderStatus,
    PartnerRecord,
    RestaurantInfo,
)
from .settings import EngineSettings

logger = logging.getLogger(__name__)

# Doha city centre, where the synthetic scenarios are laid out.
DEFAULT_CITY_CENTER = GeoPoint(25.2854, 51.5310)

SCENARIOS: Dict[str, Dict[str, Any]] = {
    "dinner_rush": {
        "orders": 200, "restaurants": 25, "partners": 40, "duration_mins": 60,
        "description": "200 orders in an hour, dense downtown",
    },
    "quiet": {
        "orders": 40, "restaurants": 25, "partners": 30, "duration_mins": 60,
        "description": "40 orders in an hour, little to merge",
    },
    "food_court": {
        "orders": 120, "restaurants": 8, "partners": 25, "duration_mins": 45,
        "description": "120 orders from a few co-located kitchens",
    },
    "stress": {
        "orders": 600, "restaurants": 40, "partners": 80, "duration_mins": 90,
        "description": "High-volume stress scenario",
    },
}


class FakeClock:
    """Settable clock handed to the engine in place of ``utc_now``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass
class Scenario:
    """Inputs of one simulation run."""
    restaurants: List[RestaurantInfo]
    partners: List[PartnerRecord]
    orders: List[Order]
    name: str = "custom"


# =============================================================================
# SCENARIO LOADING
# =============================================================================

def _parse_time(value: str, day: datetime) -> datetime:
    # Accept '2025-01-15 18:07:14' or '18:07:14'
    if " " in value:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
    t = datetime.strptime(value, "%H:%M:%S").time()
    return datetime.combine(day.date(), t)


def load_scenario(order_file: str, restaurant_file: str, partner_file: str) -> Scenario:
    """
    Load a scenario from CSV files.

    Columns:
        orders: order_id, user_id, restaurant_id, delivery_lat, delivery_lng, order_time
        restaurants: restaurant_id, name, lat, lng[, is_open]
        partners: partner_id, lat, lng[, vehicle_type, idle_since]

    Raises:
        FileNotFoundError: If a file doesn't exist
        ValueError: If a row is malformed
    """
    for path in (order_file, restaurant_file, partner_file):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Scenario file not found: {path}")

    day = datetime.combine(datetime.now().date(), config.SIMULATION_START)

    restaurants: List[RestaurantInfo] = []
    with open(restaurant_file, "r") as f:
        for row in csv.DictReader(f):
            try:
                restaurants.append(RestaurantInfo(
                    restaurant_id=row["restaurant_id"],
                    name=row.get("name", ""),
                    location=GeoPoint(float(row["lat"]), float(row["lng"])),
                    is_open=row.get("is_open", "true").strip().lower() != "false",
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid restaurant data in {restaurant_file}: {e}")

    orders: List[Order] = []
    with open(order_file, "r") as f:
        for row in csv.DictReader(f):
            try:
                orders.append(Order(
                    order_id=row["order_id"],
                    user_id=row.get("user_id") or f"user-{row['order_id']}",
                    restaurant_id=row["restaurant_id"],
                    delivery_address=GeoPoint(float(row["delivery_lat"]), float(row["delivery_lng"])),
                    order_time=_parse_time(row["order_time"], day),
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid order data in {order_file}: {e}")

    start = min((o.order_time for o in orders), default=day)
    partners: List[PartnerRecord] = []
    with open(partner_file, "r") as f:
        for row in csv.DictReader(f):
            try:
                idle = row.get("idle_since")
                partners.append(PartnerRecord(
                    partner_id=row["partner_id"],
                    location=GeoPoint(float(row["lat"]), float(row["lng"])),
                    idle_since=_parse_time(idle, day) if idle else start,
                    vehicle_type=row.get("vehicle_type", "motorbike"),
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid partner data in {partner_file}: {e}")

    logger.info(
        f"Loaded {len(orders)} orders, {len(restaurants)} restaurants, {len(partners)} partners"
    )
    return Scenario(restaurants, partners, orders, name=os.path.basename(order_file))


def generate_scenario(
    name: str = "dinner_rush",
    seed: int = 42,
    center: GeoPoint = DEFAULT_CITY_CENTER,
    start: Optional[datetime] = None,
) -> Scenario:
    """
    Build a synthetic city scenario.

    Restaurants are scattered within ~4 km of the centre, a third of them
    in co-located pairs (food courts). Orders pick a restaurant with a
    popularity skew and deliver within ~3 km of it.

    Args:
        name: Key of ``SCENARIOS``
        seed: Random seed; the same seed always yields the same scenario
        center: City centre
        start: First order time (default today at ``SIMULATION_START``)
    """
    if name not in SCENARIOS:
        raise ValueError(f"Unknown scenario '{name}'. Options: {', '.join(SCENARIOS)}")
    profile = SCENARIOS[name]
    rng = random.Random(seed)
    start = start or datetime.combine(datetime.now().date(), config.SIMULATION_START)

    def jitter(origin: GeoPoint, sigma_km: float) -> GeoPoint:
        dlat = utils.km_to_lat_degrees(rng.gauss(0, sigma_km))
        dlng = utils.km_to_lng_degrees(rng.gauss(0, sigma_km), origin.lat)
        return GeoPoint(origin.lat + dlat, origin.lng + dlng)

    restaurants: List[RestaurantInfo] = []
    while len(restaurants) < profile["restaurants"]:
        idx = len(restaurants)
        if idx % 3 == 2:
            # Next door to the previous restaurant
            location = jitter(restaurants[-1].location, 0.05)
        else:
            location = jitter(center, 2.0)
        restaurants.append(RestaurantInfo(
            restaurant_id=f"R{idx + 1:03d}", location=location, name=f"Restaurant {idx + 1}",
        ))

    weights = [1.0 / (i + 1) for i in range(len(restaurants))]
    orders: List[Order] = []
    for i in range(profile["orders"]):
        restaurant = rng.choices(restaurants, weights=weights)[0]
        offset = rng.uniform(0, profile["duration_mins"] * 60)
        orders.append(Order(
            order_id=f"ORD-{i + 1:04d}",
            user_id=f"U{rng.randint(1, profile['orders'] * 3):05d}",
            restaurant_id=restaurant.restaurant_id,
            delivery_address=jitter(restaurant.location, 1.5),
            order_time=start + timedelta(seconds=round(offset)),
        ))

    partners = [
        PartnerRecord(
            partner_id=f"P{i + 1:03d}",
            location=jitter(center, 3.0),
            idle_since=start - timedelta(minutes=rng.randint(0, 30)),
            vehicle_type=rng.choice(["motorbike", "motorbike", "car", "bike"]),
        )
        for i in range(profile["partners"])
    ]
    return Scenario(restaurants, partners, sorted(orders, key=lambda o: o.order_time), name=name)


# =============================================================================
# SIMULATION
# =============================================================================

class Simulation:
    """
    Tick-based replay of a scenario through the engine.

    At each tick:
    1. Inject orders whose order time has passed
    2. Advance kitchens (CONFIRMED -> PREPARING -> READY)
    3. Run the formation and assignment sweeps
    4. Let partners answer their offers
    5. Move accepted units through pickup and delivery

    Attributes:
        engine: The engine under test
        clock: Fake clock shared by the engine and the directories
        completed_missions: One entry per delivered order
    """

    def __init__(
        self,
        scenario: Scenario,
        settings: Optional[EngineSettings] = None,
        accept_probability: float = config.PARTNER_ACCEPT_PROBABILITY,
        seed: int = 7,
        tick_seconds: int = config.SIMULATION_TICK_SECONDS,
    ) -> None:
        self.scenario = scenario
        self.master_orders_list: List[Order] = sorted(scenario.orders, key=lambda o: o.order_time)
        start = self.master_orders_list[0].order_time if self.master_orders_list else \
            datetime.combine(datetime.now().date(), config.SIMULATION_START)

        self.clock = FakeClock(start)
        self.tick_seconds = tick_seconds
        self.accept_probability = accept_probability
        self.rng = random.Random(seed)

        self.restaurants = InMemoryRestaurantDirectory([replace(r) for r in scenario.restaurants])
        self.partners = InMemoryPartnerDirectory([replace(p) for p in scenario.partners], clock=self.clock)
        self.sink = InMemoryNotificationSink()
        self.engine = ConsolidationEngine(
            self.restaurants, self.partners, self.sink, settings=settings, clock=self.clock,
        )
        for partner in scenario.partners:
            self.engine.update_partner(replace(partner))

        self.total_orders = len(self.master_orders_list)
        self.rejected_orders: List[str] = []
        self.completed_missions: List[Dict[str, Any]] = []
        self.total_distance_km: float = 0.0
        self.partners_used: Set[str] = set()

        self._kitchen: Dict[str, Tuple[datetime, datetime]] = {}
        self._answered: Set[Tuple[str, str, datetime]] = set()
        self._runs: Dict[str, Dict[str, Any]] = {}
        self.group_history: List[Dict[str, Any]] = []

    # -------------------------------------------------------------------------
    # Tick stages
    # -------------------------------------------------------------------------

    def _inject_new_orders(self, now: datetime) -> None:
        while self.master_orders_list and self.master_orders_list[0].order_time <= now:
            order = self.master_orders_list.pop(0)
            try:
                result = utils.call_with_backoff(
                    lambda: self.engine.submit_order(order), sleep=lambda _: None
                )
            except DispatchError as e:
                logger.warning(f"Order {order.order_id} could not be submitted: {e}")
                self.rejected_orders.append(order.order_id)
                continue
            if not result.accepted:
                self.rejected_orders.append(order.order_id)
                continue
            self.engine.confirm_order(order.order_id)
            preparing_at = order.order_time + self.engine.settings.formation_window
            ready_at = order.order_time + timedelta(minutes=config.PREPARATION_MINS)
            self._kitchen[order.order_id] = (preparing_at, max(ready_at, preparing_at))

    def _advance_kitchens(self, now: datetime) -> None:
        for order_id, (preparing_at, ready_at) in list(self._kitchen.items()):
            order = self.engine.get_order(order_id)
            if order is None or order.status.is_terminal:
                del self._kitchen[order_id]
                continue
            try:
                if order.status is OrderStatus.CONFIRMED and now >= preparing_at:
                    order = self.engine.mark_preparing(order_id)
                if order.status is OrderStatus.PREPARING and now >= ready_at:
                    self.engine.mark_ready(order_id)
                    del self._kitchen[order_id]
            except DispatchError as e:
                logger.debug(f"Kitchen update for {order_id} deferred: {e}")

    def _answer_offers(self, now: datetime) -> None:
        response = timedelta(seconds=config.PARTNER_RESPONSE_SECONDS)
        for assignment in self.engine.store.list_assignments(AssignmentStatus.OFFERED):
            key = (assignment.dispatch_id, assignment.partner_id, assignment.offered_at)
            if key in self._answered or assignment.offered_at + response > now:
                continue
            self._answered.add(key)
            accepted = self.rng.random() < self.accept_probability
            try:
                self.engine.on_partner_offer(assignment.partner_id, assignment.dispatch_id, accepted)
            except DispatchError as e:
                logger.debug(f"Offer answer for {assignment.dispatch_id} dropped: {e}")

    def _advance_runs(self, now: datetime) -> None:
        speed_km_per_min = config.AVG_SPEED_KMH / 60.0

        for assignment in self.engine.store.list_assignments(AssignmentStatus.IN_PROGRESS):
            run = self._runs.get(assignment.dispatch_id)
            if run is None or run["partner_id"] != assignment.partner_id:
                partner = self.partners.get(assignment.partner_id)
                orders = self.engine.store.get_orders(assignment.order_ids)
                pickup = self.engine.scheduler.search_center(orders)
                approach_km = utils.distance_km(partner.location, pickup)
                run = {
                    "partner_id": assignment.partner_id,
                    "arrive_at": now + timedelta(minutes=approach_km / speed_km_per_min),
                    "approach_km": approach_km,
                    "deliver_at": None,
                }
                self._runs[assignment.dispatch_id] = run

            try:
                if run["deliver_at"] is None and now >= run["arrive_at"]:
                    orders = [
                        o for o in self.engine.store.get_orders(assignment.order_ids)
                        if o.status is not OrderStatus.CANCELLED
                    ]
                    if all(o.status is OrderStatus.READY for o in orders):
                        self.engine.mark_picked_up(assignment.dispatch_id)
                        self.engine.mark_in_transit(assignment.dispatch_id)
                        route_km = self._route_km(orders)
                        minutes = route_km / speed_km_per_min + \
                            config.EXTRA_STOP_MINS * (len(orders) - 1)
                        run["deliver_at"] = now + timedelta(minutes=minutes)
                        run["route_km"] = route_km
                        run["last_drop"] = orders[-1].delivery_address
                elif run["deliver_at"] is not None and now >= run["deliver_at"]:
                    self._complete_run(assignment.dispatch_id, run, now)
            except DispatchError as e:
                logger.debug(f"Run {assignment.dispatch_id} not advanced: {e}")

    def _route_km(self, orders: List[Order]) -> float:
        stops = [orders[0].pickup_location] + [o.delivery_address for o in orders]
        return sum(utils.distance_km(a, b) for a, b in zip(stops, stops[1:]))

    def _complete_run(self, dispatch_id: str, run: Dict[str, Any], now: datetime) -> None:
        assignment = self.engine.mark_delivered(dispatch_id)
        self.total_distance_km += run["approach_km"] + run["route_km"]
        self.partners_used.add(run["partner_id"])

        self.partners.move(run["partner_id"], run["last_drop"])
        moved = self.partners.get(run["partner_id"])
        self.engine.update_partner(replace(moved))

        for order in self.engine.store.get_orders(assignment.order_ids):
            if order.status is not OrderStatus.DELIVERED:
                continue
            self.completed_missions.append({
                "order_id": order.order_id,
                "dispatch_id": dispatch_id,
                "partner_id": run["partner_id"],
                "grouped": not assignment.is_standalone,
                "order_time": order.order_time,
                "delivered_time": now,
            })
        del self._runs[dispatch_id]

    def tick(self, verbose: bool = False) -> None:
        now = self.clock.advance(self.tick_seconds)
        self._inject_new_orders(now)
        self._advance_kitchens(now)
        self.engine.sweep_formation(now)
        self.engine.sweep_assignments(now)
        self._answer_offers(now)
        self._advance_runs(now)

        if verbose and now.second < self.tick_seconds and now.minute % 10 == 0:
            print(f"[{now.strftime('%H:%M')}] "
                  f"Pending: {len(self.master_orders_list)}, "
                  f"Running: {len(self._runs)}, "
                  f"Delivered: {len(self.completed_missions)}")

    def _finished(self) -> bool:
        if self.master_orders_list:
            return False
        return all(
            o.status.is_terminal for o in self.engine.store.list_orders()
        )

    def run(self, verbose: bool = False, max_minutes: float = 240.0) -> Dict[str, Any]:
        """
        Run until every order is terminal or ``max_minutes`` of simulated time.

        Returns:
            Dictionary of KPI results (see ``get_results``)
        """
        mode = "CONSOLIDATION" if self.engine.settings.consolidation_enabled else "BASELINE"
        if verbose:
            print(f"======== Starting Simulation: {mode} ({self.scenario.name}) ========")
        deadline = self.clock.now + timedelta(minutes=max_minutes)
        while self.clock.now < deadline and not self._finished():
            self.tick(verbose)
        if verbose:
            print("Simulation complete. Calculating results...")
        return self.get_results()

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def get_results(self) -> Dict[str, Any]:
        """
        KPI summary of the run.

        Trips are completed delivery runs; trips saved compares them with
        one run per delivered order.
        """
        store = self.engine.store
        groups = store.list_groups()
        assignments = store.list_assignments()
        completed_runs = [a for a in assignments if a.status is AssignmentStatus.COMPLETED]
        delivered = len(self.completed_missions)

        events = self.sink.unique_events()
        offers = sum(1 for e in events if e.event_type is EventType.DELIVERY_OFFERED)
        rejections = sum(
            1 for e in events
            if e.entity_kind == "assignment" and e.new_status == AssignmentStatus.REJECTED.value
        )

        delivery_times = [
            utils.minutes_between(m["order_time"], m["delivered_time"])
            for m in self.completed_missions
        ]
        avg_delivery = statistics.mean(delivery_times) if delivery_times else 0.0
        p90_delivery = sorted(delivery_times)[int(len(delivery_times) * 0.9)] if delivery_times else 0.0
        avg_group_size = statistics.mean(g.size for g in groups) if groups else 0.0
        trips = len(completed_runs)

        return {
            "total_orders": self.total_orders,
            "orders_rejected": len(self.rejected_orders),
            "orders_delivered": delivered,
            "groups_formed": len(groups),
            "groups_completed": sum(1 for g in groups if g.status is GroupStatus.COMPLETED),
            "avg_group_size": round(avg_group_size, 2),
            "trips": trips,
            "trips_saved": max(0, delivered - trips),
            "standalone_dispatches": sum(1 for a in assignments if a.is_standalone),
            "disbands": sum(1 for g in groups if g.status is GroupStatus.DISBANDED),
            "offers": offers,
            "rejections": rejections,
            "partners_used": len(self.partners_used),
            "total_distance_km": round(self.total_distance_km, 2),
            "avg_delivery_time_min": round(avg_delivery, 2),
            "p90_delivery_time_min": round(p90_delivery, 2),
            "events_published": len(self.sink.events),

            # Display format used by the CLI table and the dashboard
            "Orders Delivered": f"{delivered}/{self.total_orders}",
            "Groups Formed": len(groups),
            "Avg Group Size": f"{avg_group_size:.2f}",
            "Delivery Runs": trips,
            "Trips Saved": max(0, delivered - trips),
            "Disbanded Groups": sum(1 for g in groups if g.status is GroupStatus.DISBANDED),
            "Offers / Rejections": f"{offers}/{rejections}",
            "Partners Used": len(self.partners_used),
            "Fleet Distance": f"{self.total_distance_km:.2f} km",
            "Avg Delivery Time": utils.format_time_duration(avg_delivery),
        }

    def get_map_data(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Rows for the dashboard map.

        Returns:
            {"orders": [...], "restaurants": [...]} where each order row has
            its delivery point, restaurant point and group id (or None)
        """
        store = self.engine.store
        group_of: Dict[str, str] = {}
        for group in store.list_groups():
            if group.status is GroupStatus.DISBANDED:
                continue
            for member_id in group.member_ids:
                group_of[member_id] = group.group_order_id

        orders = []
        for order in store.list_orders():
            pickup = order.pickup_location or order.delivery_address
            orders.append({
                "order_id": order.order_id,
                "restaurant_id": order.restaurant_id,
                "status": order.status.value,
                "group_order_id": group_of.get(order.order_id),
                "lat": order.delivery_address.lat,
                "lng": order.delivery_address.lng,
                "pickup_lat": pickup.lat,
                "pickup_lng": pickup.lng,
                "order_time": order.order_time,
            })
        restaurants = [
            {"restaurant_id": r.restaurant_id, "name": r.name,
             "lat": r.location.lat, "lng": r.location.lng}
            for r in self.scenario.restaurants
        ]
        return {"orders": orders, "restaurants": restaurants}


def run_comparison(
    scenario: Scenario,
    settings: Optional[EngineSettings] = None,
    accept_probability: float = config.PARTNER_ACCEPT_PROBABILITY,
    seed: int = 7,
    verbose: bool = False,
) -> Dict[str, Dict[str, Any]]:
    """
    Run ``scenario`` with consolidation and as a no-merge baseline.

    Returns:
        {"baseline": results, "consolidation": results}
    """
    settings = settings or EngineSettings.from_config()
    results: Dict[str, Dict[str, Any]] = {}
    for label, enabled in (("baseline", False), ("consolidation", True)):
        sim = Simulation(
            scenario, replace(settings, consolidation_enabled=enabled),
            accept_probability=accept_probability, seed=seed,
        )
        results[label] = sim.run(verbose=verbose)
    return results
