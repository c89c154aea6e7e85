# mergeeats-dispatch/tests/test_simulation.py

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import CENTER, R1, R2, R3, T0, offset
from mergedispatch.models import Order, OrderStatus, PartnerRecord
from mergedispatch.settings import EngineSettings
from mergedispatch.simulation import (
    SCENARIOS,
    Scenario,
    Simulation,
    generate_scenario,
    load_scenario,
    run_comparison,
)


@pytest.fixture
def scenario() -> Scenario:
    # Six orders from one kitchen within two minutes, all delivered nearby.
    orders = [
        Order(
            f"ORD-{i + 1}", f"U{i + 1}", "R1",
            offset(CENTER, east_km=1.0 + 0.1 * i, north_km=0.2 * (i % 2)),
            T0 + timedelta(seconds=20 * i),
        )
        for i in range(6)
    ]
    partners = [
        PartnerRecord(f"P{i + 1}", offset(CENTER, north_km=0.5 * (i + 1)), T0 - timedelta(minutes=i))
        for i in range(6)
    ]
    return Scenario([replace(R1), replace(R2), replace(R3)], partners, orders, name="six-orders")


class TestSimulation:

    def test_baseline_runs_one_trip_per_order(self, scenario):
        sim = Simulation(scenario, EngineSettings(consolidation_enabled=False), accept_probability=1.0)

        results = sim.run()

        assert results["orders_delivered"] == 6
        assert results["trips"] == 6
        assert results["trips_saved"] == 0
        assert results["groups_formed"] == 0
        assert results["standalone_dispatches"] == 6
        assert all(o.status is OrderStatus.DELIVERED for o in sim.engine.store.list_orders())

    def test_consolidation_saves_trips(self, scenario):
        sim = Simulation(scenario, EngineSettings(), accept_probability=1.0)

        results = sim.run()

        assert results["orders_delivered"] == 6
        assert results["trips"] < 6
        assert results["trips_saved"] == 6 - results["trips"]
        assert results["groups_formed"] >= 1
        assert results["Orders Delivered"] == "6/6"
        assert results["events_published"] > 0
        grouped = [m for m in sim.completed_missions if m["grouped"]]
        assert grouped

    def test_map_data(self, scenario):
        sim = Simulation(scenario, EngineSettings(), accept_probability=1.0)
        sim.run()

        data = sim.get_map_data()

        assert {r["restaurant_id"] for r in data["restaurants"]} == {"R1", "R2", "R3"}
        assert len(data["orders"]) == 6
        row = data["orders"][0]
        assert {"order_id", "group_order_id", "lat", "lng", "pickup_lat", "pickup_lng", "status"} <= set(row)
        assert any(r["group_order_id"] for r in data["orders"])

    def test_run_comparison_reports_both_modes(self, scenario):
        results = run_comparison(scenario, EngineSettings(), accept_probability=1.0)
        assert set(results) == {"baseline", "consolidation"}
        assert results["consolidation"]["trips"] <= results["baseline"]["trips"]


class TestScenarios:

    def test_generated_scenario_is_deterministic(self):
        a = generate_scenario("quiet", seed=3, start=T0)
        b = generate_scenario("quiet", seed=3, start=T0)

        assert len(a.orders) == SCENARIOS["quiet"]["orders"]
        assert len(a.partners) == SCENARIOS["quiet"]["partners"]
        assert [o.delivery_address for o in a.orders] == [o.delivery_address for o in b.orders]
        assert a.orders == sorted(a.orders, key=lambda o: o.order_time)

    def test_unknown_scenario(self):
        with pytest.raises(ValueError):
            generate_scenario("brunch")

    def test_load_csv(self, tmp_path):
        (tmp_path / "orders.csv").write_text(
            "order_id,user_id,restaurant_id,delivery_lat,delivery_lng,order_time\n"
            "O1,U1,R1,25.29,51.54,18:05:00\n"
            "O2,,R1,25.28,51.52,2025-01-15 18:01:00\n"
        )
        (tmp_path / "restaurants.csv").write_text(
            "restaurant_id,name,lat,lng,is_open\nR1,Shawarma House,25.2854,51.531,false\n"
        )
        (tmp_path / "partners.csv").write_text("partner_id,lat,lng\nP1,25.28,51.53\n")

        scenario = load_scenario(
            str(tmp_path / "orders.csv"), str(tmp_path / "restaurants.csv"), str(tmp_path / "partners.csv")
        )

        assert [o.order_id for o in scenario.orders] == ["O1", "O2"]
        assert scenario.orders[1].user_id == "user-O2"
        assert scenario.orders[1].order_time.hour == 18 and scenario.orders[1].order_time.minute == 1
        assert scenario.restaurants[0].is_open is False
        assert scenario.partners[0].idle_since == min(o.order_time for o in scenario.orders)

    def test_load_csv_errors(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_scenario(str(tmp_path / "a.csv"), str(tmp_path / "b.csv"), str(tmp_path / "c.csv"))

        (tmp_path / "orders.csv").write_text(
            "order_id,user_id,restaurant_id,delivery_lat,delivery_lng,order_time\n"
            "O1,U1,R1,north,51.54,18:05:00\n"
        )
        (tmp_path / "restaurants.csv").write_text("restaurant_id,name,lat,lng\nR1,X,25.2,51.5\n")
        (tmp_path / "partners.csv").write_text("partner_id,lat,lng\n")
        with pytest.raises(ValueError):
            load_scenario(
                str(tmp_path / "orders.csv"), str(tmp_path / "restaurants.csv"),
                str(tmp_path / "partners.csv"),
            )
