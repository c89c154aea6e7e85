# mergeeats-dispatch/tests/test_directory.py
"""HTTP adapters against a mocked ``requests.Session``, plus the in-memory ones."""

from __future__ import annotations

from datetime import timedelta, timezone
from unittest import mock

import pytest
import requests

from conftest import CENTER, T0
from mergedispatch.directory import (
    CachedRestaurantDirectory,
    HttpNotificationSink,
    HttpPartnerDirectory,
    HttpRestaurantDirectory,
    InMemoryNotificationSink,
    InMemoryPartnerDirectory,
)
from mergedispatch.errors import DirectoryUnavailable
from mergedispatch.models import DomainEvent, EventType, PartnerRecord


def response(status=200, body=None):
    resp = mock.Mock()
    resp.status_code = status
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error")
    return resp


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


RESTAURANT_BODY = {
    "restaurantId": "R1",
    "name": "Shawarma House",
    "address": {"latitude": 25.2854, "longitude": 51.531},
    "isOpen": False,
    "acceptsOnlineOrders": True,
}


class TestHttpRestaurantDirectory:

    def test_parses_restaurant(self, session):
        session.request.return_value = response(200, RESTAURANT_BODY)
        directory = HttpRestaurantDirectory("http://restaurants/", timeout=2.0, session=session)

        info = directory.get_restaurant("R1")

        session.request.assert_called_once_with("GET", "http://restaurants/api/restaurants/R1", timeout=2.0)
        assert info.restaurant_id == "R1"
        assert info.location.lat == pytest.approx(25.2854)
        assert info.is_open is False

    def test_unknown_restaurant_is_none(self, session):
        session.request.return_value = response(404)
        assert HttpRestaurantDirectory("http://r", session=session).get_restaurant("nope") is None

    @pytest.mark.parametrize("failure", [
        requests.exceptions.Timeout("slow"),
        requests.exceptions.ConnectionError("refused"),
    ])
    def test_transport_errors_are_retryable(self, session, failure):
        session.request.side_effect = failure
        with pytest.raises(DirectoryUnavailable) as exc:
            HttpRestaurantDirectory("http://r", session=session).get_restaurant("R1")
        assert exc.value.retryable

    @pytest.mark.parametrize("resp", [
        response(503),
        response(400),
        response(200, {"restaurantId": "R1"}),
        response(200, {"restaurantId": "R1", "address": {"latitude": "north", "longitude": 1}}),
    ])
    def test_bad_responses(self, session, resp):
        session.request.return_value = resp
        with pytest.raises(DirectoryUnavailable):
            HttpRestaurantDirectory("http://r", session=session).get_restaurant("R1")


class TestHttpPartnerDirectory:

    def test_lists_partners(self, session, clock):
        session.request.return_value = response(200, [
            {
                "partnerId": "P1",
                "currentLocation": {"latitude": 25.29, "longitude": 51.53},
                "lastActiveAt": "2025-01-15T17:40:00",
                "status": "ONLINE",
                "vehicleType": "CAR",
                "maxOrders": 2,
            },
            {
                "partnerId": "P2",
                "currentLocation": {"latitude": 25.28, "longitude": 51.54},
                "status": "BUSY",
            },
        ])
        directory = HttpPartnerDirectory("http://partners", session=session, clock=clock)

        records = directory.list_available_partners(CENTER, 10.0)

        _, kwargs = session.request.call_args
        assert kwargs["params"] == {"latitude": CENTER.lat, "longitude": CENTER.lng, "radiusKm": 10.0}
        p1, p2 = records
        assert p1.idle_since == T0 - timedelta(minutes=20)
        assert p1.idle_since.tzinfo is timezone.utc
        assert p1.vehicle_type == "car"
        assert p1.capacity == 2
        assert p1.is_available
        assert p2.idle_since == T0
        assert not p2.is_available

    def test_malformed_listing(self, session):
        session.request.return_value = response(200, [{"partnerId": "P1"}])
        with pytest.raises(DirectoryUnavailable):
            HttpPartnerDirectory("http://p", session=session).list_available_partners(CENTER, 5)

    @pytest.mark.parametrize("resp, expected", [
        (response(200, {"reserved": True}), True),
        (response(200, {"reserved": False}), False),
        (response(409), False),
        (response(404), False),
    ])
    def test_reserve(self, session, resp, expected):
        session.request.return_value = resp
        directory = HttpPartnerDirectory("http://p", session=session)
        assert directory.reserve("P1") is expected
        assert session.request.call_args[0] == ("POST", "http://p/partners/P1/reserve")

    def test_reserve_outage_raises(self, session):
        session.request.return_value = response(502)
        with pytest.raises(DirectoryUnavailable):
            HttpPartnerDirectory("http://p", session=session).reserve("P1")

    def test_release_of_unknown_partner_is_ignored(self, session):
        session.request.return_value = response(404)
        HttpPartnerDirectory("http://p", session=session).release("P404")


class TestHttpNotificationSink:

    def _event(self):
        return DomainEvent(EventType.GROUP_FORMED, "group", "G1", "FORMING", 1, T0, {"memberIds": ["O1"]})

    def test_posts_event_json(self, session):
        session.request.return_value = response(202)
        HttpNotificationSink("http://notify", session=session).publish(self._event())

        args, kwargs = session.request.call_args
        assert args == ("POST", "http://notify/notifications/events")
        assert kwargs["json"]["eventType"] == "groupFormed"
        assert kwargs["json"]["occurredAt"] == T0.isoformat()

    def test_failed_publish_raises(self, session):
        session.request.return_value = response(500)
        with pytest.raises(DirectoryUnavailable):
            HttpNotificationSink("http://notify", session=session).publish(self._event())


class TestInMemory:

    def test_cached_restaurants_expire(self, restaurants, clock):
        cached = CachedRestaurantDirectory(restaurants, timedelta(seconds=10), clock)
        cached.get_restaurant("R1")
        cached.get_restaurant("R1")
        assert restaurants.lookups == 1

        clock.advance(11)
        cached.get_restaurant("R1")
        assert restaurants.lookups == 2

    def test_unknown_restaurant_not_cached(self, restaurants, clock):
        cached = CachedRestaurantDirectory(restaurants, timedelta(seconds=10), clock)
        assert cached.get_restaurant("R404") is None
        assert cached.get_restaurant("R404") is None
        assert restaurants.lookups == 2

    def test_reserve_is_exclusive(self, clock):
        directory = InMemoryPartnerDirectory([PartnerRecord("P1", CENTER, T0)], clock=clock)
        assert directory.reserve("P1")
        assert not directory.reserve("P1")
        assert directory.list_available_partners(CENTER, 1.0) == []

        clock.advance(60)
        directory.release("P1")
        assert directory.get("P1").idle_since == T0 + timedelta(seconds=60)
        assert directory.reserve("P1")

    def test_sink_dedups_redelivered_events(self):
        sink = InMemoryNotificationSink()
        event = DomainEvent(EventType.GROUP_FORMED, "group", "G1", "FORMING", 1, T0)
        sink.publish(event)
        sink.publish(event)
        assert len(sink.events) == 2
        assert sink.unique_events() == [event]
