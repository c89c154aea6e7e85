# mergeeats-dispatch/mergedispatch/models.py
"""
Core domain models for the MergeEats consolidation engine.

This module defines the data structures shared by every component:
- Order: a customer order the engine may merge and dispatch
- GroupOrder: a consolidated delivery unit of 1..K orders
- DeliveryAssignment: the offer/assignment record of a dispatch unit
- PartnerRecord / RestaurantInfo: read models from the external directories
- DomainEvent: what the engine publishes to the notification sink
- SubmitResult / CancelResult / GroupView: results returned at the boundary
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from . import config


class OrderStatus(Enum):
    """Lifecycle states of an order."""
    PENDING = "PENDING"        # Placed, waiting for restaurant confirmation
    CONFIRMED = "CONFIRMED"    # Confirmed by the restaurant
    PREPARING = "PREPARING"    # Kitchen is working on it
    READY = "READY"            # Ready for pickup
    PICKED_UP = "PICKED_UP"    # Collected by the partner
    IN_TRANSIT = "IN_TRANSIT"  # On its way to the customer
    DELIVERED = "DELIVERED"    # Handed over
    CANCELLED = "CANCELLED"    # Cancelled before pickup

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    @property
    def is_mergeable(self) -> bool:
        return self in MERGEABLE_ORDER_STATUSES

    @property
    def is_picked_up(self) -> bool:
        return self in (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED)


MERGEABLE_ORDER_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED}
)

# Statuses an order only reaches together with its dispatch unit.
UNIT_DRIVEN_ORDER_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED}
)


class GroupStatus(Enum):
    """
    States of a consolidated delivery unit.

    FORMING accepts new members until the formation deadline or the size cap.
    FINALIZED freezes the member set and waits for a partner.
    """
    FORMING = "FORMING"
    FINALIZED = "FINALIZED"
    ASSIGNED = "ASSIGNED"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    DISBANDED = "DISBANDED"

    @property
    def is_terminal(self) -> bool:
        return self in (GroupStatus.COMPLETED, GroupStatus.DISBANDED)

    @property
    def is_frozen(self) -> bool:
        """True once membership can no longer grow."""
        return self is not GroupStatus.FORMING


class AssignmentStatus(Enum):
    """States of a delivery assignment."""
    PENDING = "PENDING"          # Waiting for the next offer
    OFFERED = "OFFERED"          # Offered to a partner, awaiting answer
    ACCEPTED = "ACCEPTED"        # Partner said yes
    REJECTED = "REJECTED"        # Partner said no or timed out
    IN_PROGRESS = "IN_PROGRESS"  # Partner is running the delivery
    COMPLETED = "COMPLETED"      # All orders delivered
    FAILED = "FAILED"            # Retry budget spent or unit cancelled

    @property
    def is_terminal(self) -> bool:
        return self in (AssignmentStatus.COMPLETED, AssignmentStatus.FAILED)


class EventType(Enum):
    """Domain events published to the notification sink."""
    ORDER_STATUS_CHANGED = "orderStatusChanged"
    GROUP_FORMED = "groupFormed"
    GROUP_FINALIZED = "groupFinalized"
    GROUP_STATUS_CHANGED = "groupStatusChanged"
    GROUP_DISBANDED = "groupDisbanded"
    DELIVERY_OFFERED = "deliveryOffered"
    DELIVERY_ASSIGNED = "deliveryAssigned"
    ASSIGNMENT_STATUS_CHANGED = "assignmentStatusChanged"


class MergeOutcome(Enum):
    """Result of a merge attempt for a trigger order."""
    GROUPED = "GROUPED"
    INDIVIDUAL = "INDIVIDUAL"


@dataclass(frozen=True)
class GeoPoint:
    """A (latitude, longitude) pair in decimal degrees."""
    lat: float
    lng: float

    def is_valid(self) -> bool:
        """True for finite coordinates inside the WGS84 ranges."""
        return (
            isinstance(self.lat, (int, float))
            and isinstance(self.lng, (int, float))
            and math.isfinite(self.lat)
            and math.isfinite(self.lng)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lng <= 180.0
        )

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def __repr__(self) -> str:
        return f"GeoPoint({self.lat:.5f}, {self.lng:.5f})"


@dataclass
class OrderItem:
    """A line of an order. Carried through, never used for matching."""
    menu_item_id: str
    name: str
    quantity: int = 1
    unit_price: float = 0.0


@dataclass
class Order:
    """
    A customer order.

    Attributes:
        order_id: Unique identifier
        user_id: Customer that placed the order
        restaurant_id: Restaurant preparing the order
        delivery_address: Where the order is delivered
        order_time: When the order was placed
        items: Order lines
        status: Current lifecycle state
        group_order_id: Back-reference to the owning group, written only by
            the coordinator through the store's claim
        tracking_id: Customer-facing tracking reference

    Engine-stamped state:
        pickup_location: Restaurant location copied from the directory
        dispatch_after: End of the hold before the order is dispatched alone
        cancellation_reason: Why the order was cancelled, if it was
        version: Optimistic-concurrency counter, bumped on every save
    """
    order_id: str
    user_id: str
    restaurant_id: str
    delivery_address: GeoPoint
    order_time: datetime
    items: List[OrderItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    group_order_id: Optional[str] = None
    tracking_id: Optional[str] = None

    pickup_location: Optional[GeoPoint] = None
    dispatch_after: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 0

    @property
    def is_grouped(self) -> bool:
        return self.group_order_id is not None

    def __repr__(self) -> str:
        return f"Order({self.order_id}, {self.status.value}, group={self.group_order_id})"


@dataclass
class GroupOrder:
    """
    A consolidated delivery unit.

    ``member_ids`` keeps join order and only ever grows while FORMING.
    Cancelled members stay in ``member_ids`` and are listed again in
    ``cancelled_member_ids`` so group-size accounting is unaffected.
    """
    group_order_id: str
    restaurant_ids: List[str]
    member_ids: List[str]
    created_at: datetime
    formation_deadline: datetime
    status: GroupStatus = GroupStatus.FORMING
    assigned_partner_id: Optional[str] = None
    cancelled_member_ids: List[str] = field(default_factory=list)
    finalize_reason: Optional[str] = None
    disband_reason: Optional[str] = None
    finalized_at: Optional[datetime] = None
    version: int = 0

    @property
    def size(self) -> int:
        return len(self.member_ids)

    @property
    def primary_restaurant_id(self) -> str:
        return self.restaurant_ids[0]

    @property
    def active_member_ids(self) -> List[str]:
        return [m for m in self.member_ids if m not in self.cancelled_member_ids]

    def __repr__(self) -> str:
        return f"GroupOrder({self.group_order_id}, {self.status.value}, members={self.member_ids})"


@dataclass
class DeliveryAssignment:
    """
    Offer and assignment record of a dispatch unit.

    A dispatch unit is either a group (``dispatch_id`` is the group id) or a
    standalone order (``dispatch_id`` is the order id and ``group_order_id``
    is None).
    """
    dispatch_id: str
    order_ids: List[str]
    created_at: datetime
    group_order_id: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    partner_id: Optional[str] = None
    retry_count: int = 0
    tried_partner_ids: List[str] = field(default_factory=list)
    offered_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    version: int = 0

    @property
    def is_standalone(self) -> bool:
        return self.group_order_id is None

    def __repr__(self) -> str:
        return (
            f"DeliveryAssignment({self.dispatch_id}, {self.status.value}, "
            f"partner={self.partner_id}, retries={self.retry_count})"
        )


@dataclass
class PartnerRecord:
    """Availability snapshot of a delivery partner from the partner directory."""
    partner_id: str
    location: GeoPoint
    idle_since: datetime
    capacity: int = config.PARTNER_MAX_ORDERS
    busy: bool = False
    vehicle_type: str = "motorbike"
    rating: float = 5.0

    @property
    def is_available(self) -> bool:
        return not self.busy and self.capacity > 0


@dataclass
class RestaurantInfo:
    """Restaurant record from the restaurant directory."""
    restaurant_id: str
    location: GeoPoint
    is_open: bool = True
    accepts_online_orders: bool = True
    name: str = ""


@dataclass(frozen=True)
class DomainEvent:
    """
    An event for the notification collaborator.

    Delivery is at-least-once; consumers deduplicate on ``dedup_key``.
    """
    event_type: EventType
    entity_kind: str
    entity_id: str
    new_status: str
    version: int
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> Tuple[str, str, int]:
        return (self.entity_id, self.new_status, self.version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "entityKind": self.entity_kind,
            "entityId": self.entity_id,
            "newStatus": self.new_status,
            "version": self.version,
            "occurredAt": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


@dataclass
class MergeDecision:
    """What the coordinator decided for a trigger order."""
    outcome: MergeOutcome
    order_id: str
    group: Optional[GroupOrder] = None
    joined_existing: bool = False

    @property
    def is_grouped(self) -> bool:
        return self.outcome is MergeOutcome.GROUPED


@dataclass
class SubmitResult:
    """Answer to ``submit_order``."""
    accepted: bool
    order_id: str
    reason: Optional[str] = None
    outcome: Optional[MergeOutcome] = None
    group_order_id: Optional[str] = None
    assignment: Optional[DeliveryAssignment] = None
    duplicate: bool = False


@dataclass
class CancelResult:
    """Answer to ``cancel_order``."""
    accepted: bool
    order_id: str
    reason: Optional[str] = None
    group_order_id: Optional[str] = None
    group_disbanded: bool = False


@dataclass
class GroupView:
    """Read-only view of a group for ``get_group_status``."""
    group_order_id: str
    status: GroupStatus
    member_ids: List[str]
    active_member_ids: List[str]
    cancelled_member_ids: List[str]
    restaurant_ids: List[str]
    formation_deadline: datetime
    partner_id: Optional[str]
    assignment_status: Optional[AssignmentStatus]
    order_statuses: Dict[str, OrderStatus]
    version: int

    @classmethod
    def build(
        cls,
        group: GroupOrder,
        orders: List[Order],
        assignment: Optional[DeliveryAssignment],
    ) -> "GroupView":
        return cls(
            group_order_id=group.group_order_id,
            status=group.status,
            member_ids=list(group.member_ids),
            active_member_ids=group.active_member_ids,
            cancelled_member_ids=list(group.cancelled_member_ids),
            restaurant_ids=list(group.restaurant_ids),
            formation_deadline=group.formation_deadline,
            partner_id=group.assigned_partner_id,
            assignment_status=assignment.status if assignment else None,
            order_statuses={o.order_id: o.status for o in orders},
            version=group.version,
        )
