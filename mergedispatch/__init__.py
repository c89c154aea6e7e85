# mergeeats-dispatch/mergedispatch/__init__.py

from .models import (
    Order,
    OrderItem,
    GroupOrder,
    DeliveryAssignment,
    PartnerRecord,
    RestaurantInfo,
    GeoPoint,
    DomainEvent,
    OrderStatus,
    GroupStatus,
    AssignmentStatus,
    EventType,
    MergeOutcome,
    SubmitResult,
    CancelResult,
    GroupView,
)
from .errors import (
    DispatchError,
    ValidationError,
    StateConflict,
    AssignmentExhausted,
    DirectoryUnavailable,
)
from .settings import EngineSettings
from .engine import ConsolidationEngine
from .directory import (
    HttpNotificationSink,
    HttpPartnerDirectory,
    HttpRestaurantDirectory,
    InMemoryNotificationSink,
    InMemoryPartnerDirectory,
    InMemoryRestaurantDirectory,
)
from .sweeper import start_sweepers, stop_sweepers

__version__ = "1.0.0"
__author__ = "MergeEats Dispatch Team"

__all__ = [
    # Models
    "Order",
    "OrderItem",
    "GroupOrder",
    "DeliveryAssignment",
    "PartnerRecord",
    "RestaurantInfo",
    "GeoPoint",
    "DomainEvent",
    "OrderStatus",
    "GroupStatus",
    "AssignmentStatus",
    "EventType",
    "MergeOutcome",
    "SubmitResult",
    "CancelResult",
    "GroupView",
    # Errors
    "DispatchError",
    "ValidationError",
    "StateConflict",
    "AssignmentExhausted",
    "DirectoryUnavailable",
    # Core
    "EngineSettings",
    "ConsolidationEngine",
    "start_sweepers",
    "stop_sweepers",
    # Collaborators
    "HttpNotificationSink",
    "HttpPartnerDirectory",
    "HttpRestaurantDirectory",
    "InMemoryNotificationSink",
    "InMemoryPartnerDirectory",
    "InMemoryRestaurantDirectory",
]
