"""Domain layer: canonical events, the booking aggregate, conflict detection.

This package defines the primitives every other layer depends on but never
modifies.  Nothing here performs I/O.
"""

from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent, EventMetadata

__all__ = ["BookingAggregate", "DomainEvent", "EventMetadata"]
