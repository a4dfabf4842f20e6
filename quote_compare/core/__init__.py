from quote_compare.core.event_bus import (
    ComparisonSessionCommitted,
    DomainEvent,
    EventBus,
    InquiryReconciled,
    OrdersCreated,
    ReferenceChangeRecorded,
    get_event_bus,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "InquiryReconciled",
    "ReferenceChangeRecorded",
    "ComparisonSessionCommitted",
    "OrdersCreated",
    "get_event_bus",
]
