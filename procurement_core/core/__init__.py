from procurement_core.core.event_bus import (
    BudgetDepleted,
    DocumentDerived,
    DomainEvent,
    EntityTransitioned,
    EventBus,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "EntityTransitioned",
    "DocumentDerived",
    "BudgetDepleted",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
