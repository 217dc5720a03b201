from .event_bus import EventBus, DomainEvent

__all__ = ["EventBus", "DomainEvent"]
