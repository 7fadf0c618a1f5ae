from webhook_relay.repositories.delivery_log import DeliveryLogRepository
from webhook_relay.repositories.events import EVENTS_TABLE, EventRepository

__all__ = ["DeliveryLogRepository", "EventRepository", "EVENTS_TABLE"]
