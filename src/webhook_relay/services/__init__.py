from webhook_relay.services.dispatcher import DispatchCoordinator
from webhook_relay.services.emitter import ChangeEventEmitter, DispatchQueue
from webhook_relay.services.events import EventService
from webhook_relay.services.reconciliation import StatusReconciler
from webhook_relay.services.retry import RetryPolicy, RetryScheduler
from webhook_relay.services.sink import WebhookSink
from webhook_relay.services.stats import StatsService

__all__ = [
    "ChangeEventEmitter",
    "DispatchCoordinator",
    "DispatchQueue",
    "EventService",
    "RetryPolicy",
    "RetryScheduler",
    "StatsService",
    "StatusReconciler",
    "WebhookSink",
]
