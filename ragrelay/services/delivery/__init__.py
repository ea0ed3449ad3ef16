from ragrelay.services.delivery.publisher import (
    HybridPublisher,
    PublishDispatcher,
    Publisher,
    PublishResult,
    QueuePublisher,
    WebhookPublisher,
    build_publisher,
)
from ragrelay.services.delivery.queue import QueueTransport
from ragrelay.services.delivery.scheduler import RetryScheduler, SweepResult, retry_delay_ms
from ragrelay.services.delivery.webhook import WebhookDeliveryResult, WebhookTransport

__all__ = [
    "HybridPublisher",
    "PublishDispatcher",
    "PublishResult",
    "Publisher",
    "QueuePublisher",
    "QueueTransport",
    "RetryScheduler",
    "SweepResult",
    "WebhookDeliveryResult",
    "WebhookPublisher",
    "WebhookTransport",
    "build_publisher",
    "retry_delay_ms",
]
