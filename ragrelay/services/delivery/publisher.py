from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable

from ragrelay.core.config import Settings
from ragrelay.core.errors import TransientDeliveryError
from ragrelay.services.delivery.queue import QueueTransport
from ragrelay.services.delivery.scheduler import RetryScheduler
from ragrelay.services.delivery.webhook import WebhookTransport
from ragrelay.services.events import OutboundEvent
from ragrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

LEG_SENT = "sent"
LEG_QUEUED = "queued"
LEG_RETRY_SCHEDULED = "retry_scheduled"
LEG_FAILED = "failed"

_ACCEPTED_LEGS = {LEG_SENT, LEG_QUEUED, LEG_RETRY_SCHEDULED}


@dataclass(frozen=True)
class PublishResult:
    mode: str
    # Outcome per transport leg, e.g. {"webhook": "retry_scheduled", "queue": "queued"}.
    legs: dict[str, str] = field(default_factory=dict)
    delivery_id: str | None = None
    error: str | None = None

    @property
    def accepted(self) -> bool:
        # Accepted once any leg delivered, queued, or durably parked the event.
        return any(outcome in _ACCEPTED_LEGS for outcome in self.legs.values())


class Publisher(ABC):
    """Strategy interface: one implementation per deployment transport mode."""

    mode: str

    @abstractmethod
    async def publish(self, event: OutboundEvent) -> PublishResult:
        raise NotImplementedError


async def _webhook_leg(
    webhook: WebhookTransport,
    scheduler: RetryScheduler,
    event: OutboundEvent,
    payload: dict[str, Any],
) -> tuple[str, str | None, str | None]:
    # Webhook failures are never surfaced: they become a durable retry record instead.
    try:
        await webhook.send(payload)
        return LEG_SENT, None, None
    except TransientDeliveryError as exc:
        logger.warning(
            "webhook_publish_failed event_id=%s tenant_id=%s action=%s error=%s",
            event.event_id,
            event.tenant_id,
            event.action,
            exc,
        )
        delivery_id = await scheduler.schedule(
            payload,
            tenant_id=event.tenant_id,
            delivery_type=event.delivery_type,
            error=str(exc),
        )
        return LEG_RETRY_SCHEDULED, delivery_id, str(exc)


async def _queue_leg(queue: QueueTransport, event: OutboundEvent, payload: dict[str, Any]) -> tuple[str, str | None]:
    try:
        await queue.send(payload)
        return LEG_QUEUED, None
    except TransientDeliveryError as exc:
        logger.error(
            "queue_publish_failed event_id=%s tenant_id=%s action=%s error=%s",
            event.event_id,
            event.tenant_id,
            event.action,
            exc,
        )
        return LEG_FAILED, str(exc)


class WebhookPublisher(Publisher):
    mode = "webhook_only"

    def __init__(self, *, webhook: WebhookTransport, scheduler: RetryScheduler) -> None:
        self._webhook = webhook
        self._scheduler = scheduler

    async def publish(self, event: OutboundEvent) -> PublishResult:
        outcome, delivery_id, error = await _webhook_leg(self._webhook, self._scheduler, event, event.to_wire())
        return PublishResult(mode=self.mode, legs={"webhook": outcome}, delivery_id=delivery_id, error=error)


class QueuePublisher(Publisher):
    # Durability is the broker's job in this mode; nothing is written to the retry store.
    mode = "queue_only"

    def __init__(self, *, queue: QueueTransport) -> None:
        self._queue = queue

    async def publish(self, event: OutboundEvent) -> PublishResult:
        outcome, error = await _queue_leg(self._queue, event, event.to_wire())
        return PublishResult(mode=self.mode, legs={"queue": outcome}, error=error)


class HybridPublisher(Publisher):
    """Sends on both transports concurrently; either may fail independently."""

    mode = "hybrid"

    def __init__(self, *, webhook: WebhookTransport, queue: QueueTransport, scheduler: RetryScheduler) -> None:
        self._webhook = webhook
        self._queue = queue
        self._scheduler = scheduler

    async def publish(self, event: OutboundEvent) -> PublishResult:
        payload = event.to_wire()
        webhook_result, queue_result = await asyncio.gather(
            _webhook_leg(self._webhook, self._scheduler, event, payload),
            _queue_leg(self._queue, event, payload),
            return_exceptions=True,
        )
        legs: dict[str, str] = {}
        errors: list[str] = []
        delivery_id: str | None = None
        if isinstance(webhook_result, BaseException):
            logger.error("hybrid_webhook_leg_crashed event_id=%s", event.event_id, exc_info=webhook_result)
            legs["webhook"] = LEG_FAILED
            errors.append(f"webhook: {webhook_result!r}")
        else:
            legs["webhook"], delivery_id, webhook_error = webhook_result
            if webhook_error:
                errors.append(f"webhook: {webhook_error}")
        if isinstance(queue_result, BaseException):
            logger.error("hybrid_queue_leg_crashed event_id=%s", event.event_id, exc_info=queue_result)
            legs["queue"] = LEG_FAILED
            errors.append(f"queue: {queue_result!r}")
        else:
            legs["queue"], queue_error = queue_result
            if queue_error:
                errors.append(f"queue: {queue_error}")
        return PublishResult(
            mode=self.mode,
            legs=legs,
            delivery_id=delivery_id,
            error="; ".join(errors) or None,
        )


def build_publisher(
    settings: Settings,
    *,
    webhook: WebhookTransport,
    queue: QueueTransport,
    scheduler: RetryScheduler,
) -> Publisher:
    # Transport choice is fixed at startup from configuration.
    if settings.publish_mode == "webhook_only":
        return WebhookPublisher(webhook=webhook, scheduler=scheduler)
    if settings.publish_mode == "queue_only":
        return QueuePublisher(queue=queue)
    if settings.publish_mode == "hybrid":
        return HybridPublisher(webhook=webhook, queue=queue, scheduler=scheduler)
    raise ValueError(f"Unsupported publish mode: {settings.publish_mode}")


RejectionHandler = Callable[[OutboundEvent, str], Awaitable[None]]


class PublishDispatcher:
    """Runs publishes as background tasks so request handlers return immediately.

    Unexpected publish faults are parked in the retry store; events that no
    transport accepted are handed to ``on_rejected``.
    """

    def __init__(
        self,
        *,
        publisher: Publisher,
        scheduler: RetryScheduler,
        on_rejected: RejectionHandler | None = None,
    ) -> None:
        self._publisher = publisher
        self._scheduler = scheduler
        self._on_rejected = on_rejected
        self._tasks: set[asyncio.Task] = set()

    @property
    def publisher(self) -> Publisher:
        return self._publisher

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, event: OutboundEvent) -> asyncio.Task:
        task = asyncio.create_task(self._run(event), name=f"publish:{event.event_id}")
        # Hold a reference until done so the task is not garbage collected mid-flight.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, event: OutboundEvent) -> PublishResult | None:
        try:
            result = await self._publisher.publish(event)
        except Exception as exc:  # noqa: BLE001 - route unexpected publish faults to the retry store.
            logger.exception("publish_dispatch_failed event_id=%s tenant_id=%s", event.event_id, event.tenant_id)
            await self._park(event, repr(exc))
            return None
        increment_counter(f"publish.{result.mode}.{'accepted' if result.accepted else 'rejected'}")
        if not result.accepted:
            await self._reject(event, result.error or "no transport accepted the event")
        return result

    async def _park(self, event: OutboundEvent, error: str) -> None:
        try:
            await self._scheduler.schedule(
                event.to_wire(),
                tenant_id=event.tenant_id,
                delivery_type=event.delivery_type,
                error=error,
            )
        except Exception:  # noqa: BLE001 - nowhere left to park it; fail the resource instead.
            logger.exception("publish_park_failed event_id=%s", event.event_id)
            await self._reject(event, error)

    async def _reject(self, event: OutboundEvent, reason: str) -> None:
        if self._on_rejected is None:
            return
        try:
            await self._on_rejected(event, reason)
        except Exception:  # noqa: BLE001 - rejection bookkeeping must not crash the dispatcher.
            logger.exception("publish_rejection_handler_failed event_id=%s", event.event_id)
