from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

import httpx
from arq.connections import ArqRedis
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.core.config import Settings, get_settings
from ragrelay.core.errors import TerminalDeliveryError
from ragrelay.services.broadcast import BroadcastHub
from ragrelay.services.broadcast_relay import BroadcastListener, RelayedHub
from ragrelay.services.delivery.publisher import Publisher, PublishDispatcher, build_publisher
from ragrelay.services.delivery.queue import QueueTransport
from ragrelay.services.delivery.scheduler import Clock, RetryScheduler
from ragrelay.services.delivery.webhook import WebhookTransport
from ragrelay.services.events import OutboundEvent
from ragrelay.services.ingestion.callbacks import CallbackService
from ragrelay.services.ingestion.intake import IntakeService
from ragrelay.services.ingestion.lifecycle import IngestionLifecycle
from ragrelay.services.search import VectorIndex, VectorSearchService
from ragrelay.services.tokens import TokenAuthority


logger = logging.getLogger(__name__)


@dataclass
class RelayRuntime:
    """Process-wide service graph injected into handlers and workers."""

    settings: Settings
    hub: BroadcastHub
    tokens: TokenAuthority
    lifecycle: IngestionLifecycle
    webhook: WebhookTransport
    queue: QueueTransport
    scheduler: RetryScheduler
    publisher: Publisher
    dispatcher: PublishDispatcher
    intake: IntakeService
    callbacks: CallbackService
    search: VectorSearchService
    # Replays worker-side broadcasts into this process; None in workers and when disabled.
    listener: BroadcastListener | None = None

    async def start(self) -> None:
        if self.settings.retry_scheduler_enabled:
            self.scheduler.start()
            logger.info("retry_scheduler_started interval_s=%s", self.settings.retry_interval_s)
        if self.listener is not None:
            self.listener.start()

    async def stop(self) -> None:
        # Let in-flight publishes finish so none are lost on a clean shutdown.
        await self.dispatcher.drain()
        await self.scheduler.stop()
        if self.listener is not None:
            await self.listener.stop()
        await self.hub.close_all()
        await self.queue.close()


def build_runtime(
    *,
    session_factory: Callable[[], AsyncSession],
    settings: Settings | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
    queue_pool: ArqRedis | None = None,
    clock: Clock | None = None,
    index: VectorIndex | None = None,
    hub: BroadcastHub | None = None,
) -> RelayRuntime:
    settings = settings or get_settings()
    hub = hub or BroadcastHub(heartbeat_s=settings.sse_heartbeat_s)
    listener = None
    if settings.broadcast_relay_enabled and not isinstance(hub, RelayedHub):
        listener = BroadcastListener.from_settings(hub, settings)
    tokens = TokenAuthority()
    lifecycle = IngestionLifecycle(hub=hub, session_factory=session_factory)
    webhook = WebhookTransport.from_settings(settings, transport=webhook_transport)
    queue = QueueTransport.from_settings(settings, pool=queue_pool)

    async def _on_exhausted(payload: dict[str, Any], error: TerminalDeliveryError) -> None:
        resource_id = payload.get("resource_id")
        tenant_id = payload.get("tenant_id")
        if not resource_id or not tenant_id:
            return
        await lifecycle.fail_resource(
            tenant_id=str(tenant_id),
            resource_type=str(payload.get("resource_type") or ""),
            resource_id=str(resource_id),
            reason=error.message,
        )

    async def _on_rejected(event: OutboundEvent, reason: str) -> None:
        await lifecycle.fail_resource(
            tenant_id=event.tenant_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            reason=f"publish rejected: {reason}",
        )

    scheduler = RetryScheduler(
        session_factory=session_factory,
        transport=webhook,
        tokens=tokens,
        settings=settings,
        clock=clock,
        on_exhausted=_on_exhausted,
    )
    publisher = build_publisher(settings, webhook=webhook, queue=queue, scheduler=scheduler)
    dispatcher = PublishDispatcher(publisher=publisher, scheduler=scheduler, on_rejected=_on_rejected)
    return RelayRuntime(
        settings=settings,
        hub=hub,
        tokens=tokens,
        lifecycle=lifecycle,
        webhook=webhook,
        queue=queue,
        scheduler=scheduler,
        publisher=publisher,
        dispatcher=dispatcher,
        intake=IntakeService(settings=settings, tokens=tokens, lifecycle=lifecycle, dispatcher=dispatcher),
        callbacks=CallbackService(tokens=tokens, lifecycle=lifecycle, settings=settings),
        search=VectorSearchService(
            tokens=tokens,
            settings=settings,
            session_factory=session_factory,
            index=index,
        ),
        listener=listener,
    )
