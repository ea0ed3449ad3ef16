from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.core.errors import InvalidTransitionError
from ragrelay.domain.models import ChatMessage, Document
from ragrelay.domain.states import AWAITING_ARTIFACTS, FAILED, READY, can_transition
from ragrelay.persistence.guards import tenant_predicate
from ragrelay.services.broadcast import TOPIC_CHAT, TOPIC_KNOWLEDGE, BroadcastHub
from ragrelay.services.events import RESOURCE_CHAT, RESOURCE_DOCUMENT


logger = logging.getLogger(__name__)

Resource = Document | ChatMessage


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resource_type_of(resource: Resource) -> str:
    return RESOURCE_CHAT if isinstance(resource, ChatMessage) else RESOURCE_DOCUMENT


@dataclass(frozen=True)
class Transition:
    tenant_id: str
    resource_type: str
    resource_id: str
    previous: str
    status: str
    reason: str | None = None
    # Extra fields merged into the broadcast event (reply text, counts, conversation id).
    details: dict[str, Any] = field(default_factory=dict)

    def to_event(self) -> dict[str, Any]:
        timestamp = _utc_now().isoformat()
        if self.resource_type == RESOURCE_CHAT:
            event_type = "chat-response" if self.status == READY else "chat-status"
            event = {
                "type": event_type,
                "message_id": self.resource_id,
                "status": self.status,
                "previous_status": self.previous,
                "timestamp": timestamp,
            }
        else:
            event = {
                "type": "document-status",
                "document_id": self.resource_id,
                "status": self.status,
                "previous_status": self.previous,
                "timestamp": timestamp,
            }
        if self.reason:
            event["error"] = self.reason
        event.update(self.details)
        return event

    @property
    def topic(self) -> str:
        return TOPIC_CHAT if self.resource_type == RESOURCE_CHAT else TOPIC_KNOWLEDGE


class IngestionLifecycle:
    """Owns resource status changes and announces each one to the tenant's streams."""

    def __init__(self, *, hub: BroadcastHub, session_factory: Callable[[], AsyncSession]) -> None:
        self._hub = hub
        self._session_factory = session_factory

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    def apply(
        self,
        resource: Resource,
        target: str,
        *,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Transition | None:
        """Move ``resource`` to ``target`` or raise InvalidTransitionError.

        Re-applying the current status is a no-op and returns None.
        """
        current = resource.status
        if current == target:
            return None
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot move {resource_type_of(resource)} from {current} to {target}"
            )
        resource.status = target
        resource.failure_reason = reason if target == FAILED else None
        merged = dict(details or {})
        if isinstance(resource, ChatMessage):
            merged.setdefault("conversation_id", resource.conversation_id)
        return Transition(
            tenant_id=resource.tenant_id,
            resource_type=resource_type_of(resource),
            resource_id=resource.id,
            previous=current,
            status=target,
            reason=reason,
            details=merged,
        )

    def advance(
        self,
        resource: Resource,
        target: str,
        *,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Transition | None:
        # Callback path: late or replayed callbacks never regress a resource, they just do nothing.
        if resource.status != target and not can_transition(resource.status, target):
            logger.info(
                "lifecycle_transition_ignored resource_id=%s current=%s target=%s",
                resource.id,
                resource.status,
                target,
            )
            return None
        return self.apply(resource, target, reason=reason, details=details)

    async def notify(self, transitions: Iterable[Transition | None]) -> None:
        # Call after commit so streamed state never runs ahead of the database.
        for transition in transitions:
            if transition is None:
                continue
            logger.info(
                "lifecycle_transition tenant_id=%s resource_type=%s resource_id=%s %s->%s",
                transition.tenant_id,
                transition.resource_type,
                transition.resource_id,
                transition.previous,
                transition.status,
            )
            await self._hub.broadcast(transition.tenant_id, transition.to_event(), topic=transition.topic)

    async def fail_resource(
        self,
        *,
        tenant_id: str,
        resource_type: str,
        resource_id: str,
        reason: str,
    ) -> Transition | None:
        """Mark a resource failed if it is still waiting on the external service."""
        async with self._session_factory() as session:
            resource = await load_resource(
                session, tenant_id=tenant_id, resource_type=resource_type, resource_id=resource_id
            )
            if resource is None:
                logger.warning(
                    "lifecycle_fail_unknown_resource tenant_id=%s resource_type=%s resource_id=%s",
                    tenant_id,
                    resource_type,
                    resource_id,
                )
                return None
            if resource.status not in AWAITING_ARTIFACTS:
                return None
            transition = self.apply(resource, FAILED, reason=reason)
            await session.commit()
        await self.notify([transition])
        return transition


async def load_resource(
    session: AsyncSession, *, tenant_id: str, resource_type: str, resource_id: str
) -> Resource | None:
    model = ChatMessage if resource_type == RESOURCE_CHAT else Document
    result = await session.execute(
        select(model).where(model.id == resource_id, tenant_predicate(model, tenant_id))
    )
    return result.scalar_one_or_none()
