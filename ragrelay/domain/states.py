from __future__ import annotations


# Resource lifecycle; names stay within the fixed-width status column.
UPLOADING = "uploading"
PROCESSING = "processing"
MARKDOWN_RECEIVED = "markdown_received"
VECTORS_RECEIVED = "vectors_received"
READY = "ready"
FAILED = "failed"
VECTORS_DELETED = "vectors_deleted"

RESOURCE_STATES = (
    UPLOADING,
    PROCESSING,
    MARKDOWN_RECEIVED,
    VECTORS_RECEIVED,
    READY,
    FAILED,
    VECTORS_DELETED,
)

# States still waiting on the external processing service.
AWAITING_ARTIFACTS = frozenset({UPLOADING, PROCESSING, MARKDOWN_RECEIVED, VECTORS_RECEIVED})

_TRANSITIONS: dict[str, frozenset[str]] = {
    UPLOADING: frozenset({PROCESSING, FAILED}),
    PROCESSING: frozenset({MARKDOWN_RECEIVED, VECTORS_RECEIVED, READY, FAILED}),
    MARKDOWN_RECEIVED: frozenset({VECTORS_RECEIVED, READY, FAILED}),
    VECTORS_RECEIVED: frozenset({MARKDOWN_RECEIVED, READY, FAILED}),
    # Explicit reprocessing re-opens a finished resource.
    READY: frozenset({VECTORS_DELETED, PROCESSING}),
    # Late artifacts may still land after retries were exhausted.
    FAILED: frozenset({PROCESSING, MARKDOWN_RECEIVED, VECTORS_RECEIVED, READY}),
    VECTORS_DELETED: frozenset({PROCESSING, VECTORS_RECEIVED}),
}

# Delivery record states.
DELIVERY_PENDING = "pending"
DELIVERY_RETRYING = "retrying"
DELIVERY_SUCCEEDED = "succeeded"
DELIVERY_FAILED = "failed"

DELIVERY_DUE_STATES = (DELIVERY_PENDING, DELIVERY_RETRYING)
DELIVERY_TERMINAL_STATES = frozenset({DELIVERY_SUCCEEDED, DELIVERY_FAILED})


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def allowed_targets(current: str) -> frozenset[str]:
    return _TRANSITIONS.get(current, frozenset())
