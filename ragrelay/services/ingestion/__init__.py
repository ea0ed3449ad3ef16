from ragrelay.services.ingestion.callbacks import CallbackService, VectorBatchResult
from ragrelay.services.ingestion.intake import IntakeService
from ragrelay.services.ingestion.lifecycle import IngestionLifecycle, Transition

__all__ = [
    "CallbackService",
    "IngestionLifecycle",
    "IntakeService",
    "Transition",
    "VectorBatchResult",
]
