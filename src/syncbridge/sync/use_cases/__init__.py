"""Use cases layer - sync orchestration.

- SyncOrchestrator: incremental propagation and full reconciliation per entity class
- QueueConsumer: applies queued events, acknowledging or dead-lettering each
- StatusReporter: per-class status and process health
"""

from .orchestrator import SyncOrchestrator
from .queue_consumer import QueueConsumer
from .status_reporter import StatusReporter

__all__ = [
    "SyncOrchestrator",
    "QueueConsumer",
    "StatusReporter",
]
