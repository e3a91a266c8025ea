"""Domain events for the compression queue.

Events are the observer interface between the job queue and whatever renders
it (CLI, GUI, tests). They flow through the EventBus, which serializes
delivery, so subscribers never see two events at once.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field
from .models import CompressionJob


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class JobEvent(Event):
    """Base class for events related to a specific compression job."""

    job: CompressionJob


class JobAdded(JobEvent):
    """Emitted when a file is accepted into the job list."""

    pass


class JobMetadataUpdated(JobEvent):
    """Emitted when the background probe fills in a job's video info."""

    pass


class JobStarted(JobEvent):
    """Emitted when a job begins compression."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted as the encoder reports progress (already throttled)."""

    progress: float


class JobCompleted(JobEvent):
    """Emitted when a job successfully completes.

    `size_increased` flags outputs larger than their source; the job is still
    considered completed.
    """

    size_increased: bool = False


class JobFailed(JobEvent):
    """Emitted when a job ends in FAILED."""

    error_message: str
    error_kind: str
    retryable: bool


class JobCancelled(JobEvent):
    """Emitted when a running job is reset to PENDING by cancellation."""

    pass


class JobRemoved(Event):
    """Emitted after a job is removed from the job list."""

    job_id: str
    path: Path


class BatchErrorEntry(BaseModel):
    """One failure recorded while the queue was running."""

    job_id: str
    name: str
    error_kind: str
    error_message: str
    retryable: bool


class QueueDrained(Event):
    """Emitted once when the queue runs dry.

    Carries every failure recorded since the batch errors were last cleared;
    cancellations are never part of this list.
    """

    errors: List[BatchErrorEntry] = Field(default_factory=list)
    completed: int = 0
    failed: int = 0


class ActionMessage(Event):
    """Event for user action feedback."""

    message: str
    job_id: Optional[str] = None
