"""Backend-agnostic job queue contract."""
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .types import AddJobOptions, JobPayload, QueueJobType, QueueStatus

JobHandler = Callable[[JobPayload], None]


class JobQueue(ABC):
    """
    Typed jobs in, one handler per type out.

    Both backends guarantee a job never starts before its scheduled time, at
    most the configured number of handlers run at once per process, and
    get_status() has the same shape. Delivery is at-least-once; handlers must
    be idempotent.
    """

    backend_name = "abstract"

    def __init__(self):
        self._handlers: dict[QueueJobType, JobHandler] = {}

    @abstractmethod
    def add(self, job_type: QueueJobType, payload: JobPayload, options: Optional[AddJobOptions] = None) -> str:
        """Enqueue a job and return its envelope id."""

    def process(self, job_type: QueueJobType, handler: JobHandler) -> None:
        job_type = QueueJobType(job_type)
        if job_type in self._handlers:
            raise ValueError(f"A handler is already registered for {job_type.value}")
        self._handlers[job_type] = handler

    def handler_for(self, job_type: QueueJobType) -> Optional[JobHandler]:
        return self._handlers.get(QueueJobType(job_type))

    def start(self) -> None:
        """Begin dispatching. Backends that dispatch out of process ignore this."""

    @abstractmethod
    def get_status(self) -> QueueStatus:
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Drop a queued envelope. False if unknown or currently active."""
