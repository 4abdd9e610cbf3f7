"""Job queue types: job kinds, tagged payloads, enqueue options, status shape."""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional, Union

from ..retry import compute_delay

MAX_BACKOFF_S = 60.0


class QueueJobType(str, Enum):
    METADATA_SYNC = "metadata_sync"
    DELETE = "delete"
    TRASH = "trash"


@dataclass(frozen=True)
class SyncJobPayload:
    job_id: int
    account_id: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class BulkActionPayload:
    job_id: int
    account_id: int
    message_ids: Optional[list] = None
    query: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["message_ids"] is not None:
            data["message_ids"] = list(data["message_ids"])
        return data


JobPayload = Union[SyncJobPayload, BulkActionPayload]

_PAYLOAD_TYPES = {
    QueueJobType.METADATA_SYNC: SyncJobPayload,
    QueueJobType.DELETE: BulkActionPayload,
    QueueJobType.TRASH: BulkActionPayload,
}


def payload_type_for(job_type: QueueJobType) -> type:
    try:
        return _PAYLOAD_TYPES[QueueJobType(job_type)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown queue job type: {job_type!r}") from None


def payload_from_dict(job_type, data: dict) -> JobPayload:
    """Rebuild the payload variant for a job type from its JSON form."""
    cls = payload_type_for(job_type)
    if cls is SyncJobPayload:
        return SyncJobPayload(job_id=int(data["job_id"]), account_id=int(data["account_id"]))
    ids = data.get("message_ids")
    return BulkActionPayload(
        job_id=int(data["job_id"]),
        account_id=int(data["account_id"]),
        message_ids=list(ids) if ids is not None else None,
        query=data.get("query"),
    )


def check_payload(job_type: QueueJobType, payload: JobPayload) -> None:
    expected = payload_type_for(job_type)
    if not isinstance(payload, expected):
        raise TypeError(f"{job_type.value} jobs take {expected.__name__}, got {type(payload).__name__}")


@dataclass(frozen=True)
class Backoff:
    type: str = "exponential"  # exponential | fixed
    delay_s: float = 1.0

    def to_dict(self) -> dict:
        return {"type": self.type, "delay_s": self.delay_s}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Backoff":
        if not data:
            return cls()
        return cls(type=data.get("type", "exponential"), delay_s=float(data.get("delay_s", 1.0)))


@dataclass(frozen=True)
class AddJobOptions:
    """
    delay_s: earliest start, relative to now.
    priority: lower value runs first; None means the backend default.
    attempts: total attempts including the first (1 = never retried).
    """

    delay_s: float = 0.0
    priority: Optional[int] = None
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)


def backoff_delay(backoff: Backoff, attempts_made: int) -> float:
    """Seconds before the next attempt after `attempts_made` failed ones."""
    if backoff.type == "fixed":
        return backoff.delay_s
    return compute_delay(max(0, attempts_made - 1), backoff.delay_s, MAX_BACKOFF_S)


@dataclass(frozen=True)
class QueueStatus:
    backend: str
    waiting: int
    active: int
    completed: int
    failed: int

    def to_dict(self) -> dict:
        return asdict(self)
