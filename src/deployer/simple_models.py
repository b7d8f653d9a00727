"""Record models for instances and queued tasks."""

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

REDACTED_FIELDS = ("bot_token", "api_key", "gateway_token")


def utcnow() -> str:
    """ISO-8601 UTC timestamp used for all record timestamps."""
    return datetime.now(UTC).isoformat()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class InstanceStatus(str, Enum):
    """Lifecycle status of a deployed instance."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    UPDATING = "updating"
    ERROR = "error"


class TaskStatus(str, Enum):
    """Status of a queued lifecycle task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    """Lifecycle operations that can be queued."""

    INSTANCE_CREATE = "instance_create"
    INSTANCE_START = "instance_start"
    INSTANCE_STOP = "instance_stop"
    INSTANCE_DELETE = "instance_delete"
    INSTANCE_UPDATE = "instance_update"
    NGINX_SYNC = "nginx_sync"


@dataclass
class Instance:
    """A user-owned deployed unit: one container, one port, one config bundle.

    ``container_id`` and ``port`` are set together; a running instance has both.
    """

    user_id: str
    name: str
    channel: str = ""
    bot_token: str | None = None
    ai_provider: str | None = None
    api_key: str | None = None
    region: str | None = None
    instance_type: str | None = None
    status: InstanceStatus = InstanceStatus.CREATING
    container_id: str | None = None
    port: int | None = None
    gateway_token: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Instance":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in record.items() if k in known}
        if "status" in data:
            data["status"] = InstanceStatus(data["status"])
        return cls(**data)

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        return record

    def public_dict(self) -> dict[str, Any]:
        """Externally returned view: camelCase keys with secrets nulled out."""
        record = self.to_record()
        for key in REDACTED_FIELDS:
            record[key] = None
        return {_camel(k): v for k, v in record.items()}


@dataclass
class Task:
    """A queued unit of lifecycle work.

    Transitions ``pending -> processing -> completed|failed``; only the
    task queue processor mutates it after insertion.
    """

    type: TaskType
    user_id: str
    params: dict[str, Any] = field(default_factory=dict)
    instance_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    trace_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Task":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in record.items() if k in known}
        data["type"] = TaskType(data["type"])
        if "status" in data:
            data["status"] = TaskStatus(data["status"])
        return cls(**data)

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["type"] = self.type.value
        record["status"] = self.status.value
        return record

    def public_dict(self) -> dict[str, Any]:
        """Task view returned to API callers (params may carry secrets)."""
        record = self.to_record()
        params = dict(record.pop("params") or {})
        for key in ("bot_token", "api_key", "botToken", "apiKey"):
            if key in params:
                params[key] = None
        record["params"] = params
        return {_camel(k): v for k, v in record.items()}
