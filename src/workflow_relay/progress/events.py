"""
Progress event data model.

Defines the callback body the automation engine posts, the frames pushed
to subscribers, and the acknowledgement returned to the sender.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    """Frame types seen by stream subscribers."""
    CONNECTION = "connection"     # Handshake, sent once on open
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_TYPES = frozenset({EventType.COMPLETE, EventType.ERROR})


class InvalidRequest(ValueError):
    """A bind or ingest call is missing a required identifier."""


def _id_as_text(value: Any) -> Any:
    # Engines may send numeric ids
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class ProgressUpdate(BaseModel):
    """
    Progress callback posted by the automation engine.

    Only the identifiers are typed. Display fields are relayed exactly as
    sent, so a numeric message or a "50%" progress string is not rejected.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    execution_id: Optional[str] = Field(default=None, alias="executionId")
    step: Optional[Any] = None
    message: Optional[Any] = None
    new_message: Optional[Any] = Field(default=None, alias="newMessage")
    status: Optional[Any] = None
    progress: Optional[Any] = None
    error_body: Optional[Any] = None

    @field_validator("workflow_id", "execution_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _id_as_text(value)


class RegisterExecutionRequest(BaseModel):
    """Binds an engine execution id to a client workflow id."""
    model_config = ConfigDict(populate_by_name=True)

    execution_id: Optional[str] = Field(default=None, alias="executionId")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")

    @field_validator("workflow_id", "execution_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _id_as_text(value)


class IngestResult(BaseModel):
    """Acknowledgement for one ingested callback."""
    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    delivered: bool = False
    active_connections: int = Field(default=0, alias="activeConnections")
    timestamp: str = Field(default_factory=lambda: now_iso())
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")


def now_iso() -> str:
    return datetime.now().isoformat()


def classify(status: Any) -> EventType:
    """Map a callback status onto a frame type."""
    if status == "completed":
        return EventType.COMPLETE
    if status == "error":
        return EventType.ERROR
    return EventType.PROGRESS


def build_frame(
    event_type: EventType,
    workflow_id: str,
    update: Optional[ProgressUpdate] = None,
    **fields: Any,
) -> dict[str, Any]:
    """
    Build the JSON frame pushed to a subscriber.

    Sender fields (including unknown extras) are forwarded as-is, minus the
    execution id, which only matters for routing.
    """
    frame: dict[str, Any] = {"type": event_type.value}
    if update is not None:
        frame.update(update.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"execution_id"},
        ))
    frame.update(fields)
    frame["type"] = event_type.value
    frame["workflowId"] = workflow_id
    frame["timestamp"] = now_iso()
    return frame
