"""
Client-side progress projection.

Folds the relay's frame stream into the visible progress log. The reducer
is pure: every call returns a new ProgressView and never mutates its input.

Row rules:
- At most one row is ever running.
- A progress frame completes the running row, using the incoming frame's
  message as the closing text, then appends a new running row.
- A complete frame closes the running row in place; it never appends.
- An error frame rewrites the last row in place.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict

from .events import EventType

RUNNING_ICON = "⚙️"
COMPLETED_ICON = "✅"
ERROR_ICON = "❌"

DEFAULT_STEP = "Step"
PLACEHOLDER_STEP = "Starting"


class EntryStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class Banner(str, Enum):
    """Terminal banner shown above the log."""
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"


BANNER_TITLES = {
    Banner.PROCESSING: "🔄 Processing Your Request",
    Banner.SUCCESS: "🎉 Request Completed Successfully!",
    Banner.FAILURE: "Request Failed",
}


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: str
    message: str = ""
    status: EntryStatus = EntryStatus.RUNNING
    icon: str = RUNNING_ICON


class ProgressView(BaseModel):
    """Everything the progress panel renders."""
    model_config = ConfigDict(frozen=True)

    entries: tuple[LogEntry, ...]
    percentage: Union[int, float] = 0
    banner: Banner = Banner.PROCESSING
    dismissible: bool = False
    stream_open: bool = False

    @property
    def title(self) -> str:
        return BANNER_TITLES[self.banner]

    @property
    def running(self) -> Optional[LogEntry]:
        for entry in self.entries:
            if entry.status == EntryStatus.RUNNING:
                return entry
        return None

    @property
    def is_terminal(self) -> bool:
        return self.banner != Banner.PROCESSING


def initial_view() -> ProgressView:
    """A fresh panel: one running placeholder row, empty bar."""
    return ProgressView(entries=(LogEntry(step=PLACEHOLDER_STEP),))


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _percentage(value: Any, current: Union[int, float]) -> Union[int, float]:
    """Numbers pass through; "50" and "50%" are parsed; anything else is ignored."""
    if isinstance(value, bool):
        return current
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            parsed = float(value.strip().rstrip("%"))
        except ValueError:
            return current
        return int(parsed) if parsed.is_integer() else parsed
    return current


def _close_running(entries: tuple[LogEntry, ...], message: str) -> tuple[LogEntry, ...]:
    """Complete the last row if it is running."""
    if not entries or entries[-1].status != EntryStatus.RUNNING:
        return entries
    closed = entries[-1].model_copy(update={
        "status": EntryStatus.COMPLETED,
        "icon": COMPLETED_ICON,
        "message": message,
    })
    return entries[:-1] + (closed,)


def _fail_last(entries: tuple[LogEntry, ...], message: str) -> tuple[LogEntry, ...]:
    if not entries:
        return (LogEntry(step="Error", message=message, status=EntryStatus.ERROR, icon=ERROR_ICON),)
    failed = entries[-1].model_copy(update={
        "status": EntryStatus.ERROR,
        "icon": ERROR_ICON,
        "message": message,
    })
    return entries[:-1] + (failed,)


def apply_event(view: ProgressView, frame: dict[str, Any]) -> ProgressView:
    """Reduce one stream frame into the view."""
    frame_type = frame.get("type")
    message = _text(frame.get("message"))
    updates: dict[str, Any] = {}

    if frame.get("progress") is not None:
        # Applied as-is; a smaller value moves the bar backwards.
        updates["percentage"] = _percentage(frame["progress"], view.percentage)

    if frame_type == EventType.CONNECTION.value:
        updates["stream_open"] = True

    elif frame_type == EventType.COMPLETE.value:
        updates.update(
            entries=_close_running(view.entries, message),
            banner=Banner.SUCCESS,
            dismissible=True,
            stream_open=False,
        )

    elif frame_type == EventType.ERROR.value:
        updates.update(
            entries=_fail_last(view.entries, message or "Request failed"),
            banner=Banner.FAILURE,
            dismissible=True,
            stream_open=False,
        )

    else:
        new_entry = LogEntry(
            step=_text(frame.get("step")) or DEFAULT_STEP,
            message=_text(frame.get("newMessage")) or message,
        )
        updates["entries"] = _close_running(view.entries, message) + (new_entry,)

    return view.model_copy(update=updates)


def connection_error(view: ProgressView, message: str) -> ProgressView:
    """Apply a client-local failure (timeout, unreachable relay, trigger error)."""
    return apply_event(view, {"type": EventType.ERROR.value, "message": message})


def dismiss(view: ProgressView) -> ProgressView:
    """Reset the panel for the next submission."""
    return initial_view()
