"""
Session events delivered by the agent through ``session.event`` notifications
and returned by ``session.getMessages``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from dateutil import parser as date_parser


class SessionEventType(Enum):
    ABORT = "abort"
    ASSISTANT_INTENT = "assistant.intent"
    ASSISTANT_MESSAGE = "assistant.message"
    ASSISTANT_MESSAGE_DELTA = "assistant.message_delta"
    ASSISTANT_REASONING = "assistant.reasoning"
    ASSISTANT_REASONING_DELTA = "assistant.reasoning_delta"
    ASSISTANT_TURN_END = "assistant.turn_end"
    ASSISTANT_TURN_START = "assistant.turn_start"
    ASSISTANT_USAGE = "assistant.usage"
    HOOK_END = "hook.end"
    HOOK_START = "hook.start"
    SESSION_COMPACTION_COMPLETE = "session.compaction_complete"
    SESSION_COMPACTION_START = "session.compaction_start"
    SESSION_ERROR = "session.error"
    SESSION_IDLE = "session.idle"
    SESSION_INFO = "session.info"
    SESSION_MODEL_CHANGE = "session.model_change"
    SESSION_RESUME = "session.resume"
    SESSION_START = "session.start"
    TOOL_EXECUTION_COMPLETE = "tool.execution_complete"
    TOOL_EXECUTION_PROGRESS = "tool.execution_progress"
    TOOL_EXECUTION_START = "tool.execution_start"
    USER_MESSAGE = "user.message"
    # Any event type newer than this SDK
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "SessionEventType":
        return cls.UNKNOWN


# wire key -> Data attribute
_DATA_KEYS = {
    "arguments": "arguments",
    "attachments": "attachments",
    "content": "content",
    "copilotVersion": "copilot_version",
    "deltaContent": "delta_content",
    "errorType": "error_type",
    "eventCount": "event_count",
    "inputTokens": "input_tokens",
    "intent": "intent",
    "message": "message",
    "messageId": "message_id",
    "model": "model",
    "outputTokens": "output_tokens",
    "parentToolCallId": "parent_tool_call_id",
    "producer": "producer",
    "reason": "reason",
    "reasoningId": "reasoning_id",
    "result": "result",
    "resumeTime": "resume_time",
    "selectedModel": "selected_model",
    "sessionId": "session_id",
    "stack": "stack",
    "startTime": "start_time",
    "success": "success",
    "toolCallId": "tool_call_id",
    "toolName": "tool_name",
    "toolRequests": "tool_requests",
    "turnId": "turn_id",
    "version": "version",
}
_WIRE_KEYS = {attr: key for key, attr in _DATA_KEYS.items()}


@dataclass
class Data:
    """
    Payload of a session event.

    Which attributes are populated depends on the event type; e.g.
    ``assistant.message_delta`` carries ``message_id`` and ``delta_content``,
    ``session.error`` carries ``error_type`` and ``message``. Keys this SDK
    does not model are preserved in ``extra``.
    """

    arguments: Any = None
    attachments: Optional[list[Any]] = None
    content: Optional[str] = None
    copilot_version: Optional[str] = None
    delta_content: Optional[str] = None
    error_type: Optional[str] = None
    event_count: Optional[int] = None
    input_tokens: Optional[int] = None
    intent: Optional[str] = None
    message: Optional[str] = None
    message_id: Optional[str] = None
    model: Optional[str] = None
    output_tokens: Optional[int] = None
    parent_tool_call_id: Optional[str] = None
    producer: Optional[str] = None
    reason: Optional[str] = None
    reasoning_id: Optional[str] = None
    result: Any = None
    resume_time: Optional[str] = None
    selected_model: Optional[str] = None
    session_id: Optional[str] = None
    stack: Optional[str] = None
    start_time: Optional[str] = None
    success: Optional[bool] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_requests: Optional[list[Any]] = None
    turn_id: Optional[str] = None
    version: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(obj: Any) -> "Data":
        assert isinstance(obj, dict)
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in obj.items():
            attr = _DATA_KEYS.get(key)
            if attr is None:
                extra[key] = value
            else:
                known[attr] = value
        return Data(**known, extra=extra)

    def to_dict(self) -> dict:
        result: dict = dict(self.extra)
        for attr, key in _WIRE_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                result[key] = value
        return result


@dataclass
class SessionEvent:
    id: str
    timestamp: datetime
    type: SessionEventType
    data: Data
    parent_id: Optional[str] = None
    ephemeral: bool = False
    # The type string as sent on the wire; differs from type.value for UNKNOWN
    raw_type: Optional[str] = None

    @staticmethod
    def from_dict(obj: Any) -> "SessionEvent":
        assert isinstance(obj, dict)
        raw_type = obj.get("type")
        if not isinstance(raw_type, str):
            raise ValueError(f"Session event without a type: {obj!r}")

        timestamp = obj.get("timestamp")
        if timestamp:
            parsed = date_parser.isoparse(timestamp)
        else:
            parsed = datetime.now(timezone.utc)

        return SessionEvent(
            id=str(obj.get("id", "")),
            timestamp=parsed,
            type=SessionEventType(raw_type),
            data=Data.from_dict(obj.get("data") or {}),
            parent_id=obj.get("parentId"),
            ephemeral=bool(obj.get("ephemeral", False)),
            raw_type=raw_type,
        )

    def to_dict(self) -> dict:
        result: dict = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.raw_type or self.type.value,
            "data": self.data.to_dict(),
        }
        if self.parent_id is not None:
            result["parentId"] = self.parent_id
        if self.ephemeral:
            result["ephemeral"] = True
        return result


def session_event_from_dict(s: Any) -> SessionEvent:
    return SessionEvent.from_dict(s)


def session_event_to_dict(x: SessionEvent) -> Any:
    return x.to_dict()
