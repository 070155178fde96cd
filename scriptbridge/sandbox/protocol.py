"""Message protocol between the execution host and the isolated script context.

Every message is one JSON object per line, tagged by ``type``:

- context -> host: ``call``, ``progress``, ``session-update``, ``done``, ``fatal``
- host -> context: ``start`` (first line only), ``result``, ``error``

Each ``call`` id receives exactly one ``result`` or ``error`` with the same id.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from scriptbridge.utils.exceptions import ErrorInfo

DEFAULT_FAILURE_FIX = "Review the script for errors and retry."


class CallMessage(BaseModel):
    type: Literal["call"] = "call"
    id: int
    namespace: str
    method: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}.{self.method}"


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    id: int
    value: Any = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    id: int
    error: ErrorInfo


class ProgressMessage(BaseModel):
    type: Literal["progress"] = "progress"
    text: str


class SessionUpdateMessage(BaseModel):
    type: Literal["session-update"] = "session-update"
    key: str
    value: Any = None


class DoneMessage(BaseModel):
    type: Literal["done"] = "done"
    value: Any = None


class FatalMessage(BaseModel):
    type: Literal["fatal"] = "fatal"
    error: ErrorInfo


class StartMessage(BaseModel):
    """Bootstrap payload: the script plus everything the context is seeded with."""

    type: Literal["start"] = "start"
    script: str
    session: dict[str, Any] = Field(default_factory=dict)
    methods: list[str] = Field(default_factory=list)
    allowed_modules: list[str] = Field(default_factory=list)
    memory_limit_mb: int = 0


WorkerMessage = Annotated[
    Union[CallMessage, ProgressMessage, SessionUpdateMessage, DoneMessage, FatalMessage],
    Field(discriminator="type"),
]
HostMessage = Union[ResultMessage, ErrorMessage]

_WORKER_MESSAGE_ADAPTER: TypeAdapter[WorkerMessage] = TypeAdapter(WorkerMessage)
_JSON_VALUE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Any)


def parse_worker_message(line: str | bytes) -> WorkerMessage:
    """Parse one line from the context. Raises ``pydantic.ValidationError`` on malformed input."""
    return _WORKER_MESSAGE_ADAPTER.validate_json(line)


def encode_message(message: BaseModel) -> bytes:
    """Encode a message as a single newline-terminated JSON line."""
    return message.model_dump_json(exclude_none=True).encode("utf-8") + b"\n"


def to_json_value(value: Any) -> Any:
    """Convert a host value (models, dataclasses, datetimes, ...) to plain JSON data."""
    return _JSON_VALUE_ADAPTER.dump_python(value, mode="json")


class SandboxResult(BaseModel):
    """Terminal outcome of one invocation.

    ``ok=True`` carries ``value``; ``ok=False`` carries ``error``. Progress text
    collected up to settlement is kept in both cases.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    value: Any = None
    error: ErrorInfo | None = None
    progress_messages: list[str] = Field(default_factory=list)

    @classmethod
    def success(cls, value: Any, progress_messages: list[str]) -> "SandboxResult":
        return cls(ok=True, value=value, progress_messages=list(progress_messages))

    @classmethod
    def failure(cls, error: ErrorInfo, progress_messages: list[str]) -> "SandboxResult":
        return cls(ok=False, error=error, progress_messages=list(progress_messages))

    @property
    def is_error(self) -> bool:
        return not self.ok

    def to_tool_payload(self) -> dict[str, Any]:
        """Shape the result the way a tool-call transport reports it."""
        if self.ok:
            return {"ok": True, "value": self.value, "progress": list(self.progress_messages)}
        error = self.error or ErrorInfo(message="Unknown error")
        return {
            "ok": False,
            "error": error.model_dump(exclude_none=True),
            "progress": list(self.progress_messages),
            "fix": error.fix or DEFAULT_FAILURE_FIX,
        }
