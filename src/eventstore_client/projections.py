"""Projection operations.

Projections are server-side queries over the event log. They are created,
updated, switched on and off and deleted with unary calls. Their state and
result are JSON values the caller may decode into a type of its choosing;
statistics arrive as a stream with one message per projection.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from .errors import AlreadyExistsError, DecodeError, EventStoreError, NotFoundError
from .events import _Discarded
from .protocol.messages import MessageKind, RawMessage, Request, RpcError
from .streaming import StreamingBridge
from .translate import DiscardedTranslator, ResponseTranslator
from .usecase import UnaryStream, UnaryUnary

PROJECTIONS_SERVICE = "event_store.client.projections.Projections"

T = TypeVar("T")


class ProjectionMode(str, Enum):
    """Which projections a listing covers."""

    ALL = "all"
    CONTINUOUS = "continuous"
    ONE_TIME = "one_time"
    TRANSIENT = "transient"


class ProjectionStatus(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    FAULTED = "Faulted"
    INITIAL = "Initial"
    WRITING = "Writing"
    COMPLETED = "Completed"
    SUSPENDED = "Suspended"
    LOAD_STATE_REQUESTED = "LoadStateRequested"
    STATE_LOADED = "StateLoaded"
    SUBSCRIBED = "Subscribed"
    FAULTED_STOPPING = "FaultedStopping"
    STOPPING = "Stopping"
    COMPLETING_PHASE = "CompletingPhase"
    PHASE_COMPLETED = "PhaseCompleted"
    ABORTED = "Aborted"
    FAULTED_ENABLED = "Faulted (Enabled)"


class ProjectionDetail(BaseModel):
    """Statistics for one projection."""

    model_config = ConfigDict(frozen=True)

    name: str
    effective_name: str = ""
    mode: str = ""
    status: str = ""
    state_reason: str = ""
    version: int = 0
    epoch: int = 0
    position: str = ""
    progress: float = 0.0
    last_checkpoint: str = ""
    checkpoint_status: str = ""
    core_processing_time: int = 0
    events_processed_after_restart: int = 0
    buffered_events: int = 0
    writes_in_progress: int = 0
    reads_in_progress: int = 0
    partitions_cached: int = 0
    write_pending_events_before_checkpoint: int = 0
    write_pending_events_after_checkpoint: int = 0

    @property
    def statuses(self) -> set[ProjectionStatus]:
        """Parsed status. The server joins several with "/", e.g. "Stopped/Faulted"."""
        names = self.status.replace(" results", "").split("/")
        return {ProjectionStatus(n) for n in names if n in _STATUS_VALUES}

    def has_status(self, *statuses: ProjectionStatus) -> bool:
        return set(statuses) <= self.statuses

    @classmethod
    def from_wire(cls, data: Any) -> ProjectionDetail:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"Malformed projection statistics: {e}") from e


_STATUS_VALUES = {s.value for s in ProjectionStatus}


# =============================================================================
# Translation
# =============================================================================


class _ProjectionTranslator(ResponseTranslator[T]):
    """Adds the projection-specific failures the server reports by message."""

    def __init__(self, projection_name: str | None = None):
        super().__init__()
        self.projection_name = projection_name

    def translate(self, outcome: RawMessage | BaseException) -> T | EventStoreError:
        if isinstance(outcome, RpcError):
            if "NotFound" in outcome.details:
                return NotFoundError(
                    f"Projection {self.projection_name!r} not found",
                    {"projection_name": self.projection_name},
                )
            if "Conflict" in outcome.details:
                return AlreadyExistsError(
                    f"Projection {self.projection_name!r} already exists",
                    {"projection_name": self.projection_name},
                )
        return super().translate(outcome)


class ProjectionCommandTranslator(_ProjectionTranslator[_Discarded]):
    def translate_message(self, message: RawMessage) -> _Discarded:
        return DiscardedTranslator().translate_message(message)


class ProjectionValueTranslator(_ProjectionTranslator[T | None], Generic[T]):
    """Decodes a state or result value into `type_`.

    An absent value is None. A value that does not fit the type is a
    DecodeError.
    """

    def __init__(self, kind: MessageKind, type_: Any, projection_name: str | None = None):
        super().__init__(projection_name)
        self.kind = kind
        self.adapter: TypeAdapter[T] = TypeAdapter(type_)

    def translate_message(self, message: RawMessage) -> T | None:
        if message.kind != self.kind.value:
            raise self.unexpected(message)
        value = message.data.get(self.kind.value)
        if value is None:
            return None
        return self.adapter.validate_python(value)


class StatisticsTranslator(_ProjectionTranslator[ProjectionDetail]):
    def translate_message(self, message: RawMessage) -> ProjectionDetail:
        if message.kind != MessageKind.PROJECTION_DETAILS.value:
            raise self.unexpected(message)
        return ProjectionDetail.from_wire(message.data.get("details"))


# =============================================================================
# Commands
# =============================================================================


class _ProjectionCommand(UnaryUnary[_Discarded]):
    requires_leader = True

    projection_name: str | None = None

    def translator(self) -> ProjectionCommandTranslator:
        return ProjectionCommandTranslator(self.projection_name)


class CreateContinuous(_ProjectionCommand):
    """Create a projection that keeps processing new events."""

    name = "Projections.CreateContinuous"
    method = f"/{PROJECTIONS_SERVICE}/Create"

    def __init__(
        self,
        projection_name: str,
        query: str,
        emit_enabled: bool = True,
        track_emitted_streams: bool = True,
    ):
        self.projection_name = projection_name
        self.query = query
        self.emit_enabled = emit_enabled
        self.track_emitted_streams = track_emitted_streams

    def request_message(self) -> Request:
        return Request.create(
            "create",
            {
                "options": {
                    "continuous": {
                        "name": self.projection_name,
                        "emit_enabled": self.emit_enabled,
                        "track_emitted_streams": self.track_emitted_streams,
                    },
                    "query": self.query,
                }
            },
        )


class CreateOneTime(_ProjectionCommand):
    """Create an unnamed projection that runs once over existing events."""

    name = "Projections.CreateOneTime"
    method = f"/{PROJECTIONS_SERVICE}/Create"

    def __init__(self, query: str):
        self.query = query

    def request_message(self) -> Request:
        return Request.create("create", {"options": {"one_time": {}, "query": self.query}})


class CreateTransient(_ProjectionCommand):
    """Create a projection that is not persisted across server restarts."""

    name = "Projections.CreateTransient"
    method = f"/{PROJECTIONS_SERVICE}/Create"

    def __init__(self, projection_name: str, query: str):
        self.projection_name = projection_name
        self.query = query

    def request_message(self) -> Request:
        return Request.create(
            "create",
            {"options": {"transient": {"name": self.projection_name}, "query": self.query}},
        )


class UpdateProjection(_ProjectionCommand):
    """Replace a projection's query. emit_enabled=None keeps the current setting."""

    name = "Projections.Update"
    method = f"/{PROJECTIONS_SERVICE}/Update"

    def __init__(self, projection_name: str, query: str, emit_enabled: bool | None = None):
        self.projection_name = projection_name
        self.query = query
        self.emit_enabled = emit_enabled

    def request_message(self) -> Request:
        emit: dict[str, Any] = (
            {"no_emit_options": {}}
            if self.emit_enabled is None
            else {"emit_enabled": self.emit_enabled}
        )
        return Request.create(
            "update",
            {"options": {"name": self.projection_name, "query": self.query, **emit}},
        )


class DeleteProjection(_ProjectionCommand):
    name = "Projections.Delete"
    method = f"/{PROJECTIONS_SERVICE}/Delete"

    def __init__(
        self,
        projection_name: str,
        delete_emitted_streams: bool = False,
        delete_state_stream: bool = False,
        delete_checkpoint_stream: bool = False,
    ):
        self.projection_name = projection_name
        self.delete_emitted_streams = delete_emitted_streams
        self.delete_state_stream = delete_state_stream
        self.delete_checkpoint_stream = delete_checkpoint_stream

    def request_message(self) -> Request:
        return Request.create(
            "delete",
            {
                "options": {
                    "name": self.projection_name,
                    "delete_emitted_streams": self.delete_emitted_streams,
                    "delete_state_stream": self.delete_state_stream,
                    "delete_checkpoint_stream": self.delete_checkpoint_stream,
                }
            },
        )


class EnableProjection(_ProjectionCommand):
    name = "Projections.Enable"
    method = f"/{PROJECTIONS_SERVICE}/Enable"

    def __init__(self, projection_name: str):
        self.projection_name = projection_name

    def request_message(self) -> Request:
        return Request.create("enable", {"options": {"name": self.projection_name}})


class DisableProjection(_ProjectionCommand):
    """Stop a projection. Without a checkpoint write this is an abort."""

    name = "Projections.Disable"
    method = f"/{PROJECTIONS_SERVICE}/Disable"

    def __init__(self, projection_name: str, write_checkpoint: bool = True):
        self.projection_name = projection_name
        self.write_checkpoint = write_checkpoint

    def request_message(self) -> Request:
        return Request.create(
            "disable",
            {"options": {"name": self.projection_name, "write_checkpoint": self.write_checkpoint}},
        )


class ResetProjection(_ProjectionCommand):
    name = "Projections.Reset"
    method = f"/{PROJECTIONS_SERVICE}/Reset"

    def __init__(self, projection_name: str, write_checkpoint: bool = True):
        self.projection_name = projection_name
        self.write_checkpoint = write_checkpoint

    def request_message(self) -> Request:
        return Request.create(
            "reset",
            {"options": {"name": self.projection_name, "write_checkpoint": self.write_checkpoint}},
        )


class RestartProjectionSubsystem(_ProjectionCommand):
    """Restart the server's projection subsystem."""

    name = "Projections.RestartSubsystem"
    method = f"/{PROJECTIONS_SERVICE}/RestartSubsystem"

    def request_message(self) -> Request:
        return Request.create("empty")


# =============================================================================
# State, result and statistics
# =============================================================================


class GetProjectionState(UnaryUnary[Any]):
    """Fetch a projection's state, decoded into `type_` (default: plain JSON)."""

    name = "Projections.State"
    method = f"/{PROJECTIONS_SERVICE}/State"
    kind = MessageKind.PROJECTION_STATE

    def __init__(self, projection_name: str, type_: Any = Any, partition: str = ""):
        self.projection_name = projection_name
        self.type_ = type_
        self.partition = partition

    def request_message(self) -> Request:
        return Request.create(
            self.kind.value,
            {"options": {"name": self.projection_name, "partition": self.partition}},
        )

    def translator(self) -> ProjectionValueTranslator[Any]:
        return ProjectionValueTranslator(self.kind, self.type_, self.projection_name)


class GetProjectionResult(GetProjectionState):
    """Fetch a projection's result, decoded into `type_` (default: plain JSON)."""

    name = "Projections.Result"
    method = f"/{PROJECTIONS_SERVICE}/Result"
    kind = MessageKind.PROJECTION_RESULT


class ListProjections(UnaryStream[list[ProjectionDetail]]):
    """Statistics for every projection in a mode."""

    name = "Projections.Statistics"
    method = f"/{PROJECTIONS_SERVICE}/Statistics"

    def __init__(self, mode: ProjectionMode = ProjectionMode.ALL):
        self.mode = mode

    def request_message(self) -> Request:
        return Request.create("statistics", {"options": {self.mode.value: {}}})

    def translator(self) -> StatisticsTranslator:
        return StatisticsTranslator()

    async def responses(self, bridge: StreamingBridge[Any]) -> list[ProjectionDetail]:
        async with bridge:
            return [detail async for detail in bridge]


class GetProjectionDetail(UnaryStream[ProjectionDetail | None]):
    """Statistics for one projection, or None if the server sends none."""

    name = "Projections.Statistics"
    method = f"/{PROJECTIONS_SERVICE}/Statistics"

    def __init__(self, projection_name: str):
        self.projection_name = projection_name

    def request_message(self) -> Request:
        return Request.create("statistics", {"options": {"name": self.projection_name}})

    def translator(self) -> StatisticsTranslator:
        return StatisticsTranslator(self.projection_name)

    async def responses(self, bridge: StreamingBridge[Any]) -> ProjectionDetail | None:
        async with bridge:
            async for detail in bridge:
                return detail
        return None
