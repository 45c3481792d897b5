"""Event type definitions.

All events published on a registry's bus are defined here.
"""

from pydantic import BaseModel

from .bus import Bus

# =============================================================================
# Session Events
# =============================================================================


class SessionCreatedProps(BaseModel):
    """A new session was created."""

    session_id: str
    title: str


class SessionUpdatedProps(BaseModel):
    """Session metadata (title) changed."""

    session_id: str
    title: str


class SessionDeletedProps(BaseModel):
    """Session was deleted."""

    session_id: str


class SessionSwitchedProps(BaseModel):
    """The active session changed."""

    session_id: str
    previous_session_id: str | None = None


class TranscriptUpdatedProps(BaseModel):
    """A session's transcript changed."""

    session_id: str
    message_count: int


SessionCreated = Bus.define("session.created", SessionCreatedProps)
SessionUpdated = Bus.define("session.updated", SessionUpdatedProps)
SessionDeleted = Bus.define("session.deleted", SessionDeletedProps)
SessionSwitched = Bus.define("session.switched", SessionSwitchedProps)
TranscriptUpdated = Bus.define("transcript.updated", TranscriptUpdatedProps)


# =============================================================================
# Run Events
# =============================================================================


class RunStartedProps(BaseModel):
    """A run was started for a session."""

    session_id: str
    thread_id: str
    resumed: bool = False


class RunMetadataProps(BaseModel):
    """Thread/run identifiers became known."""

    session_id: str
    thread_id: str | None = None
    run_id: str | None = None


class RunFinishedProps(BaseModel):
    """A run reached a terminal state."""

    session_id: str
    state: str
    run_id: str | None = None


class RunErrorProps(BaseModel):
    """A run failed."""

    session_id: str
    error: str
    error_type: str


class RunPausedProps(BaseModel):
    """A run was interrupted and its checkpoint captured."""

    session_id: str
    run_id: str | None = None
    checkpoint_id: str | None = None


RunStarted = Bus.define("run.started", RunStartedProps)
RunMetadata = Bus.define("run.metadata", RunMetadataProps)
RunFinished = Bus.define("run.finished", RunFinishedProps)
RunError = Bus.define("run.error", RunErrorProps)
RunPaused = Bus.define("run.paused", RunPausedProps)
