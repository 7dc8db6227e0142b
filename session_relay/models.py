"""Data models for the remote session relay."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, List, Union


class SessionState(Enum):
    """Interactive session lifecycle state."""
    SPAWNING = "spawning"          # Transport asked to start the process
    RUNNING = "running"            # Process started, output flowing
    EXITED = "exited"              # Process exited (any exit code)
    SPAWN_FAILED = "spawn_failed"  # Transport could not start the process


class FlowKind(Enum):
    """Kinds of guided setup dialog."""
    SESSION_SETUP = "session-setup"
    TASK_SETUP = "task-setup"


class FlowStep(Enum):
    """Positions within a setup dialog."""
    SELECT_MACHINE = "select_machine"
    SELECT_REPO = "select_repo"
    SELECT_SUBFOLDER = "select_subfolder"
    SELECT_START_MODE = "select_start_mode"
    SELECT_REPO_MODE = "select_repo_mode"
    AWAIT_DESCRIPTION = "await_description"


# Linear, forward-only step order per flow kind
FLOW_STEPS = {
    FlowKind.SESSION_SETUP: [
        FlowStep.SELECT_MACHINE,
        FlowStep.SELECT_REPO,
        FlowStep.SELECT_SUBFOLDER,
        FlowStep.SELECT_START_MODE,
    ],
    FlowKind.TASK_SETUP: [
        FlowStep.SELECT_MACHINE,
        FlowStep.SELECT_REPO_MODE,
        FlowStep.SELECT_REPO,
        FlowStep.AWAIT_DESCRIPTION,
    ],
}


# ---------------------------------------------------------------------------
# Parsed output chunks (closed tagged union, discriminated by ``kind``)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextChunk:
    """Assistant text block."""
    content: str
    kind: ClassVar[str] = "text"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "content": self.content}


@dataclass(frozen=True)
class PassthroughChunk:
    """Raw non-JSON line from the remote process."""
    content: str
    kind: ClassVar[str] = "passthrough"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "content": self.content}


@dataclass(frozen=True)
class ResultChunk:
    """End-of-run summary emitted by the remote CLI."""
    subtype: str
    session_ref: Optional[str] = None
    cost_label: Optional[str] = None      # "$0.0123"
    duration_label: Optional[str] = None  # "42s"
    kind: ClassVar[str] = "result"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "subtype": self.subtype,
            "session_ref": self.session_ref,
            "cost_label": self.cost_label,
            "duration_label": self.duration_label,
        }


@dataclass(frozen=True)
class HookResponseChunk:
    """Output of a hook run by the remote CLI."""
    content: str
    kind: ClassVar[str] = "hook_response"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "content": self.content}


@dataclass(frozen=True)
class AskUserChunk:
    """A question the remote CLI wants the operator to answer."""
    tool_ref: Optional[str]
    question: str
    options: tuple = ()
    kind: ClassVar[str] = "ask_user"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "tool_ref": self.tool_ref,
            "question": self.question,
            "options": list(self.options),
        }


ParsedChunk = Union[TextChunk, PassthroughChunk, ResultChunk, HookResponseChunk, AskUserChunk]


@dataclass
class TranscriptEntry:
    """One line of a session transcript."""
    type: str  # "text", "passthrough", "result", "hook_response", "ask_user", "user_input", "stderr"
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptEntry":
        return cls(
            type=data["type"],
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class PendingQuestion:
    """An ask_user prompt waiting for an answer button."""
    tool_ref: Optional[str]
    question: str
    options: List[str]


@dataclass
class ActiveSession:
    """A running remote interactive process bound to one conversation thread."""
    session_ref: str
    thread_key: str
    target: str
    project_label: str
    command: str
    prompt: str = ""
    process_handle: Any = None  # Owned exclusively by this record
    state: SessionState = SessionState.SPAWNING
    started_at: datetime = field(default_factory=datetime.now)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    stream_json: bool = False  # Input is wrapped as stream-json user messages
    exit_code: Optional[int] = None

    def append(self, entry_type: str, content: str) -> TranscriptEntry:
        """Append a transcript entry and return it."""
        entry = TranscriptEntry(type=entry_type, content=content)
        self.transcript.append(entry)
        return entry

    def duration_ms(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now()
        return int((now - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        return {
            "session_ref": self.session_ref,
            "thread_key": self.thread_key,
            "target": self.target,
            "project_label": self.project_label,
            "command": self.command,
            "prompt": self.prompt,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "transcript_length": len(self.transcript),
            "exit_code": self.exit_code,
        }


@dataclass
class ConversationFlow:
    """An in-progress multi-step setup dialog for one thread."""
    kind: FlowKind
    thread_key: str
    owner_ref: Optional[str] = None
    step: FlowStep = FlowStep.SELECT_MACHINE
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: Optional[datetime] = None

    # Working fields, filled in as steps resolve
    machine: Optional[str] = None
    base_path: Optional[str] = None
    repo_path: Optional[str] = None
    project: Optional[str] = None
    repo_mode: Optional[str] = None  # "new" | "existing"
    task_name: Optional[str] = None
    chat_id: Optional[int] = None
    message_id: Optional[int] = None

    # Candidate lists shown at the current step, resolved by index
    cached_machines: List[str] = field(default_factory=list)
    cached_dirs: List[str] = field(default_factory=list)

    # Set while a button press for the current step is being handled
    in_flight: bool = field(default=False, repr=False)

    def touch(self, now: Optional[datetime] = None):
        """Record user activity on this dialog."""
        self.last_activity = now or datetime.now()

    def has_passed(self, step: FlowStep) -> bool:
        """True if the flow has already moved beyond ``step``."""
        order = FLOW_STEPS[self.kind]
        return step in order and order.index(step) < order.index(self.step)

    def advance(self, step: FlowStep):
        """Move to a later step. Steps never go backwards."""
        order = FLOW_STEPS[self.kind]
        if step not in order:
            raise ValueError(f"Step {step.value} does not belong to a {self.kind.value} flow")
        if order.index(step) < order.index(self.step):
            raise ValueError(f"Cannot move {self.kind.value} flow back from {self.step.value} to {step.value}")
        self.step = step

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "step": self.step.value,
            "thread_key": self.thread_key,
            "owner_ref": self.owner_ref,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "machine": self.machine,
            "repo_path": self.repo_path,
            "project": self.project,
            "repo_mode": self.repo_mode,
            "task_name": self.task_name,
        }


@dataclass(frozen=True)
class CallbackToken:
    """A decoded ``namespace:key:value`` button token."""
    namespace: str
    key: str
    value: str


@dataclass(frozen=True)
class EngineMode:
    """Engine command plus start-mode flag parsed from a button value."""
    engine: Optional[str]  # None when the engine must be resolved elsewhere
    mode: str              # "--ds" | "--cds"
    needs_resolution: bool = False


@dataclass
class FlowReply:
    """What to show the operator after a flow step."""
    text: str
    buttons: List[List[tuple]] = field(default_factory=list)  # rows of (label, callback_data)
    finished: bool = False


@dataclass
class ExecResult:
    """Result of a one-shot remote command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class SpawnResult:
    """Outcome of a spawn request."""
    ok: bool
    session: Optional[ActiveSession] = None
    reason: Optional[str] = None


@dataclass
class AnalysisContext:
    """Outcome metadata handed to transcript analysis."""
    source: str
    project: str
    session_ref: str
    target: str
    description: str
    outcome: str
    duration_ms: int

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "project": self.project,
            "session_ref": self.session_ref,
            "target": self.target,
            "description": self.description,
            "outcome": self.outcome,
            "duration_ms": self.duration_ms,
        }
