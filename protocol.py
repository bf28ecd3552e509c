"""Shared constants and types for zup.

All modules import from here to avoid circular dependencies.
"""

from dataclasses import dataclass, field
from enum import Enum

# --- Constants ---

DEFAULT_CONFIG_FILE = "zup.yaml"
BACKGROUND_LOG = "background_command.log"
SHELL = "bash"

# Readiness polling after a background-mode fix
DEFAULT_POLL_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL = 1.0  # seconds

# LLM backend defaults
DEFAULT_OPENAI_API_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_CLAUDE_API_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_CLAUDE_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_OLLAMA_URL = "http://localhost:11434/api/generate"
DEFAULT_OLLAMA_MODEL = "qwen2.5-coder:1.5b"


class ConfigError(Exception):
    """zup.yaml is missing or malformed."""


class AdvisorError(RuntimeError):
    """A fix backend could not be reached or returned garbage."""


# --- Execution modes ---

class Mode(Enum):
    SAME_TERMINAL = "same-terminal"
    BACKGROUND = "background"


def normalize_mode(mode):
    """Map a raw mode value to the string the runner uses.

    Empty/None becomes same-terminal. Unknown strings are kept as-is; they run
    in the foreground like same-terminal does.
    """
    if isinstance(mode, Mode):
        return mode.value
    if not mode:
        return Mode.SAME_TERMINAL.value
    return str(mode).strip() or Mode.SAME_TERMINAL.value


def is_background(mode):
    return normalize_mode(mode) == Mode.BACKGROUND.value


# --- State Machine ---

class HealState(Enum):
    ATTEMPTING = "attempting"
    FAILED_AWAITING_FIX = "failed_awaiting_fix"
    FIX_PROPOSED = "fix_proposed"
    APPLYING_FIX = "applying_fix"
    SUCCEEDED = "succeeded"
    TERMINALLY_FAILED = "terminally_failed"


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    HealState.ATTEMPTING: {HealState.SUCCEEDED, HealState.FAILED_AWAITING_FIX},
    HealState.FAILED_AWAITING_FIX: {HealState.FIX_PROPOSED, HealState.TERMINALLY_FAILED},
    HealState.FIX_PROPOSED: {HealState.APPLYING_FIX, HealState.TERMINALLY_FAILED},
    # fix healed -> retry original; fix failed or binary never showed up -> terminal
    HealState.APPLYING_FIX: {HealState.ATTEMPTING, HealState.TERMINALLY_FAILED},
    HealState.SUCCEEDED: set(),
    HealState.TERMINALLY_FAILED: set(),
}


class FailureKind(Enum):
    EXECUTION = "execution"
    PRECONDITION = "precondition"
    ADVISOR_UNAVAILABLE = "advisor_unavailable"
    NO_FIX = "no_fix"
    DECLINED = "declined"
    BINARY_MISSING = "binary_missing"
    FIX_LIMIT = "fix_limit"


# --- Records ---

@dataclass(frozen=True)
class Step:
    """One entry of the `setup:` list in zup.yaml."""
    description: str
    command: str
    meta: str = ""
    mode: str = Mode.SAME_TERMINAL.value


@dataclass
class ExecutionResult:
    succeeded: bool
    output: str = ""
    error: str = ""
    spawned: bool = True  # False: precondition failed, nothing was launched


@dataclass
class FixSuggestion:
    fix_command: str = ""
    explanation: str = ""
    available: bool = True

    @classmethod
    def unavailable(cls, reason):
        return cls(fix_command="", explanation=reason, available=False)


@dataclass
class Attempt:
    """A single command execution recorded in the attempt trail."""
    command: str
    mode: str
    depth: int
    result: ExecutionResult
    suggestion: FixSuggestion | None = None
    accepted: bool | None = None


@dataclass
class HealResult:
    succeeded: bool
    error: str = ""
    failure: FailureKind | None = None
    cause: FailureKind | None = None  # EXECUTION or PRECONDITION of the failing command
    trail: list[Attempt] = field(default_factory=list)

    @property
    def fixes_applied(self):
        return sum(1 for a in self.trail if a.accepted)
