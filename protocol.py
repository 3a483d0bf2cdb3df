"""Protocol constants and enums for heal.

Shared between the sandbox side (spy, transport) and the host side
(channel, classifier, breaker, repair). Everything that crosses the
sandbox/host boundary is keyed off the values here.
"""

from enum import Enum

PROTOCOL_VERSION = 1

# Envelope tag. The host ignores any message not carrying exactly this type.
ENVELOPE_TYPE = "HEAL_PREVIEW_ERROR"

# Attribute set on the execution context once the spy is installed
SPY_GUARD = "__heal_spy_installed__"

# --- Error kinds ---

class ErrorKind(Enum):
    SCRIPT = "script"
    UNHANDLED_REJECTION = "unhandledRejection"
    CONSOLE_ERROR = "consoleError"
    CONSOLE_WARNING = "consoleWarning"
    NETWORK_FAILURE = "networkFailure"
    PERFORMANCE = "performance"
    SYSTEM = "system"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# Severity assumed when a report omits one (or sends garbage)
DEFAULT_SEVERITY = {
    ErrorKind.SCRIPT: Severity.ERROR,
    ErrorKind.UNHANDLED_REJECTION: Severity.ERROR,
    ErrorKind.CONSOLE_ERROR: Severity.ERROR,
    ErrorKind.CONSOLE_WARNING: Severity.WARNING,
    ErrorKind.NETWORK_FAILURE: Severity.ERROR,
    ErrorKind.PERFORMANCE: Severity.WARNING,
    ErrorKind.SYSTEM: Severity.INFO,
}

# --- Repair attempt lifecycle ---

class RepairStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Valid transitions: status -> set of reachable statuses. Terminal states map to nothing.
STATUS_TRANSITIONS = {
    RepairStatus.PENDING: {RepairStatus.SUCCEEDED, RepairStatus.FAILED},
    RepairStatus.SUCCEEDED: set(),
    RepairStatus.FAILED: set(),
}

TERMINAL_STATUSES = {s for s, nxt in STATUS_TRANSITIONS.items() if not nxt}

# --- Instrumentation defaults ---

SLOW_LOAD_THRESHOLD_MS = 5000
MAX_MESSAGE_LENGTH = 4000
MAX_STACK_LENGTH = 8000

# --- Host defaults ---

DEFAULT_DEDUP_WINDOW = 3.0          # seconds; same kind + message inside this window is dropped
DEFAULT_FAILURE_THRESHOLD = 3       # consecutive failed attempts before the breaker trips
DEFAULT_MAX_RECURRENCES = 2         # same fault back after a "successful" patch
DEFAULT_RECURRENCE_WINDOW = 30.0    # seconds after a success during which a recurrence counts
DEFAULT_COOLDOWN = 60.0             # seconds since last attempt before auto-reset (if enabled)
DEFAULT_MAX_ATTEMPTS_PER_WINDOW = 3  # attempts for 2+ different errors inside the window: crash loop
DEFAULT_ATTEMPT_WINDOW = 60.0       # seconds
DEFAULT_REPAIR_TIMEOUT = 60.0       # seconds allowed for one patch generation call
DEFAULT_HISTORY_LIMIT = 50
RECENT_ERRORS_LIMIT = 100
MAX_PROMPT_FILE_CHARS = 20000       # file content budget for one repair prompt
