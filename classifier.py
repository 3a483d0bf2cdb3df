"""Error classifier and deduplicator.

Turns raw envelope payloads (already tag-checked by the channel, but
otherwise untrusted) into PreviewError records and suppresses rapid
repeats of the same fault.
"""

import hashlib
import logging
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime

from protocol import (
    ErrorKind, Severity, DEFAULT_SEVERITY, DEFAULT_DEDUP_WINDOW,
    MAX_MESSAGE_LENGTH, MAX_STACK_LENGTH,
)

log = logging.getLogger("heal.classifier")

# Wire names older sandboxes and framework helpers use for the same kinds
KIND_ALIASES = {
    "javascript": ErrorKind.SCRIPT,
    "error": ErrorKind.SCRIPT,
    "exception": ErrorKind.SCRIPT,
    "react": ErrorKind.SCRIPT,
    "vue": ErrorKind.SCRIPT,
    "promise": ErrorKind.UNHANDLED_REJECTION,
    "rejection": ErrorKind.UNHANDLED_REJECTION,
    "network": ErrorKind.NETWORK_FAILURE,
}

# Kind-specific fields copied into PreviewError.details when they hold primitives
DETAIL_FIELDS = (
    "method", "target", "reason", "status", "statusText", "componentStack",
    "info", "framework", "loadTime", "domContentLoaded", "args", "thread",
)

_RE_ISO_TS = re.compile(r'^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?\s*')
_RE_CLOCK_TS = re.compile(r'^\[\d{1,2}:\d{2}:\d{2}(?:\.\d+)?\]\s*')
_RE_RUN_PREFIX = re.compile(r'^Run\s+')
_RE_PIPE_SEP = re.compile(r'^\s*\|\s*')
_RE_PROGRESS = re.compile(r'(\d+)%')
_RE_WS = re.compile(r'\s+')
_RE_DIGITS = re.compile(r'\d+')
_RE_QUOTED = re.compile(r'"[^"]*"|\'[^\']*\'|`[^`]*`')


@dataclass
class PreviewError:
    """Canonical fault record."""
    kind: ErrorKind
    message: str
    severity: Severity
    timestamp: float  # epoch seconds
    source: str | None = None
    line: int | None = None
    column: int | None = None
    stack: str | None = None
    origin: dict = field(default_factory=dict)  # url, agent
    progress: int | None = None
    details: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.message or not self.message.strip():
            raise ValueError("PreviewError requires a non-empty message")

    def signature(self) -> str:
        """Fingerprint that survives changing numbers, quoted values and whitespace."""
        msg = _RE_QUOTED.sub("S", self.message.lower())
        msg = _RE_DIGITS.sub("N", msg)
        msg = _RE_WS.sub(" ", msg).strip()
        stack_head = ""
        if self.stack:
            stack_head = "\n".join(self.stack.strip().splitlines()[:3])
            stack_head = _RE_DIGITS.sub("N", stack_head)
        raw = f"{self.kind.value}:{msg}:{stack_head}"
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    def location(self) -> str:
        if not self.source:
            return ""
        loc = self.source
        if self.line is not None:
            loc += f":{self.line}"
            if self.column is not None:
                loc += f":{self.column}"
        return loc

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "source": self.source,
            "line": self.line,
            "column": self.column,
            "stack": self.stack,
            "origin": dict(self.origin),
            "progress": self.progress,
            "details": dict(self.details),
            "signature": self.signature(),
        }


# --- Field normalization ---

def clean_message(text: str) -> str:
    """Strip embedded log timestamps and transport prefixes, trim, cap length."""
    text = text.strip()
    # Prefixes can stack ("2024-01-01T00:00:00Z Run | ..."), so peel until stable
    while True:
        before = text
        for pattern in (_RE_ISO_TS, _RE_CLOCK_TS, _RE_RUN_PREFIX, _RE_PIPE_SEP):
            text = pattern.sub("", text, count=1)
        if text == before:
            break
    text = text.strip()
    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH] + "..."
    return text


def extract_progress(text: str) -> int | None:
    """First integer immediately preceding a '%' character, if any."""
    m = _RE_PROGRESS.search(text)
    return int(m.group(1)) if m else None


def normalize_timestamp(value, now: float | None = None) -> float:
    """Accept epoch ms, epoch seconds or an ISO string. Falls back to host time."""
    fallback = time.time() if now is None else now
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        try:
            # Anything past ~1973 in milliseconds is far beyond any seconds value
            ts = value / 1000.0 if value > 1e11 else float(value)
        except OverflowError:
            return fallback
        return ts if math.isfinite(ts) and ts > 0 else fallback
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp()
        except (ValueError, OverflowError, OSError):
            return fallback
    return fallback


def message_key(message: str) -> str:
    """Normalized message used for duplicate detection."""
    return _RE_WS.sub(" ", message.strip().lower())


def _as_str(value) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_int(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _resolve_kind(raw_kind, severity: Severity | None) -> ErrorKind | None:
    if not isinstance(raw_kind, str):
        return None
    try:
        return ErrorKind(raw_kind)
    except ValueError:
        pass
    lowered = raw_kind.lower()
    if lowered == "console":
        return ErrorKind.CONSOLE_WARNING if severity == Severity.WARNING else ErrorKind.CONSOLE_ERROR
    return KIND_ALIASES.get(lowered)


def _resolve_severity(raw) -> Severity | None:
    if not isinstance(raw, str):
        return None
    try:
        return Severity(raw.lower())
    except ValueError:
        return None


def classify(payload, now: float | None = None) -> PreviewError | None:
    """Build a PreviewError from an untrusted payload dict.

    Every field is type-checked. Returns None when the payload has no
    recognizable kind or no usable message; such signals are dropped.
    """
    if not isinstance(payload, dict):
        return None

    severity = _resolve_severity(payload.get("severity"))
    kind = _resolve_kind(payload.get("kind", payload.get("type")), severity)
    if kind is None:
        return None

    raw_message = payload.get("message")
    if not isinstance(raw_message, str):
        return None
    message = clean_message(raw_message)
    if not message:
        return None

    stack = _as_str(payload.get("stack"))
    if stack and len(stack) > MAX_STACK_LENGTH:
        stack = stack[:MAX_STACK_LENGTH]

    origin = {}
    url = _as_str(payload.get("url"))
    agent = _as_str(payload.get("agent")) or _as_str(payload.get("userAgent"))
    if url:
        origin["url"] = url
    if agent:
        origin["agent"] = agent

    details = {}
    for name in DETAIL_FIELDS:
        value = payload.get(name)
        if isinstance(value, float) and not math.isfinite(value):
            continue
        if isinstance(value, (str, int, float, bool)):
            details[name] = value
        elif name == "args" and isinstance(value, list):
            details[name] = [a for a in value if isinstance(a, str)]

    return PreviewError(
        kind=kind,
        message=message,
        severity=severity or DEFAULT_SEVERITY[kind],
        timestamp=normalize_timestamp(payload.get("timestamp"), now),
        source=_as_str(payload.get("source")) or _as_str(payload.get("filename")),
        line=_as_int(payload.get("line", payload.get("lineno"))),
        column=_as_int(payload.get("column", payload.get("colno"))),
        stack=stack,
        origin=origin,
        progress=extract_progress(message),
        details=details,
    )


def is_repairable(error: PreviewError, include_warnings: bool = False) -> bool:
    """Whether an error should be handed to the repair orchestrator."""
    if error.kind == ErrorKind.SYSTEM or error.severity == Severity.INFO:
        return False
    if error.severity == Severity.WARNING:
        return include_warnings
    return True


# --- Deduplication ---

class Deduplicator:
    """Drop reports repeating a recent (kind, message) within a time window.

    Windows are measured on the host clock at arrival; sandbox timestamps
    are not trusted for this. A dropped duplicate does not extend the window.
    """

    def __init__(self, window: float = DEFAULT_DEDUP_WINDOW, clock=time.monotonic):
        self.window = window
        self._clock = clock
        self._seen: dict[tuple[str, str], float] = {}

    def is_duplicate(self, error: PreviewError) -> bool:
        now = self._clock()
        self._prune(now)
        key = (error.kind.value, message_key(error.message))
        last = self._seen.get(key)
        if last is not None and now - last < self.window:
            return True
        self._seen[key] = now
        return False

    def _prune(self, now: float):
        stale = [k for k, t in self._seen.items() if now - t >= self.window]
        for k in stale:
            del self._seen[k]

    def clear(self):
        self._seen.clear()


class ErrorClassifier:
    """classify + dedupe with counters."""

    def __init__(self, dedup_window: float = DEFAULT_DEDUP_WINDOW, clock=time.monotonic):
        self.dedup = Deduplicator(dedup_window, clock=clock)
        self.accepted = 0
        self.dropped = 0
        self.duplicates = 0

    def ingest(self, payload) -> PreviewError | None:
        error = classify(payload)
        if error is None:
            self.dropped += 1
            log.debug("dropped unclassifiable report")
            return None
        if self.dedup.is_duplicate(error):
            self.duplicates += 1
            log.debug("duplicate %s report dropped: %s", error.kind.value, error.message[:80])
            return None
        self.accepted += 1
        return error

    def stats(self) -> dict:
        return {
            "accepted": self.accepted,
            "dropped": self.dropped,
            "duplicates": self.duplicates,
        }
