"""Preview sessions.

A PreviewSession owns everything the host keeps for one running preview:
its event channel, classifier, circuit breaker, repair orchestrator and
file set. Sessions are built explicitly and torn down with close(); no
state is shared between them.
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, fields

from breaker import CircuitBreaker
from channel import EventChannel
from classifier import ErrorClassifier, PreviewError, is_repairable
from protocol import (
    ErrorKind, DEFAULT_DEDUP_WINDOW, DEFAULT_FAILURE_THRESHOLD, DEFAULT_MAX_RECURRENCES,
    DEFAULT_COOLDOWN, DEFAULT_REPAIR_TIMEOUT, DEFAULT_HISTORY_LIMIT,
    DEFAULT_RECURRENCE_WINDOW, DEFAULT_MAX_ATTEMPTS_PER_WINDOW, DEFAULT_ATTEMPT_WINDOW,
    RECENT_ERRORS_LIMIT,
)
from repair import RepairContext, RepairOrchestrator
from scrubber import scrub_error

log = logging.getLogger("heal.session")


@dataclass
class SessionConfig:
    dedup_window: float = DEFAULT_DEDUP_WINDOW
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    max_recurrences: int = DEFAULT_MAX_RECURRENCES
    cooldown: float = DEFAULT_COOLDOWN
    auto_reset: bool = False
    max_attempts_per_window: int = DEFAULT_MAX_ATTEMPTS_PER_WINDOW
    attempt_window: float = DEFAULT_ATTEMPT_WINDOW
    repair_timeout: float = DEFAULT_REPAIR_TIMEOUT
    history_limit: int = DEFAULT_HISTORY_LIMIT
    recurrence_window: float = DEFAULT_RECURRENCE_WINDOW
    repair_warnings: bool = False

    @classmethod
    def from_dict(cls, cfg: dict | None) -> "SessionConfig":
        """Pick the known keys out of a larger config dict."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (cfg or {}).items() if k in names and v is not None})


class PreviewSession:
    """Host-side state for one preview, from first event to teardown."""

    def __init__(
        self,
        session_id: str | None = None,
        files: dict[str, str] | None = None,
        generator=None,
        config: SessionConfig | None = None,
        listeners=None,
    ):
        self.id = session_id or uuid.uuid4().hex[:12]
        self.config = config or SessionConfig()
        self.created_at = time.time()
        self.context = RepairContext(files=dict(files or {}))
        self.channel = EventChannel()
        self.classifier = ErrorClassifier(self.config.dedup_window)
        self.breaker = CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            max_recurrences=self.config.max_recurrences,
            cooldown=self.config.cooldown,
            auto_reset=self.config.auto_reset,
            max_attempts_per_window=self.config.max_attempts_per_window,
            attempt_window=self.config.attempt_window,
        )
        self.orchestrator = None
        if generator is not None:
            self.orchestrator = RepairOrchestrator(
                generator,
                breaker=self.breaker,
                timeout=self.config.repair_timeout,
                history_limit=self.config.history_limit,
                recurrence_window=self.config.recurrence_window,
                listeners=listeners,
            )
        self.errors: deque[PreviewError] = deque(maxlen=RECENT_ERRORS_LIMIT)
        self.sandbox_alive = False
        self.closed = False
        self._error_listeners = []
        self.channel.subscribe(self.process)

    # --- Event path (synchronous with arrival) ---

    def add_error_listener(self, fn):
        """fn(error) for every accepted, non-system error."""
        self._error_listeners.append(fn)

    def deliver(self, message) -> bool:
        """Feed one raw message from the sandbox."""
        return self.channel.deliver(message)

    def process(self, payload) -> PreviewError | None:
        error = self.classifier.ingest(payload)
        if error is None:
            return None
        if error.kind == ErrorKind.SYSTEM:
            if not self.sandbox_alive:
                log.info("session %s: sandbox reported in", self.id)
            self.sandbox_alive = True
            return error
        self.errors.append(error)
        for fn in list(self._error_listeners):
            try:
                fn(error)
            except Exception:
                log.exception("error listener failed")
        if self.orchestrator is not None and not self.closed and is_repairable(error, self.config.repair_warnings):
            self.orchestrator.submit(error, self.context)
        return error

    # --- File set ---

    def update_files(self, files: dict[str, str], replace: bool = False):
        if replace:
            self.context.files = dict(files)
        else:
            self.context.files = {**self.context.files, **files}

    def set_active_file(self, path: str | None):
        self.context.active_file = path

    def set_last_operation(self, description: str):
        self.context.last_operation = description

    def begin_run(self, description: str = ""):
        """Mark a fresh execution of the sandbox.

        Dedup memory is cleared so a fault that survives a repair is seen
        again (and counted as a recurrence) even right after a relaunch.
        """
        self.classifier.dedup.clear()
        self.sandbox_alive = False
        if description:
            self.set_last_operation(description)

    # --- Lifecycle ---

    async def idle(self):
        if self.orchestrator is not None:
            await self.orchestrator.idle()

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.channel.close()
        if self.orchestrator is not None:
            await self.orchestrator.close()
        log.info("session %s closed", self.id)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # --- Views ---

    def stats(self) -> dict:
        return {
            "channel": self.channel.stats(),
            "classifier": self.classifier.stats(),
            "breaker": self.orchestrator.stats() if self.orchestrator else self.breaker.stats(),
        }

    def history(self, redact: bool = False) -> list[dict]:
        if self.orchestrator is None:
            return []
        out = []
        for request in self.orchestrator.history:
            d = request.to_dict()
            if redact:
                d["error"] = scrub_error(request.error).to_dict()
            out.append(d)
        return out

    def snapshot(self, redact: bool = False) -> dict:
        recent = list(self.errors)[-20:]
        if redact:
            recent = [scrub_error(e) for e in recent]
        return {
            "id": self.id,
            "created_at": self.created_at,
            "sandbox_alive": self.sandbox_alive,
            "repairing": bool(self.orchestrator and self.orchestrator.is_repairing),
            "context": self.context.to_dict(),
            "recent_errors": [e.to_dict() for e in recent],
            "stats": self.stats(),
        }


class SessionRegistry:
    """Live sessions of a multi-tenant host, keyed by id."""

    def __init__(self, generator_factory=None, config: SessionConfig | None = None, max_sessions: int = 100):
        self.generator_factory = generator_factory
        self.config = config or SessionConfig()
        self.max_sessions = max_sessions
        self._sessions: dict[str, PreviewSession] = {}

    def __len__(self):
        return len(self._sessions)

    def create(self, files=None, listeners=None) -> PreviewSession:
        if len(self._sessions) >= self.max_sessions:
            raise RuntimeError("too many sessions")
        generator = self.generator_factory() if self.generator_factory else None
        session = PreviewSession(files=files, generator=generator, config=self.config, listeners=listeners)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> PreviewSession | None:
        return self._sessions.get(session_id)

    def list(self) -> list[PreviewSession]:
        return list(self._sessions.values())

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self):
        for sid in list(self._sessions):
            await self.close(sid)
