"""Repair orchestrator.

Drives one repair attempt end to end:

    breaker check -> request (pending) -> on_start
      -> generator.generate(error, snapshot) under a timeout
      -> apply patches to the live file set (all or nothing)
      -> breaker outcome -> request succeeded/failed -> on_success/on_error
      -> on_circuit_breaker_tripped if that outcome tripped the breaker

Nothing a generator or a patch can do escapes as an exception: refusals,
timeouts, bad patch shapes and unappliable patches all end as a failed
attempt. At most one attempt is in flight per orchestrator.
"""

import asyncio
import inspect
import logging
import posixpath
import time
from collections import deque
from dataclasses import dataclass, field

from breaker import CircuitBreaker, CircuitBreakerState
from classifier import PreviewError
from generator import FilePatch, GenerationError, InvalidPatch, PatchRefused, coerce_patches
from protocol import (
    RepairStatus, STATUS_TRANSITIONS, TERMINAL_STATUSES,
    DEFAULT_REPAIR_TIMEOUT, DEFAULT_HISTORY_LIMIT, DEFAULT_RECURRENCE_WINDOW,
)

log = logging.getLogger("heal.repair")


class PatchApplyError(Exception):
    """A generated patch set cannot be applied to the current files."""


@dataclass
class RepairContext:
    """The file set a repair works against, plus what the user was doing."""
    files: dict[str, str] = field(default_factory=dict)
    active_file: str | None = None
    last_operation: str = ""

    def snapshot(self) -> "RepairContext":
        return RepairContext(
            files=dict(self.files),
            active_file=self.active_file,
            last_operation=self.last_operation,
        )

    def to_dict(self) -> dict:
        return {
            "files": sorted(self.files),
            "active_file": self.active_file,
            "last_operation": self.last_operation,
        }


@dataclass
class RuntimeRepairRequest:
    """One attempt to fix one error. Frozen once terminal."""
    attempt_id: int
    error: PreviewError
    context: RepairContext  # snapshot taken when the attempt started
    status: RepairStatus = RepairStatus.PENDING
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    patches: list[FilePatch] = field(default_factory=list)
    failure_reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _transition(self, new_status: RepairStatus):
        if new_status not in STATUS_TRANSITIONS[self.status]:
            raise RuntimeError(
                f"attempt {self.attempt_id}: invalid transition "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        self.finished_at = time.time()

    def succeed(self, patches: list[FilePatch]):
        self._transition(RepairStatus.SUCCEEDED)
        self.patches = list(patches)

    def fail(self, reason: str):
        self._transition(RepairStatus.FAILED)
        self.failure_reason = reason

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "status": self.status.value,
            "error": self.error.to_dict(),
            "context": self.context.to_dict(),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "patched_files": [p.path for p in self.patches],
            "failure_reason": self.failure_reason,
        }


def _normalize_path(path: str) -> str:
    p = path.replace("\\", "/")
    if p.startswith("/") or (len(p) > 1 and p[1] == ":"):
        raise PatchApplyError(f"absolute path not allowed: {path}")
    norm = posixpath.normpath(p)
    if norm == ".." or norm.startswith("../"):
        raise PatchApplyError(f"path escapes the project: {path}")
    return norm


def apply_patches(files: dict[str, str], patches: list[FilePatch], base: dict[str, str] | None = None) -> dict[str, str]:
    """Return a new file mapping with every patch applied, or raise PatchApplyError.

    Only files already in the mapping may be patched. When `base` (the
    snapshot the patches were generated from) is given, a file that changed
    since then is a conflict.
    """
    if not patches:
        raise PatchApplyError("empty patch set")
    known = {posixpath.normpath(p.replace("\\", "/")): p for p in files}
    updated = dict(files)
    written = {}
    for patch in patches:
        target = known.get(_normalize_path(patch.path))
        if target is None:
            raise PatchApplyError(f"{patch.path} is not in the current file set")
        if target in written and written[target] != patch.new_content:
            raise PatchApplyError(f"conflicting edits to {target}")
        if base is not None and base.get(target) != files[target]:
            raise PatchApplyError(f"{target} changed while the patch was being generated")
        written[target] = patch.new_content
        updated[target] = patch.new_content
    return updated


class RepairListener:
    """Observer for repair activity. Override the hooks you need.

    Hooks may be plain functions or coroutines. Exceptions raised by a
    hook are logged and otherwise ignored.
    """

    def on_start(self, request: RuntimeRepairRequest):
        pass

    def on_success(self, request: RuntimeRepairRequest, patches: list[FilePatch]):
        pass

    def on_error(self, request: RuntimeRepairRequest, reason: str):
        pass

    def on_circuit_breaker_tripped(self, reason: str, stats: dict):
        pass

    def on_skipped(self, error: PreviewError, reason: str):
        pass


class CallbackListener(RepairListener):
    """Listener built from keyword callbacks, e.g. CallbackListener(on_error=print)."""

    HOOKS = ("on_start", "on_success", "on_error", "on_circuit_breaker_tripped", "on_skipped")

    def __init__(self, **callbacks):
        unknown = set(callbacks) - set(self.HOOKS)
        if unknown:
            raise TypeError(f"unknown listener hooks: {', '.join(sorted(unknown))}")
        self._callbacks = callbacks

    def _call(self, hook, *args):
        fn = self._callbacks.get(hook)
        return fn(*args) if fn else None

    def on_start(self, request):
        return self._call("on_start", request)

    def on_success(self, request, patches):
        return self._call("on_success", request, patches)

    def on_error(self, request, reason):
        return self._call("on_error", request, reason)

    def on_circuit_breaker_tripped(self, reason, stats):
        return self._call("on_circuit_breaker_tripped", reason, stats)

    def on_skipped(self, error, reason):
        return self._call("on_skipped", error, reason)


class RepairOrchestrator:
    """Repairs errors one at a time for a single session.

    While an attempt is in flight, a report of the same error (by
    signature) is dropped; a different error is held as the single queued
    follow-up, replacing any earlier queued one, and runs once the current
    attempt finishes.

    An attempt succeeds when its patches apply. If the same error comes
    back within `recurrence_window` seconds of a successful repair, the
    breaker counts a recurrence.
    """

    def __init__(
        self,
        generator,
        breaker: CircuitBreaker | None = None,
        timeout: float | None = DEFAULT_REPAIR_TIMEOUT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        recurrence_window: float = DEFAULT_RECURRENCE_WINDOW,
        listeners=None,
        clock=time.time,
    ):
        self.generator = generator
        self.breaker = breaker or CircuitBreaker()
        self.timeout = timeout
        self.recurrence_window = recurrence_window
        self._clock = clock
        self._history: deque[RuntimeRepairRequest] = deque(maxlen=history_limit)
        self._listeners = list(listeners or [])
        self._next_id = 1
        self._in_flight: RuntimeRepairRequest | None = None
        self._queued: tuple[PreviewError, RepairContext] | None = None
        self._repaired: dict[str, float] = {}  # signature -> when it was last repaired
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self.skipped = 0

    # --- Observers ---

    def add_listener(self, listener):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- Introspection / operator actions ---

    @property
    def history(self) -> list[RuntimeRepairRequest]:
        return list(self._history)

    @property
    def is_repairing(self) -> bool:
        return self._in_flight is not None

    @property
    def in_flight(self) -> RuntimeRepairRequest | None:
        return self._in_flight

    def get_stats(self) -> CircuitBreakerState:
        return self.breaker.state

    def stats(self) -> dict:
        return {
            **self.breaker.stats(),
            "in_flight": self._in_flight.attempt_id if self._in_flight else None,
            "queued": self._queued is not None,
            "skipped": self.skipped,
            "history": len(self._history),
        }

    def reset_circuit_breaker(self):
        self.breaker.reset()
        self._repaired.clear()
        log.info("circuit breaker reset by operator")

    def clear_history(self):
        self._history.clear()

    # --- Entry points ---

    def submit(self, error: PreviewError, context: RepairContext) -> asyncio.Task:
        """Schedule handle() on the running loop."""
        task = asyncio.get_running_loop().create_task(self.handle(error, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def idle(self):
        """Wait until no submitted attempt (including queued follow-ups) is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        """Cancel running attempts. Cancelled attempts are recorded as failures."""
        self._closed = True
        self._queued = None
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def handle(self, error: PreviewError, context: RepairContext) -> RuntimeRepairRequest | None:
        """Run the repair loop for one error.

        Returns the finished request, or None when no attempt was started
        (breaker tripped, superseded, or orchestrator closed).
        """
        if self._closed:
            return None

        # Decisions are made before the first await so two concurrent
        # handle() calls can never both claim the slot. Recurrences are
        # counted only on the path that can start an attempt.
        tripped_now = False
        request = None
        skipped = None
        blocked_reason = None
        if self._in_flight is not None:
            skipped = self._defer(error, context)
        else:
            tripped_now = self._note_recurrence(error)
            allowed, blocked_reason = self.breaker.allow_attempt()
            if allowed:
                request = self._start(error, context)

        if tripped_now:
            await self._notify_tripped()
        if skipped is not None:
            await self._notify("on_skipped", *skipped)
        if request is None:
            if blocked_reason and not tripped_now:
                log.info("repair blocked: %s", blocked_reason)
                await self._notify("on_circuit_breaker_tripped", blocked_reason, self.breaker.stats())
            return None

        try:
            await self._notify("on_start", request)
            await self._attempt(request, context)
        except asyncio.CancelledError:
            if not request.terminal:
                self._record_failure(request, "repair attempt cancelled")
            raise
        finally:
            self._in_flight = None
            self._run_queued()
        return request

    # --- Internals ---

    def _start(self, error, context) -> RuntimeRepairRequest:
        request = RuntimeRepairRequest(
            attempt_id=self._next_id,
            error=error,
            context=context.snapshot(),
        )
        self._next_id += 1
        self._in_flight = request
        self.breaker.record_attempt(error.signature())
        log.info("repair %d started: [%s] %s", request.attempt_id, error.kind.value, error.message[:120])
        return request

    def _defer(self, error, context):
        """Drop or queue an error that arrived mid-attempt. Returns (error, reason) if dropped."""
        current = self._in_flight
        if error.signature() == current.error.signature():
            self.skipped += 1
            log.debug("dropping report of in-flight error (attempt %d)", current.attempt_id)
            return error, f"same error is being repaired by attempt {current.attempt_id}"
        dropped = None
        if self._queued is not None:
            self.skipped += 1
            dropped = (self._queued[0], "superseded by a newer error")
        self._queued = (error, context)
        log.debug("queued [%s] behind attempt %d", error.kind.value, current.attempt_id)
        return dropped

    def _run_queued(self):
        if self._queued is None or self._closed:
            return
        error, context = self._queued
        self._queued = None
        try:
            self.submit(error, context)
        except RuntimeError:
            # No running loop (shutdown)
            log.debug("dropping queued error, event loop gone")

    def _prune_repaired(self):
        cutoff = self._clock() - self.recurrence_window
        for sig in [s for s, at in self._repaired.items() if at < cutoff]:
            del self._repaired[sig]

    def _note_recurrence(self, error) -> bool:
        self._prune_repaired()
        sig = error.signature()
        if sig not in self._repaired:
            return False
        return self.breaker.record_recurrence(sig, error.message)

    async def _attempt(self, request: RuntimeRepairRequest, live: RepairContext):
        try:
            result = await asyncio.wait_for(
                self.generator.generate(request.error, request.context),
                self.timeout,
            )
            patches = coerce_patches(result)
        except asyncio.TimeoutError:
            await self._fail(request, f"patch generation timed out after {self.timeout:g}s")
            return
        except PatchRefused as e:
            await self._fail(request, f"patch generation refused: {e}")
            return
        except InvalidPatch as e:
            await self._fail(request, f"invalid patch: {e}")
            return
        except GenerationError as e:
            await self._fail(request, f"patch generation failed: {e}")
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug("generator raised", exc_info=True)
            await self._fail(request, f"patch generation failed: {type(e).__name__}: {e}")
            return

        try:
            updated = apply_patches(live.files, patches, base=request.context.files)
        except PatchApplyError as e:
            await self._fail(request, f"patch could not be applied: {e}")
            return
        live.files = updated
        await self._succeed(request, patches)

    async def _succeed(self, request, patches):
        request.succeed(patches)
        self.breaker.record_success()
        self._prune_repaired()
        self._repaired[request.error.signature()] = self._clock()
        self._history.append(request)
        log.info("repair %d succeeded, patched %s", request.attempt_id, ", ".join(p.path for p in patches))
        await self._notify("on_success", request, list(patches))

    def _record_failure(self, request, reason) -> bool:
        request.fail(reason)
        tripped = self.breaker.record_failure(reason)
        self._history.append(request)
        log.warning("repair %d failed: %s", request.attempt_id, reason)
        return tripped

    async def _fail(self, request, reason):
        tripped = self._record_failure(request, reason)
        await self._notify("on_error", request, reason)
        if tripped:
            await self._notify_tripped()

    async def _notify_tripped(self):
        state = self.breaker.state
        await self._notify("on_circuit_breaker_tripped", state.tripped_reason or "", self.breaker.stats())

    async def _notify(self, hook, *args):
        for listener in list(self._listeners):
            fn = getattr(listener, hook, None)
            if fn is None:
                continue
            try:
                result = fn(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("listener %s failed", hook)
