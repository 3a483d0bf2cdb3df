"""Sandbox instrumentation ("spy").

Installed once inside the sandboxed process. Hooks the places a running
Python program surfaces faults and turns each one into an envelope:

    {"type": ENVELOPE_TYPE, "payload": {"kind", "message", "timestamp", "severity", ...}}

Every hook is pass-through: it observes, reports, then hands control to
whatever was there before (original excepthook prints, original loop
handler logs, network errors are re-raised). Reporting is best effort:
if the transport fails, the failure is logged at debug level and dropped.

Hooks:
    sys.excepthook / threading.excepthook     -> script
    asyncio loop exception handler            -> unhandledRejection
    logging.Logger.callHandlers, warnings     -> consoleError / consoleWarning
    httpx.Client.send / AsyncClient.send      -> networkFailure
    http.client.HTTPConnection                -> networkFailure
    Spy.page_loaded()                         -> performance (opt-in)
"""

import asyncio
import http.client
import json
import logging
import platform
import sys
import threading
import time
import traceback
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, asdict

import httpx

from protocol import (
    ENVELOPE_TYPE, SPY_GUARD, PROTOCOL_VERSION, ErrorKind, Severity,
    DEFAULT_SEVERITY, SLOW_LOAD_THRESHOLD_MS,
)

log = logging.getLogger("heal.spy")

# Per-thread flag: set while reporting or while a pass-through runs, so the
# transport's own traffic and re-logged errors are not reported again.
_local = threading.local()

_CAMEL_NAMES = {
    "enableConsoleCapture": "enable_console_capture",
    "enableNetworkErrorCapture": "enable_network_error_capture",
    "enablePerformanceMonitoring": "enable_performance_monitoring",
    "slowLoadThresholdMs": "slow_load_threshold_ms",
}


@dataclass
class SpyConfig:
    enable_console_capture: bool = True
    enable_network_error_capture: bool = True
    enable_performance_monitoring: bool = False
    slow_load_threshold_ms: int = SLOW_LOAD_THRESHOLD_MS

    @classmethod
    def from_dict(cls, d: dict | None) -> "SpyConfig":
        """Accepts snake_case or camelCase toggle names. Unknown keys are ignored."""
        kwargs = {}
        for key, value in (d or {}).items():
            name = _CAMEL_NAMES.get(key, key)
            if name in cls.__dataclass_fields__:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)


@contextmanager
def _quiet():
    prev = getattr(_local, "busy", False)
    _local.busy = True
    try:
        yield
    finally:
        _local.busy = prev


def _busy() -> bool:
    return getattr(_local, "busy", False)


def serialize_arg(value) -> str:
    """Readable string form of one logged argument."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, indent=2, default=repr)
        except (TypeError, ValueError):
            return repr(value)
    if isinstance(value, BaseException):
        return _exc_message(type(value), value)
    return repr(value)


def _exc_message(exc_type, exc) -> str:
    name = getattr(exc_type, "__name__", "Exception")
    try:
        text = str(exc)
    except Exception:
        text = ""
    return f"{name}: {text}" if text else name


def _exc_location(tb):
    """(source, line, column) of the innermost frame."""
    frames = traceback.extract_tb(tb) if tb is not None else []
    if not frames:
        return None, None, None
    last = frames[-1]
    col = getattr(last, "colno", None)
    return last.filename, last.lineno, (col + 1 if col is not None else None)


def _format_stack(exc_type, exc, tb) -> str:
    return "".join(traceback.format_exception(exc_type, exc, tb))


def _render_record(record: logging.LogRecord) -> tuple[str, list[str]]:
    raw = record.args
    if isinstance(raw, dict):
        raw = (raw,)
    parts = [serialize_arg(a) for a in (raw or ())]
    try:
        message = record.getMessage()
    except Exception:
        message = " ".join([serialize_arg(record.msg)] + parts)
    return message, [serialize_arg(record.msg)] + parts


def _conn_target(conn, url: str) -> str:
    if url.startswith(("http://", "https://")):
        return url
    https_cls = getattr(http.client, "HTTPSConnection", None)
    scheme = "https" if https_cls is not None and isinstance(conn, https_cls) else "http"
    return f"{scheme}://{conn.host}:{conn.port}{url}"


def _capture_record(spy: "Spy", record: logging.LogRecord):
    """Turn a WARNING/ERROR record into a console report."""
    if record.levelno < logging.WARNING or _busy():
        return
    if record.name == "heal" or record.name.startswith("heal."):
        return
    try:
        kind = ErrorKind.CONSOLE_ERROR if record.levelno >= logging.ERROR else ErrorKind.CONSOLE_WARNING
        message, args = _render_record(record)
        stack = _format_stack(*record.exc_info) if record.exc_info and record.exc_info[0] else None
        spy.report(
            kind, message,
            source=record.pathname, line=record.lineno,
            logger=record.name, args=args, stack=stack,
        )
    except Exception as e:
        log.debug("console capture failed: %s", e)


class Spy:
    """One installed set of interceptors plus the reporting path."""

    def __init__(self, post_message, config: SpyConfig | None = None, origin_url: str | None = None):
        self.post_message = post_message
        self.config = config or SpyConfig()
        self.origin_url = origin_url or (sys.argv[0] if sys.argv and sys.argv[0] else "<python>")
        self.agent = f"Python/{platform.python_version()} ({platform.system()}; {platform.machine()})"
        self.started_at = time.monotonic()
        self.installed = False
        self.reports_sent = 0
        self._originals = {}
        self._load_reported = False

    # --- Reporting ---

    def report(self, kind: ErrorKind, message: str, severity: Severity | None = None, **fields) -> bool:
        """Send one report. Never raises. Returns False if suppressed or undeliverable."""
        if _busy():
            return False
        with _quiet():
            try:
                payload = {
                    "kind": kind.value,
                    "message": message,
                    "severity": (severity or DEFAULT_SEVERITY[kind]).value,
                    "timestamp": int(time.time() * 1000),
                    "url": self.origin_url,
                    "agent": self.agent,
                }
                payload.update({k: v for k, v in fields.items() if v is not None})
                self.post_message({"type": ENVELOPE_TYPE, "payload": payload})
                self.reports_sent += 1
                return True
            except Exception as e:
                log.debug("could not report %s: %s", kind.value, e)
                return False

    def _report_exception(self, kind, exc_type, exc, tb, prefix="", **fields) -> bool:
        try:
            source, line, column = _exc_location(tb)
            return self.report(
                kind, prefix + _exc_message(exc_type, exc),
                source=source, line=line, column=column,
                stack=_format_stack(exc_type, exc, tb), **fields,
            )
        except Exception as e:
            log.debug("could not format exception: %s", e)
            return False

    def _report_network(self, method, target, exc) -> bool:
        reason = _exc_message(type(exc), exc)
        return self.report(
            ErrorKind.NETWORK_FAILURE,
            f"Network request failed: {method} {target}: {reason}",
            method=method, target=target, reason=reason,
        )

    # --- Installation ---

    def install(self):
        if self.installed:
            return
        self._hook_exceptions()
        self._hook_asyncio()
        if self.config.enable_console_capture:
            self._hook_console()
        if self.config.enable_network_error_capture:
            self._hook_network()
        self.installed = True
        self.report(
            ErrorKind.SYSTEM, "heal spy initialized", Severity.INFO,
            protocol=PROTOCOL_VERSION,
            consoleCapture=self.config.enable_console_capture,
            networkCapture=self.config.enable_network_error_capture,
            performanceMonitoring=self.config.enable_performance_monitoring,
        )

    def uninstall(self):
        """Restore everything install() replaced."""
        o = self._originals
        if "sys.excepthook" in o:
            sys.excepthook = o["sys.excepthook"]
        if "threading.excepthook" in o:
            threading.excepthook = o["threading.excepthook"]
        if "asyncio" in o:
            asyncio.BaseEventLoop.call_exception_handler = o["asyncio"]
        if "warnings" in o:
            warnings.showwarning = o["warnings"]
        if "logging" in o:
            logging.Logger.callHandlers = o["logging"]
        if "httpx" in o:
            httpx.Client.send, httpx.AsyncClient.send = o["httpx"]
        if "http.client" in o:
            conn = http.client.HTTPConnection
            conn.putrequest, conn.endheaders, conn.getresponse = o["http.client"]
        o.clear()
        self.installed = False

    def _hook_exceptions(self):
        spy = self
        original = sys.excepthook

        def excepthook(exc_type, exc, tb):
            if not issubclass(exc_type, KeyboardInterrupt):
                spy._report_exception(ErrorKind.SCRIPT, exc_type, exc, tb)
            original(exc_type, exc, tb)

        original_thread = threading.excepthook

        def thread_excepthook(args):
            if args.exc_type is not SystemExit:
                name = args.thread.name if args.thread is not None else None
                spy._report_exception(
                    ErrorKind.SCRIPT, args.exc_type, args.exc_value, args.exc_traceback, thread=name,
                )
            original_thread(args)

        self._originals["sys.excepthook"] = original
        self._originals["threading.excepthook"] = original_thread
        sys.excepthook = excepthook
        threading.excepthook = thread_excepthook

    def _hook_asyncio(self):
        spy = self
        original = asyncio.BaseEventLoop.call_exception_handler

        def call_exception_handler(loop, context):
            spy._report_async(context)
            # The default handler logs at ERROR; that line is the same fault
            with _quiet():
                return original(loop, context)

        self._originals["asyncio"] = original
        asyncio.BaseEventLoop.call_exception_handler = call_exception_handler

    def _report_async(self, context: dict):
        message = context.get("message") or "Unhandled exception in event loop"
        exc = context.get("exception")
        if exc is None:
            self.report(ErrorKind.UNHANDLED_REJECTION, f"Unhandled rejection: {message}", reason=message)
            return
        self._report_exception(
            ErrorKind.UNHANDLED_REJECTION, type(exc), exc, exc.__traceback__,
            prefix="Unhandled rejection: ", reason=message,
        )

    def _hook_console(self):
        spy = self
        original_call = logging.Logger.callHandlers

        def callHandlers(logger, record):
            _capture_record(spy, record)
            return original_call(logger, record)

        self._originals["logging"] = original_call
        logging.Logger.callHandlers = callHandlers

        original_show = warnings.showwarning

        def showwarning(message, category, filename, lineno, file=None, line=None):
            spy.report(
                ErrorKind.CONSOLE_WARNING, f"{category.__name__}: {message}",
                source=filename, line=lineno,
            )
            with _quiet():
                original_show(message, category, filename, lineno, file, line)

        self._originals["warnings"] = original_show
        warnings.showwarning = showwarning

    def _hook_network(self):
        spy = self

        # High level: httpx
        original_send = httpx.Client.send
        original_async_send = httpx.AsyncClient.send

        def send(client, request, *args, **kwargs):
            try:
                return original_send(client, request, *args, **kwargs)
            except httpx.RequestError as e:
                spy._report_network(request.method, str(request.url), e)
                raise

        async def async_send(client, request, *args, **kwargs):
            try:
                return await original_async_send(client, request, *args, **kwargs)
            except httpx.RequestError as e:
                spy._report_network(request.method, str(request.url), e)
                raise

        self._originals["httpx"] = (original_send, original_async_send)
        httpx.Client.send = send
        httpx.AsyncClient.send = async_send

        # Low level: http.client. Method and target are only known when the
        # request line is written; the failure surfaces later.
        conn_cls = http.client.HTTPConnection
        orig_putrequest = conn_cls.putrequest
        orig_endheaders = conn_cls.endheaders
        orig_getresponse = conn_cls.getresponse

        def fail(conn, exc):
            pending = getattr(conn, "_heal_request", None)
            conn._heal_request = None
            if pending is None:
                pending = ("GET", f"{conn.host}:{conn.port}")
            spy._report_network(pending[0], pending[1], exc)

        def putrequest(conn, method, url, *args, **kwargs):
            conn._heal_request = (method, _conn_target(conn, url))
            return orig_putrequest(conn, method, url, *args, **kwargs)

        def endheaders(conn, *args, **kwargs):
            try:
                return orig_endheaders(conn, *args, **kwargs)
            except Exception as e:
                fail(conn, e)
                raise

        def getresponse(conn, *args, **kwargs):
            try:
                resp = orig_getresponse(conn, *args, **kwargs)
            except Exception as e:
                fail(conn, e)
                raise
            conn._heal_request = None
            return resp

        self._originals["http.client"] = (orig_putrequest, orig_endheaders, orig_getresponse)
        conn_cls.putrequest = putrequest
        conn_cls.endheaders = endheaders
        conn_cls.getresponse = getresponse

    # --- Performance ---

    def page_loaded(self, load_time_ms: float | None = None) -> bool:
        """Mark load completion; reports once if slower than the threshold."""
        if not self.config.enable_performance_monitoring or self._load_reported:
            return False
        if load_time_ms is None:
            load_time_ms = (time.monotonic() - self.started_at) * 1000
        self._load_reported = True
        if load_time_ms <= self.config.slow_load_threshold_ms:
            return False
        return self.report(
            ErrorKind.PERFORMANCE,
            f"Slow page load: {load_time_ms:.0f}ms (threshold {self.config.slow_load_threshold_ms}ms)",
            loadTime=round(load_time_ms),
        )

    # --- Framework helpers ---

    def capture_boundary_error(self, error: BaseException, component_stack: str = "", framework: str = "boundary") -> bool:
        return self._report_exception(
            ErrorKind.SCRIPT, type(error), error, error.__traceback__,
            prefix="Boundary error: ", framework=framework,
            componentStack=component_stack or None,
        )

    def capture_handler_error(self, error: BaseException, info: str = "", framework: str = "handler") -> bool:
        return self._report_exception(
            ErrorKind.SCRIPT, type(error), error, error.__traceback__,
            prefix="Handler error: ", framework=framework, info=info or None,
        )


# --- Module API ---

def _target(context):
    return sys if context is None else context


def install_spy(post_message, config: SpyConfig | None = None, context=None, origin_url: str | None = None) -> Spy:
    """Install the spy once per context (default: this interpreter).

    A second call returns the spy already installed and changes nothing.
    """
    target = _target(context)
    existing = getattr(target, SPY_GUARD, None)
    if existing is not None:
        return existing
    spy = Spy(post_message, config, origin_url)
    setattr(target, SPY_GUARD, spy)
    spy.install()
    return spy


def installed_spy(context=None) -> Spy | None:
    return getattr(_target(context), SPY_GUARD, None)


def uninstall_spy(context=None):
    target = _target(context)
    spy = getattr(target, SPY_GUARD, None)
    if spy is None:
        return
    spy.uninstall()
    delattr(target, SPY_GUARD)


def capture_boundary_error(error: BaseException, component_stack: str = "", context=None) -> bool:
    """For error-boundary style wrappers in hosted code. No-op without a spy."""
    spy = installed_spy(context)
    if spy is None:
        return False
    return spy.capture_boundary_error(error, component_stack)


def capture_handler_error(error: BaseException, info: str = "", context=None) -> bool:
    """For framework-level error handlers in hosted code. No-op without a spy."""
    spy = installed_spy(context)
    if spy is None:
        return False
    return spy.capture_handler_error(error, info)
