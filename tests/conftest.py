import sys
import os
import asyncio
import threading
import time

import pytest

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from classifier import PreviewError
from generator import FilePatch, GenerationError, PatchGenerator
from protocol import ENVELOPE_TYPE, ErrorKind, Severity
from spy import uninstall_spy
from transport import ListTransport


@pytest.fixture(autouse=True)
def _no_leftover_spy():
    """Every test starts and ends without interceptors in this interpreter."""
    uninstall_spy()
    yield
    uninstall_spy()


@pytest.fixture
def sink(monkeypatch):
    """ListTransport for a spy under test.

    The interpreter's exception hooks are swapped for recorders first, so
    the spy's pass-through lands in sink.passed and the spy is removed
    before the real hooks come back.
    """
    passed = []
    monkeypatch.setattr(sys, "excepthook", lambda *a: passed.append(("sys", a)))
    monkeypatch.setattr(threading, "excepthook", lambda args: passed.append(("thread", args)))
    transport = ListTransport()
    transport.passed = passed
    yield transport
    uninstall_spy()


def make_error(message="NameError: name 'foo' is not defined", kind=ErrorKind.SCRIPT, **overrides):
    defaults = dict(
        kind=kind,
        message=message,
        severity=Severity.ERROR,
        timestamp=time.time(),
        source="app.py",
        line=3,
    )
    defaults.update(overrides)
    return PreviewError(**defaults)


def envelope(kind="script", message="boom", **fields):
    """A well-formed envelope as the spy would send it."""
    payload = {"kind": kind, "message": message, "severity": "error", "timestamp": int(time.time() * 1000)}
    payload.update(fields)
    return {"type": ENVELOPE_TYPE, "payload": payload}


SAMPLE_FILES = {
    "app.py": "from util import greet\n\nprint(greet(foo))\n",
    "util.py": "def greet(name):\n    return f'hello {name}'\n",
}

FIXED_APP = "from util import greet\n\nprint(greet('world'))\n"


class ScriptedGenerator(PatchGenerator):
    """Returns (or raises) the queued results in order.

    Each result is a list of patches, an exception instance, or the string
    "hang" to block until cancelled.
    """

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def generate(self, error, context):
        self.calls.append((error, context))
        result = self.results.pop(0) if self.results else GenerationError("no scripted result left")
        if result == "hang":
            await asyncio.Event().wait()
        if isinstance(result, BaseException):
            raise result
        return result


def fix_app(content=FIXED_APP):
    return [FilePatch(path="app.py", new_content=content)]
