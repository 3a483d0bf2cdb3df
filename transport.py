"""Sandbox-side transports for error envelopes.

One direction only: the sandbox posts, the host never answers. A
transport is anything with post_message(envelope); the spy treats every
transport as unreliable and swallows its failures.
"""

import json
import os
import threading
from abc import ABC, abstractmethod

import httpx


class Transport(ABC):
    """Override this to ship envelopes over a socket, a queue, whatever."""

    @abstractmethod
    def post_message(self, envelope: dict) -> None:
        ...

    def close(self):
        pass

    def __call__(self, envelope: dict) -> None:
        self.post_message(envelope)


class PipeTransport(Transport):
    """Default for child processes. JSON lines on an inherited file descriptor."""

    def __init__(self, fd: int | None = None, stream=None):
        if stream is None:
            if fd is None:
                raise ValueError("PipeTransport needs an fd or a stream")
            stream = os.fdopen(fd, "w", encoding="utf-8", buffering=1)
        self._stream = stream
        self._lock = threading.Lock()

    def post_message(self, envelope: dict) -> None:
        line = json.dumps(envelope, default=str, separators=(",", ":"))
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def close(self):
        with self._lock:
            try:
                self._stream.close()
            except OSError:
                pass


class HTTPTransport(Transport):
    """Posts envelopes to a heal server session."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        session_id: str = "",
        timeout: float = 2.0,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}/sessions/{self.session_id}/events"

    def post_message(self, envelope: dict) -> None:
        resp = self._client.post(self.url, json=envelope)
        resp.raise_for_status()

    def close(self):
        self._client.close()


class ListTransport(Transport):
    """Collects envelopes in memory. Used in-process and in tests."""

    def __init__(self):
        self.messages: list[dict] = []

    def post_message(self, envelope: dict) -> None:
        self.messages.append(envelope)

    def payloads(self, kind: str | None = None) -> list[dict]:
        out = [m["payload"] for m in self.messages]
        if kind is not None:
            out = [p for p in out if p.get("kind") == kind]
        return out
