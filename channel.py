"""Host side of the sandbox -> host event channel.

Every inbound message is untrusted. The envelope's type tag is checked
before anything in the payload is looked at; anything malformed is
counted and dropped without raising.
"""

import asyncio
import json
import logging

from pydantic import BaseModel, ValidationError

from protocol import ENVELOPE_TYPE

log = logging.getLogger("heal.channel")


class Envelope(BaseModel):
    type: str
    payload: dict


def parse_envelope(message, tag: str = ENVELOPE_TYPE) -> dict | None:
    """Return the payload of a well-formed envelope, or None.

    Accepts a dict, JSON text or JSON bytes.
    """
    if isinstance(message, (bytes, bytearray)):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except (ValueError, RecursionError):
            return None
    if not isinstance(message, dict) or message.get("type") != tag:
        return None
    try:
        envelope = Envelope.model_validate(message)
    except ValidationError:
        return None
    return envelope.payload


class EventChannel:
    """Validates envelopes and hands payloads to subscribers synchronously."""

    def __init__(self, tag: str = ENVELOPE_TYPE):
        self.tag = tag
        self.received = 0
        self.accepted = 0
        self.rejected = 0
        self.closed = False
        self._subscribers = []

    def subscribe(self, fn):
        self._subscribers.append(fn)

    def unsubscribe(self, fn):
        if fn in self._subscribers:
            self._subscribers.remove(fn)

    def deliver(self, message) -> bool:
        """Feed one raw message. Returns True if it passed the envelope check."""
        if self.closed:
            return False
        self.received += 1
        payload = parse_envelope(message, self.tag)
        if payload is None:
            self.rejected += 1
            log.debug("rejected malformed message")
            return False
        self.accepted += 1
        for fn in list(self._subscribers):
            try:
                fn(payload)
            except Exception:
                log.exception("channel subscriber failed")
        return True

    async def pump(self, reader: asyncio.StreamReader):
        """Deliver JSON lines from a stream until EOF."""
        while not self.closed:
            try:
                line = await reader.readline()
            except ValueError:
                # Oversized line; readline() has already discarded it
                self.received += 1
                self.rejected += 1
                continue
            if not line:
                break
            line = line.strip()
            if line:
                self.deliver(line)

    def close(self):
        self.closed = True
        self._subscribers.clear()

    def stats(self) -> dict:
        return {"received": self.received, "accepted": self.accepted, "rejected": self.rejected}
