"""Exit-code contract and exception types for the looper client.

Protocol violations (``ProtocolError`` and subclasses) are raised to the
immediate caller and never swallowed by the replica layer.  Everything else
that can go wrong while the replica is live is either logged and skipped
(inbound updates) or logged only (outgoing requests).
"""
from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes.

    0 — success
    1 — user error (unknown entity, rejected create, protocol violation)
    3 — server / network error
    """

    SUCCESS = 0
    USER_ERROR = 1
    NETWORK_ERROR = 3


class LooperClientError(Exception):
    """Base exception for looper client errors."""


class ProtocolError(LooperClientError):
    """The server sent data that violates the wire contract."""


class MissingPropertyError(ProtocolError):
    """A required property is absent from a full entity representation."""

    def __init__(self, prop: str) -> None:
        super().__init__(f"Property '{prop}' is missing")
        self.prop = prop


class MalformedPatchError(ProtocolError):
    """A patch entry has no usable integer ``id`` or has mistyped fields."""


class EntityCreationError(LooperClientError):
    """The server refused to create a synth, chain or take."""

    def __init__(self, what: str, status_code: int) -> None:
        super().__init__(f"Could not create {what} (HTTP {status_code})")
        self.what = what
        self.status_code = status_code


class EntityNotFoundError(LooperClientError, LookupError):
    """A synth, chain or take id is not present in the local replica."""
