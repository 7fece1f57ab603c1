"""
Errors that escape the stream layer.

Parse-level problems (a malformed line, a patch aimed at a node that doesn't
exist yet) never get here: the decoder and applier recover locally. Transport
failures and protocol-level error events reach the caller, as does any
unexpected failure inside a session.
Cancellation is a terminal status, not an error.
"""

from __future__ import annotations


class StreamError(Exception):
    """Base class for errors surfaced through a session's done future."""

    pass


class NetworkFailure(StreamError):
    """The inbound stream failed mid-flight (transport error or non-2xx status)."""

    pass


class EnsembleSourceError(StreamError):
    """The ensemble channel reported an error event. Fails the whole run."""

    def __init__(self, message: str, source: str | None = None):
        super().__init__(message if source is None else f"source {source}: {message}")
        self.source = source
