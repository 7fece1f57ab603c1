"""
Decoder for the ensemble channel's tagged event records.

The channel is server-sent-event framed (`data: {...}` lines). Bare JSON
lines are accepted too. Records are validated into the ensemble event models;
anything that doesn't parse or validate is logged and skipped.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from treestream.models.ensemble import EnsembleEvent, parse_event
from treestream.services.line_decoder import LineBuffer

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class EventStreamDecoder:
    """Splits a chunked SSE byte stream into validated ensemble events, in order."""

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self.records_skipped = 0

    def feed(self, chunk: bytes | str) -> list[EnsembleEvent]:
        events = []
        for line in self._lines.push(chunk):
            event = self._decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> EnsembleEvent | None:
        return self._decode_line(self._lines.drain())

    def _decode_line(self, line: str) -> EnsembleEvent | None:
        line = line.strip()
        if not line:
            return None

        if line.startswith("data:"):
            data = line[5:].strip()
        elif line.startswith("{"):
            data = line
        else:
            # event:, id:, retry: and ":" comment lines carry nothing we use
            return None

        if not data or data == DONE_SENTINEL:
            return None

        try:
            return parse_event(json.loads(data))
        except json.JSONDecodeError:
            self.records_skipped += 1
            logger.warning("event_stream: skipping malformed record: %r", data[:200])
        except ValidationError as e:
            self.records_skipped += 1
            logger.warning("event_stream: skipping invalid record: %r (%s)", data[:200], e.error_count())
        return None
