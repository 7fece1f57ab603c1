"""
Line-buffered patch decoder for generation streams.

Buffers streaming bytes until newlines, parses each complete line as one
patch, and skips anything that isn't one with a warning.
"""

from __future__ import annotations

import codecs
import json
import logging

from treeengine.kernel.types import Patch

logger = logging.getLogger(__name__)

# Lines models wrap around JSONL output; not patches, not worth a warning
_QUIET_PREFIXES: tuple[str, ...] = ("//", "```")


class LineBuffer:
    """
    Splits an arbitrarily-chunked byte or text stream into complete lines.

    Bytes go through an incremental UTF-8 decoder, so a multi-byte character
    split across two chunks comes out whole. The last, possibly incomplete,
    fragment stays buffered until the next feed or until drain().
    """

    def __init__(self) -> None:
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def push(self, chunk: bytes | str) -> list[str]:
        """Add a chunk, return the lines it completed (terminators stripped)."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.buffer += chunk
        if "\n" not in self.buffer:
            return []
        *lines, self.buffer = self.buffer.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def drain(self) -> str:
        """Return whatever is left (end of stream) and reset."""
        rest = self.buffer + self._decoder.decode(b"", final=True)
        self.buffer = ""
        self._decoder.reset()
        return rest.removesuffix("\r")


class PatchLineDecoder:
    """
    Decodes a patch stream: one JSON patch object per line.

    One instance per open stream. Patches come back in exactly the order their
    lines arrived, across all feed() calls. Lines that don't parse are skipped
    and counted, never raised.
    """

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self.lines_seen = 0
        self.patches_decoded = 0
        self.lines_skipped = 0

    @property
    def buffer(self) -> str:
        return self._lines.buffer

    def feed(self, chunk: bytes | str) -> list[Patch]:
        """
        Feed a chunk (may be partial), return any complete decoded patches.

        Args:
            chunk: Raw bytes or text from the stream

        Returns:
            Patches for each complete, well-formed line, in line order
        """
        patches = []
        for line in self._lines.push(chunk):
            patch = self._decode_line(line)
            if patch is not None:
                patches.append(patch)
        return patches

    def flush(self) -> Patch | None:
        """
        Parse any content left in the buffer as a final line.

        Call this after the stream ends to handle output with no trailing newline.
        """
        rest = self._lines.drain()
        if not rest.strip():
            return None
        return self._decode_line(rest)

    def _decode_line(self, line: str) -> Patch | None:
        stripped = line.strip()
        if not stripped:
            return None
        self.lines_seen += 1

        if stripped.startswith(_QUIET_PREFIXES):
            self.lines_skipped += 1
            logger.debug("line_decoder: skipping non-patch line: %r", stripped[:200])
            return None

        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            self.lines_skipped += 1
            logger.warning("line_decoder: skipping malformed line: %r", stripped[:200])
            return None

        patch = Patch.from_dict(parsed) if isinstance(parsed, dict) else None
        if patch is None:
            self.lines_skipped += 1
            logger.warning("line_decoder: skipping line without op/path: %r", stripped[:200])
            return None

        self.patches_decoded += 1
        return patch


def decode_all(text: str) -> list[Patch]:
    """Decode a complete block of JSONL output (e.g. a finished generator response)."""
    decoder = PatchLineDecoder()
    patches = decoder.feed(text)
    final = decoder.flush()
    if final is not None:
        patches.append(final)
    return patches
