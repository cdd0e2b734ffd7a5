"""Newline framing for the subprocess stdout byte stream."""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import ParseError

logger = logging.getLogger(__name__)

# Longest slice of a bad line echoed into the log
PREVIEW_CHARS = 200


def decode_line(line: bytes) -> Dict[str, Any]:
    """
    Decode one complete line into a JSON object.

    Args:
        line: Line bytes without the trailing newline

    Returns:
        Decoded JSON object

    Raises:
        ParseError: If the line is not UTF-8, not JSON, or not a JSON object
    """
    try:
        data = json.loads(line.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise ParseError(f"Invalid UTF-8 from subprocess: {e}")
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON from subprocess: {e}")

    if not isinstance(data, dict):
        raise ParseError(f"Expected JSON object, got {type(data).__name__}")
    return data


class LineFramer:
    """
    Reassembles newline-delimited JSON messages from arbitrary chunks.

    Chunks are split on b"\\n" before decoding, so a multi-byte UTF-8
    character cut across two reads is joined back before it is decoded.
    The unterminated fragment of the last chunk is held in ``tail`` until
    the rest of it arrives.

    A line that fails to parse is logged and dropped; it never ends the
    stream or holds back the lines after it.
    """

    def __init__(self, on_error: Optional[Callable[[ParseError], None]] = None):
        """
        Initialize framer.

        Args:
            on_error: Optional hook called once per discarded line
        """
        self._buffer = bytearray()
        self._on_error = on_error
        self.parse_errors = 0

    @property
    def tail(self) -> bytes:
        """Unterminated fragment waiting for its newline."""
        return bytes(self._buffer)

    def split_lines(self, chunk: bytes) -> List[bytes]:
        """
        Append chunk and return every line it completes.

        Trailing carriage returns are stripped; blank lines are skipped.
        """
        self._buffer.extend(chunk)
        if b"\n" not in chunk:
            return []

        *complete, rest = bytes(self._buffer).split(b"\n")
        self._buffer = bytearray(rest)

        lines = []
        for line in complete:
            if line.endswith(b"\r"):
                line = line[:-1]
            if line.strip():
                lines.append(line)
        return lines

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """
        Append chunk and return the JSON objects of every completed line.

        Args:
            chunk: Raw bytes read from the subprocess

        Returns:
            Decoded objects, in stream order
        """
        messages = []
        for line in self.split_lines(chunk):
            try:
                messages.append(decode_line(line))
            except ParseError as e:
                self.parse_errors += 1
                preview = line[:PREVIEW_CHARS].decode("utf-8", errors="replace")
                logger.warning(f"Dropping unparseable line from subprocess: {e} (line: {preview!r})")
                if self._on_error is not None:
                    self._on_error(e)
        return messages

    def finish(self) -> bytes:
        """Discard and return the fragment left at end of stream."""
        leftover = self.tail
        self.reset()
        if leftover.strip():
            logger.warning(f"Subprocess stream ended mid-line, discarding {len(leftover)} bytes")
        return leftover

    def reset(self) -> None:
        self._buffer = bytearray()
