"""Separating real command output from shell noise.

Two framings are used on the wire. In raw mode the remote shell prints a
marker on stdout and stderr before the command runs; everything before the
marker is login banner noise. In pty mode the terminal echoes input and
merges streams, so the command's output is cut out from between two
delimiters once the channel has closed.
"""

from __future__ import annotations

import re

from vmcomm.errors import SSHInvalidShell

CMD_GARBAGE_MARKER = b"41e57d38-b4f7-4e46-9c38-13873d338b86-vagrant-ssh"
PTY_DELIM_START = b"bccbb768c119429488cfd109aacea6b5-pty"
PTY_DELIM_END = b"bccbb768c119429488cfd109aacea6b5-pty"

# Pre-marker noise tolerated before the shell is declared broken.
MAX_NOISE_BYTES = 1024 * 1024

_ANSI_ESCAPE = re.compile(
    rb"(?:\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_])"
)

_PTY_OUTPUT = re.compile(
    rb".*" + re.escape(PTY_DELIM_START) + rb"(.*?)" + re.escape(PTY_DELIM_END),
    re.DOTALL,
)


def strip_ansi(data: bytes) -> bytes:
    """Remove terminal escape sequences such as clear-screen."""
    return _ANSI_ESCAPE.sub(b"", data)


class MarkerMatcher:
    """Incremental search for a marker across arbitrary read boundaries.

    Until the marker is seen only the last ``len(marker) - 1`` bytes are kept,
    which is enough to catch a marker split over two reads. After the marker,
    ``feed`` returns data unchanged.
    """

    def __init__(self, marker: bytes = CMD_GARBAGE_MARKER, limit: int = MAX_NOISE_BYTES) -> None:
        self.marker = marker
        self.limit = limit
        self.found = False
        self._tail = b""
        self._discarded = 0

    def feed(self, data: bytes) -> bytes:
        """Return the part of ``data`` that belongs to the command output.

        Raises:
            SSHInvalidShell: If more than ``limit`` bytes arrive without the
                marker.
        """
        if self.found:
            return data

        buffer = self._tail + data
        index = buffer.find(self.marker)
        if index >= 0:
            self.found = True
            self._tail = b""
            return buffer[index + len(self.marker):]

        keep = len(self.marker) - 1
        cut = max(0, len(buffer) - keep)
        self._discarded += cut
        self._tail = buffer[cut:]
        if self._discarded > self.limit:
            raise SSHInvalidShell(
                "No output marker within {limit} bytes of shell output.",
                limit=self.limit,
            )
        return b""


def extract_pty_output(transcript: bytes) -> bytes:
    """Return the output between the last complete pair of delimiters.

    Raises:
        SSHInvalidShell: If either delimiter is missing from the transcript.
    """
    if PTY_DELIM_START not in transcript or PTY_DELIM_END not in transcript:
        raise SSHInvalidShell()
    match = _PTY_OUTPUT.search(transcript)
    if match is None:
        return b""
    return match.group(1)
