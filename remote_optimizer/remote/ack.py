"""Launch acknowledgement protocol.

A detached launch appends ``printf '%s\\n' '<token>'`` to the command. The
launch counts as accepted only once the token appears on stdout as a whole
line of its own, which guarantees the shell got past every preceding
statement under ``set -euo pipefail``.
"""

import re
import secrets
import string
import time

ACK_TOKEN_PREFIX = "__SC_REMOTE_OPT_ACK__"

_BASE36 = string.digits + string.ascii_lowercase
_TOKEN_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def build_ack_token(now_ms: int | None = None, rand: str | None = None) -> str:
    """Build a unique token safe to embed in single quotes in a shell command."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if rand is None:
        rand = "".join(secrets.choice(_BASE36) for _ in range(8))
    return _TOKEN_UNSAFE.sub("", f"{ACK_TOKEN_PREFIX}{_to_base36(now_ms)}_{rand}")


def append_ack(command: str, token: str) -> str:
    return f"{command}\nprintf '%s\\n' '{token}'\n"


class AckScanner:
    """Watches a stdout stream for the acknowledgement token.

    Only an exact whole-line match resolves; the token appearing as a prefix
    of a longer line, or embedded inside other output, does not. Resolution
    happens at most once. Output other than the token line is retained for
    error reporting.
    """

    def __init__(self, token: str):
        self.token = token
        self.acknowledged = False
        self._pending = ""
        self._lines: list[str] = []

    def feed(self, chunk: str) -> bool:
        """Consume a stdout chunk. Returns True only on the call that resolves."""
        if self.acknowledged or not chunk:
            return False
        self._pending += chunk
        *complete, self._pending = self._pending.split("\n")
        for line in complete:
            if self._matches(line):
                self.acknowledged = True
                return True
            self._lines.append(line)
        return False

    def finish(self) -> bool:
        """Flush a trailing partial line once the stream has closed."""
        if self.acknowledged:
            return False
        remainder, self._pending = self._pending, ""
        if remainder and self._matches(remainder):
            self.acknowledged = True
            return True
        if remainder:
            self._lines.append(remainder)
        return False

    @property
    def output(self) -> str:
        """Stdout seen so far with the token line removed."""
        parts = list(self._lines)
        if self._pending:
            parts.append(self._pending)
        return "\n".join(parts)

    def _matches(self, line: str) -> bool:
        return line.rstrip("\r") == self.token
