"""Word-boundary buffering for streamed generator output.

Fragments arrive at arbitrary byte positions, so a directive such as
``[choice]`` can be split across two fragments. StreamBuffer only releases
text up to and including the last whitespace it has seen; the trailing partial
word stays pending until more text or the end of the stream arrives.

The buffer never looks at tags. Tag extraction runs once on ``raw`` after the
stream ends.
"""

from __future__ import annotations

import re

_LAST_WHITESPACE = re.compile(r"\s(?=\S*\Z)")


class StreamBuffer:
    def __init__(self) -> None:
        self._committed: list[str] = []
        self._pending = ""

    def feed(self, fragment: str) -> str:
        """Add a fragment; return the newly committed text ('' if none)."""
        if not fragment:
            return ""
        self._pending += fragment
        m = _LAST_WHITESPACE.search(self._pending)
        if m is None:
            return ""
        cut = m.end()
        commit, self._pending = self._pending[:cut], self._pending[cut:]
        self._committed.append(commit)
        return commit

    def flush(self) -> str:
        """Commit whatever is still pending. Called once the stream has ended."""
        commit, self._pending = self._pending, ""
        if commit:
            self._committed.append(commit)
        return commit

    def reset(self) -> None:
        self._committed.clear()
        self._pending = ""

    @property
    def committed(self) -> str:
        return "".join(self._committed)

    @property
    def pending(self) -> str:
        return self._pending

    @property
    def raw(self) -> str:
        """Everything received so far, committed or not."""
        return self.committed + self._pending
