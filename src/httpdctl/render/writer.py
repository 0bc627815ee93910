"""Line-oriented writer for configuration files with fixed ordering."""
from __future__ import annotations

from io import StringIO


class ConfWriter:
    """Accumulate configuration text.

    ``write`` appends verbatim; ``line`` appends its parts followed by a
    newline. Both return the writer so calls can be chained.
    """

    def __init__(self) -> None:
        self._buffer = StringIO()

    def write(self, *parts: str) -> ConfWriter:
        for part in parts:
            self._buffer.write(part)
        return self

    def line(self, *parts: str) -> ConfWriter:
        self.write(*parts)
        self._buffer.write("\n")
        return self

    def getvalue(self) -> str:
        return self._buffer.getvalue()

    def to_bytes(self) -> bytes:
        return self.getvalue().encode("utf-8")


__all__ = ["ConfWriter"]
