# MIT License © 2025 Motohiro Suzuki
"""
protocol/audit.py

Two outputs besides the console:

- TraceLog  : human-readable detail stream (acceptor --logfile), with hex
              dumps of tokens when verbose.
- emit_audit: one JSON line per finished session. Records carry outcome
              metadata only; never plaintext, tokens or key material.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


def hex_dump(data: bytes) -> str:
    """16 bytes per line, space separated, newline terminated."""
    b = bytes(data)
    lines = [" ".join(f"{x:02x}" for x in b[i : i + 16]) for i in range(0, len(b), 16)]
    return "".join(line + "\n" for line in lines)


def render_message(payload: bytes) -> str:
    """Printable messages are quoted; anything else is dumped."""
    p = bytes(payload)
    if len(p) >= 2 and all(32 <= c < 127 for c in p[:2]):
        return '"' + p.decode("utf-8", errors="replace") + '"\n'
    return "\n" + hex_dump(p)


class TraceLog:
    def __init__(self, stream: Optional[TextIO] = None, *, verbose: bool = False) -> None:
        self._stream = stream
        self.verbose = verbose
        self._owned = False

    @classmethod
    def open(cls, path: Optional[str], *, verbose: bool = False) -> "TraceLog":
        if not path or path in ("-", "/dev/stdout"):
            return cls(sys.stdout, verbose=verbose)
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        t = cls(p.open("a", encoding="utf-8"), verbose=verbose)
        t._owned = True
        return t

    @property
    def enabled(self) -> bool:
        return self._stream is not None

    def line(self, text: str) -> None:
        if self._stream is None:
            return
        self._stream.write(text + "\n")
        self._stream.flush()

    def detail(self, text: str) -> None:
        """Only when verbose."""
        if self.verbose:
            self.line(text)

    def dump(self, title: str, data: bytes) -> None:
        if self._stream is None or not self.verbose:
            return
        self._stream.write(f"{title}\n{hex_dump(data)}")
        self._stream.flush()

    def message(self, payload: bytes) -> None:
        if self._stream is None:
            return
        self._stream.write("Received message: " + render_message(payload))
        self._stream.flush()

    def close(self) -> None:
        if self._owned and self._stream is not None:
            self._stream.close()
            self._stream = None


def emit_audit(path: Optional[str], record: Dict[str, Any]) -> None:
    if not (isinstance(path, str) and path.strip()):
        return
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    rec = {"ts": round(time.time(), 3)}
    rec.update(record)
    with p.open("a", encoding="utf-8") as f:
        json.dump(rec, f, ensure_ascii=False)
        f.write("\n")
