# MIT License © 2025 Motohiro Suzuki
"""
protocol/result.py

Outcome of one initiator or acceptor session.

A failed session still carries the report gathered before the failure
(`value`), so drivers can log counts and audit fields for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

from gssharness.protocol.failure import Failure

R = TypeVar("R")


@dataclass(frozen=True)
class Result(Generic[R]):
    value: Optional[R] = None
    failure: Optional[Failure] = None

    @classmethod
    def Ok(cls, report: R) -> "Result[R]":
        return cls(value=report)

    @classmethod
    def Err(cls, failure: Failure, partial: Optional[R] = None) -> "Result[R]":
        return cls(value=partial, failure=failure)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> R:
        if self.failure is not None:
            raise RuntimeError(f"session failed: {self.failure.describe()}")
        return self.value

    def unwrap_err(self) -> Failure:
        if self.failure is None:
            raise RuntimeError("session succeeded; there is no failure")
        return self.failure

    def describe(self) -> str:
        return "ok" if self.failure is None else self.failure.describe()

    def audit_fields(self) -> Dict[str, Any]:
        """Outcome fields for an audit record; failure detail is left out."""
        rec: Dict[str, Any] = {"ok": self.ok}
        if self.failure is not None:
            f = self.failure.redacted()
            rec.update(
                layer=f.layer.value,
                phase=f.phase.value,
                code=f.code.value,
                major=f.major,
                minor=f.minor,
            )
        return rec
