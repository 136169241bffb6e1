# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations


class HarnessError(Exception):
    pass


class TransportError(HarnessError):
    """Connection refused/reset, peer went away, socket-level failures."""
    pass


class FrameError(TransportError):
    """Malformed length prefix or stream closed mid-token."""
    pass


class ProtocolViolation(HarnessError):
    """Unexpected flag combination or token out of sequence. `code` names the failure code."""

    def __init__(self, message: str, *, flags: int | None = None, code: str = "ERR_UNEXPECTED_TOKEN") -> None:
        super().__init__(message)
        self.flags = flags
        self.code = code


class ProviderFailure(HarnessError):
    """A security provider call returned a failure status."""

    def __init__(self, operation: str, status, mech: str | None = None) -> None:
        self.operation = operation
        self.status = status
        self.mech = mech
        super().__init__(self._message())

    def _message(self) -> str:
        msg = f"error {self.operation}: {self.status.describe()}"
        if self.mech:
            msg += f" (mech {self.mech})"
        return msg


class ConfigError(HarnessError):
    """Unparseable identifier, missing required argument, bad config file."""
    pass
