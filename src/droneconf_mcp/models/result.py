"""Outcome of a caller-facing operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class OperationResult:
    """Result plus a human-readable status message.

    Truthy when the operation succeeded. ``error`` holds the exception from
    :mod:`droneconf_mcp.exceptions` that explains a failure.
    """

    success: bool
    message: str = ""
    error: Exception | None = None
    value: Any = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, message: str = "", value: Any = None) -> OperationResult:
        return cls(success=True, message=message, value=value)

    @classmethod
    def fail(cls, error: Exception, message: str = "") -> OperationResult:
        return cls(success=False, message=message or str(error), error=error)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.error is not None:
            d["error"] = type(self.error).__name__
            kind = getattr(self.error, "kind", None)
            if kind is not None:
                d["kind"] = kind.value
            code = getattr(self.error, "result_code", None)
            if code is not None:
                d["result_code"] = code
        if self.value is not None:
            d["value"] = self.value
        return d
