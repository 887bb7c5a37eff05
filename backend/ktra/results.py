from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

class Status(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    FAILED = "failed"

@dataclass
class Result:
    """Outcome of a core operation; wording for end users is left to the caller."""
    status: Status
    reason: str = ""
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(Status.OK, value=value)

    @classmethod
    def invalid(cls, reason: str) -> "Result":
        return cls(Status.INVALID, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "Result":
        return cls(Status.FAILED, reason=reason)
