from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ResultError(Exception):
    def __init__(self, error: Optional[str], code: Optional[str]):
        self.error = error
        self.code = code
        super().__init__(f"{code}: {error}")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", **details: Any) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, details=details)

    def unwrap(self) -> T:
        """Return the value or raise ResultError for a failed result."""
        if not self.ok:
            raise ResultError(self.error, self.error_code)
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
