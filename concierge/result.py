from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of one pipeline stage: either a value or an error with a code."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default


class ReplyFailedError(Exception):
    """A webhook item whose reply could not be produced."""

    def __init__(self, phone_number: str, result: Result):
        self.phone_number = phone_number
        self.error_code = result.error_code
        super().__init__(f"Reply for {phone_number} failed ({result.error_code}): {result.error}")
