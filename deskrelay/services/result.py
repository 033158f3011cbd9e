from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from deskrelay.services.errors import DeskRelayError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
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

    @staticmethod
    def from_error(exc: DeskRelayError) -> "Result[T]":
        return Result(ok=False, error=exc.message, error_code=exc.code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    @property
    def rejected(self) -> bool:
        """Failure caused by the caller (bad input, illegal transition), not by infrastructure."""
        return not self.ok and self.error_code in REJECTION_CODES


REJECTION_CODES = {
    "validation_error",
    "invalid_transition",
    "permission_denied",
    "not_found",
    "agent_unavailable",
}
