"""Verification outcome accumulated across a read-back pass."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class VerifyResult:
    """
    Result of comparing device memory against an image.

    A pass starts valid; every mismatch increments ``errors`` while
    ``first_error_addr`` keeps the address of the first one.
    """
    errors: int = 0
    first_error_addr: Optional[int] = None

    @classmethod
    def valid(cls) -> "VerifyResult":
        return cls()

    @classmethod
    def invalid(cls, errors: int, first_error_addr: int) -> "VerifyResult":
        return cls(errors=errors, first_error_addr=first_error_addr)

    @property
    def is_valid(self) -> bool:
        return self.errors == 0

    def mark_error(self, addr: int) -> "VerifyResult":
        """Return the result with one more mismatch at ``addr``."""
        if self.is_valid:
            return VerifyResult(errors=1, first_error_addr=addr)
        return VerifyResult(errors=self.errors + 1, first_error_addr=self.first_error_addr)

    def __str__(self) -> str:
        if self.is_valid:
            return "valid"
        return f"invalid ({self.errors} errors, starting at {self.first_error_addr:#06x})"
