"""
Error classification - maps any failure to the subsystem that failed.

Classification reads only the declared CauseCategory tag of a cause,
never its message text, so the same category always yields the same
kind. Repository operations return Success or Failure; callers above
the repository only ever see RepositoryError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

from cropscan.models import CauseCategory


class RepositoryErrorKind(str, Enum):
    """Which stage or subsystem failed. Value is the conventional label."""
    NETWORK = "Network error"
    DATABASE = "Database error"
    STORAGE = "Storage error"
    VALIDATION = "Validation error"
    ANALYSIS = "Analysis error"
    UNKNOWN = "Unexpected error"

    @property
    def label(self) -> str:
        return self.value


_KIND_BY_CATEGORY: dict[CauseCategory, RepositoryErrorKind] = {
    CauseCategory.UNRESOLVED_HOST: RepositoryErrorKind.NETWORK,
    CauseCategory.CONNECTION_TIMEOUT: RepositoryErrorKind.NETWORK,
    CauseCategory.NETWORK_IO: RepositoryErrorKind.NETWORK,
    CauseCategory.STORE_FAILURE: RepositoryErrorKind.DATABASE,
    CauseCategory.FILE_MISSING: RepositoryErrorKind.STORAGE,
    CauseCategory.FILE_IO: RepositoryErrorKind.STORAGE,
    CauseCategory.ACCESS_DENIED: RepositoryErrorKind.STORAGE,
    CauseCategory.ILLEGAL_ARGUMENT: RepositoryErrorKind.VALIDATION,
    CauseCategory.ILLEGAL_STATE: RepositoryErrorKind.VALIDATION,
    CauseCategory.ANALYSIS_FAILURE: RepositoryErrorKind.ANALYSIS,
    CauseCategory.UNRECOGNIZED: RepositoryErrorKind.UNKNOWN,
}


def category_of(cause: BaseException | CauseCategory | None) -> CauseCategory:
    """Declared category of a cause. Untagged causes are UNRECOGNIZED."""
    if isinstance(cause, CauseCategory):
        return cause
    category = getattr(cause, "category", None)
    if isinstance(category, CauseCategory):
        return category
    return CauseCategory.UNRECOGNIZED


def classify(cause: BaseException | CauseCategory | None) -> RepositoryErrorKind:
    """Total, deterministic mapping from a cause to a RepositoryErrorKind."""
    return _KIND_BY_CATEGORY.get(category_of(cause), RepositoryErrorKind.UNKNOWN)


class RepositoryError(Exception):
    """Classified failure: kind, display message, and the original cause."""

    def __init__(
        self,
        kind: RepositoryErrorKind,
        message: str,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause

    @classmethod
    def from_cause(cls, cause: BaseException) -> "RepositoryError":
        kind = classify(cause)
        detail = str(cause) or type(cause).__name__
        return cls(kind, f"{kind.label}: {detail}", cause)

    def __repr__(self) -> str:
        return f"RepositoryError(kind={self.kind.name}, message={self.message!r})"


# --- Results ---

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def is_success(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    error: RepositoryError

    @property
    def is_success(self) -> bool:
        return False


RepositoryResult = Union[Success[T], Failure]
