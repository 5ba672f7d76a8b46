"""Error kinds and the explicit result type returned by collaborators.

Configuration problems are fatal and raised as :class:`ConfigurationInvalid`.
Everything that can go wrong while the engine is running (missing data,
rejected orders, failed history queries) travels back to the controller as a
:class:`Result` so that it alone decides whether to skip or continue.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    CONFIGURATION_INVALID = "configuration_invalid"
    DATA_UNAVAILABLE = "data_unavailable"
    EXECUTION_REJECTED = "execution_rejected"
    HISTORY_QUERY_FAILED = "history_query_failed"


class ConfigurationInvalid(ValueError):
    """Raised at setup when one or more parameters are out of range."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a collaborator call.

    ``error`` is ``None`` on success.  ``message`` carries the broker /
    provider text (retcode, exception string) for the operator log.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, message: str = "") -> "Result":
        return cls(error=error, message=message)


@dataclass(frozen=True)
class CycleError:
    """A recoverable error recorded by the controller during one cycle."""

    kind: ErrorKind
    message: str = ""
