"""Hooks invoked when a job errors or panics."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class ErrorHandlerResult:
    """Outcome of an error handler; can cancel the job outright."""

    set_cancelled: bool = False


class ErrorHandler(ABC):
    """Invoked when a job fails, for logging, tracking or retry customisation."""

    @abstractmethod
    def handle_error(self, job: Any, err: BaseException) -> ErrorHandlerResult | None:
        """Called when a job returns an error."""

    @abstractmethod
    def handle_panic(self, job: Any, panic_val: Any) -> ErrorHandlerResult | None:
        """Called when a job raises unexpectedly."""