"""Options applied to a job when it is inserted."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class JobState(str, Enum):
    """The state a job row can be in."""

    AVAILABLE = "available"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    RETRYABLE = "retryable"
    RUNNING = "running"
    SCHEDULED = "scheduled"


JOB_STATE_ALL: tuple[JobState, ...] = tuple(JobState)


@dataclass
class UniqueOpts:
    """Uniqueness dimensions for a job; the empty value enforces none."""

    by_args: bool = False
    by_period: timedelta = timedelta(0)
    by_queue: bool = False
    by_state: list[JobState] | None = None

    def is_empty(self) -> bool:
        """True when no uniqueness option has been set."""
        return (
            not self.by_args
            and self.by_period == timedelta(0)
            and not self.by_queue
            and self.by_state is None
        )

    def validate(self) -> None:
        """Raise ValueError if the options are not usable."""
        if self.is_empty():
            return
        if self.by_period != timedelta(0) and self.by_period < timedelta(seconds=1):
            raise ValueError("JobUniqueOpts.ByPeriod should not be less than 1 second")
        for state in self.by_state or ():
            if state not in JOB_STATE_ALL:
                shown = getattr(state, "value", state)
                raise ValueError(f'JobUniqueOpts.ByState contains invalid state "{shown}"')


@dataclass
class InsertOpts:
    """Per-insert settings overriding job-level and global defaults."""

    max_attempts: int = 0
    priority: int = 0
    queue: str = ""
    scheduled_at: datetime | None = None
    tags: list[str] | None = None
    unique_opts: UniqueOpts = field(default_factory=UniqueOpts)