"""Client configuration, validation and the registry of job workers."""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from riverqueue.base_service import Archetype
from riverqueue.error_handler import ErrorHandler

FETCH_COOLDOWN_DEFAULT = timedelta(milliseconds=100)
FETCH_COOLDOWN_MIN = timedelta(milliseconds=1)

FETCH_POLL_INTERVAL_DEFAULT = timedelta(seconds=1)
FETCH_POLL_INTERVAL_MIN = timedelta(milliseconds=1)

JOB_TIMEOUT_DEFAULT = timedelta(minutes=1)
JOB_TIMEOUT_INFINITE = timedelta(microseconds=-1)
"""Job timeout meaning a job's context is only cancelled when the client stops."""

MAX_ATTEMPTS_DEFAULT = 25
PRIORITY_DEFAULT = 1
QUEUE_DEFAULT = "default"
QUEUE_NUM_WORKERS_MAX = 10_000
QUEUE_NAME_MAX_LENGTH = 64

CANCELLED_JOB_RETENTION_PERIOD_DEFAULT = timedelta(hours=24)
COMPLETED_JOB_RETENTION_PERIOD_DEFAULT = timedelta(hours=24)
DISCARDED_JOB_RETENTION_PERIOD_DEFAULT = timedelta(days=7)
RESCUE_AFTER_DEFAULT = timedelta(hours=1)

_ZERO = timedelta(0)

# Letters and digits, optionally joined by single underscores.
_NAME_RE = re.compile(r"[a-z0-9]+(?:_[a-z0-9]+)*")


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _trim_fraction(value: float) -> str:
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def format_duration(duration: timedelta) -> str:
    """Render a duration compactly, e.g. ``1ms``, ``1.5s`` or ``1h0m0s``."""
    micros = duration // timedelta(microseconds=1)
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < 1_000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        return f"{sign}{_trim_fraction(micros / 1_000)}ms"
    total_seconds, frac_micros = divmod(micros, 1_000_000)
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    secs = _trim_fraction(seconds + frac_micros / 1_000_000)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


class UnknownJobKindError(Exception):
    """Raised when a job's kind has no worker registered for it."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"job kind is not registered in the client's Workers bundle: {kind}")
        self.kind = kind

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnknownJobKindError):
            return NotImplemented
        return self.kind == other.kind

    def __hash__(self) -> int:
        return hash(("UnknownJobKindError", self.kind))


class Workers:
    """A registry of job workers keyed by job kind."""

    def __init__(self) -> None:
        self._workers: dict[str, Any] = {}

    def add(self, kind: str, worker: Any) -> None:
        """Register a worker for a kind; registering a kind twice is an error."""
        if kind in self._workers:
            raise ValueError(f"worker for kind {_quote(kind)} is already registered")
        self._workers[kind] = worker

    def get(self, kind: str) -> Any | None:
        """The worker registered for a kind, or None."""
        return self._workers.get(kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self._workers

    def __len__(self) -> int:
        return len(self._workers)

    def __iter__(self):
        return iter(self._workers)


@dataclass
class QueueConfig:
    """Queue-specific configuration."""

    max_workers: int = 0


def validate_queue_name(queue_name: str) -> None:
    """Raise ValueError unless the queue name is acceptable."""
    if queue_name == "":
        raise ValueError("queue name cannot be empty")
    if len(queue_name.encode("utf-8")) > QUEUE_NAME_MAX_LENGTH:
        raise ValueError(f"queue name cannot be longer than {QUEUE_NAME_MAX_LENGTH} characters")
    if _NAME_RE.fullmatch(queue_name) is None:
        raise ValueError(f"queue name is invalid, see documentation: {_quote(queue_name)}")


def _or_default(value: timedelta, default: timedelta) -> timedelta:
    return default if value == _ZERO else value


@dataclass
class Config:
    """Configuration of a client; zero durations mean "use the default"."""

    advisory_lock_prefix: int = 0
    cancelled_job_retention_period: timedelta = _ZERO
    completed_job_retention_period: timedelta = _ZERO
    discarded_job_retention_period: timedelta = _ZERO
    error_handler: ErrorHandler | None = None
    fetch_cooldown: timedelta = _ZERO
    fetch_poll_interval: timedelta = _ZERO
    job_timeout: timedelta = _ZERO
    logger: logging.Logger | None = None
    periodic_jobs: list[Any] = field(default_factory=list)
    queues: dict[str, QueueConfig] | None = None
    reindexer_schedule: Any = None
    rescue_stuck_jobs_after: timedelta = _ZERO
    retry_policy: Any = None
    workers: Workers | None = None
    disable_sleep: bool = False

    def with_defaults(self) -> Config:
        """A copy of this configuration with every unset value defaulted."""
        # A large job timeout without an explicit rescue period would make the
        # default rescue period invalid, so extend it beyond the timeout.
        rescue_after = RESCUE_AFTER_DEFAULT
        if (
            self.job_timeout > _ZERO
            and self.rescue_stuck_jobs_after <= _ZERO
            and self.job_timeout > self.rescue_stuck_jobs_after
        ):
            rescue_after = self.job_timeout + RESCUE_AFTER_DEFAULT

        return dataclasses.replace(
            self,
            cancelled_job_retention_period=_or_default(
                self.cancelled_job_retention_period, CANCELLED_JOB_RETENTION_PERIOD_DEFAULT
            ),
            completed_job_retention_period=_or_default(
                self.completed_job_retention_period, COMPLETED_JOB_RETENTION_PERIOD_DEFAULT
            ),
            discarded_job_retention_period=_or_default(
                self.discarded_job_retention_period, DISCARDED_JOB_RETENTION_PERIOD_DEFAULT
            ),
            fetch_cooldown=_or_default(self.fetch_cooldown, FETCH_COOLDOWN_DEFAULT),
            fetch_poll_interval=_or_default(self.fetch_poll_interval, FETCH_POLL_INTERVAL_DEFAULT),
            job_timeout=_or_default(self.job_timeout, JOB_TIMEOUT_DEFAULT),
            logger=self.logger if self.logger is not None else Archetype().logger,
            periodic_jobs=list(self.periodic_jobs),
            rescue_stuck_jobs_after=_or_default(self.rescue_stuck_jobs_after, rescue_after),
        )

    def validate(self) -> None:
        """Raise ValueError describing the first invalid setting found."""
        if self.cancelled_job_retention_period < _ZERO:
            raise ValueError("CancelledJobRetentionPeriod time cannot be less than zero")
        if self.completed_job_retention_period < _ZERO:
            raise ValueError("CompletedJobRetentionPeriod cannot be less than zero")
        if self.discarded_job_retention_period < _ZERO:
            raise ValueError("DiscardedJobRetentionPeriod cannot be less than zero")
        if self.fetch_cooldown < FETCH_COOLDOWN_MIN:
            raise ValueError(f"FetchCooldown must be at least {format_duration(FETCH_COOLDOWN_MIN)}")
        if self.fetch_poll_interval < FETCH_POLL_INTERVAL_MIN:
            raise ValueError(
                f"FetchPollInterval must be at least {format_duration(FETCH_POLL_INTERVAL_MIN)}"
            )
        if self.fetch_poll_interval < self.fetch_cooldown:
            raise ValueError(
                "FetchPollInterval cannot be shorter than FetchCooldown "
                f"({format_duration(self.fetch_cooldown)})"
            )
        if self.job_timeout < JOB_TIMEOUT_INFINITE:
            raise ValueError("JobTimeout cannot be negative, except for -1 (infinite)")
        if self.rescue_stuck_jobs_after < _ZERO:
            raise ValueError("RescueStuckJobsAfter cannot be less than zero")
        if self.rescue_stuck_jobs_after < self.job_timeout:
            raise ValueError("RescueStuckJobsAfter cannot be less than JobTimeout")

        for queue_name, queue_config in (self.queues or {}).items():
            if not 1 <= queue_config.max_workers <= QUEUE_NUM_WORKERS_MAX:
                raise ValueError(
                    f"invalid number of workers for queue {_quote(queue_name)}: "
                    f"{queue_config.max_workers}"
                )
            validate_queue_name(queue_name)

        if self.workers is None and self.queues is not None:
            raise ValueError("Workers must be set if Queues is set")

    def will_execute_jobs(self) -> bool:
        """Whether a client with this configuration works jobs, not only inserts them."""
        return bool(self.queues)