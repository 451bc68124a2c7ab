"""Events emitted by a client, and the subscriptions that receive them."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

SUBSCRIBE_CHAN_SIZE = 100
"""Maximum number of undelivered events a subscription holds; more are dropped."""


class EventKind(str, Enum):
    """A kind of event that can be subscribed to from a client."""

    JOB_CANCELLED = "job_cancelled"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_SNOOZED = "job_snoozed"


ALL_KINDS: frozenset[EventKind] = frozenset(EventKind)


@dataclass
class JobStatistics:
    """Information about a single execution of a job."""

    complete_duration: timedelta = timedelta(0)
    queue_wait_duration: timedelta = timedelta(0)
    run_duration: timedelta = timedelta(0)


@dataclass
class Event:
    """Something that happened within a client, like a job completing."""

    kind: EventKind
    job: Any
    job_stats: JobStatistics | None = None


def _new_event_queue() -> queue.Queue:
    return queue.Queue(maxsize=SUBSCRIBE_CHAN_SIZE)


@dataclass
class EventSubscription:
    """An active subscription for events produced by a client."""

    kinds: frozenset[EventKind] = field(default_factory=frozenset)
    queue: queue.Queue = field(default_factory=_new_event_queue)

    def listens_for(self, kind: EventKind) -> bool:
        """Whether this subscription wants events of the given kind."""
        return kind in self.kinds


def job_statistics_from_internal(stats: Any) -> JobStatistics:
    """Build public job statistics from any object carrying the same durations."""
    return JobStatistics(
        complete_duration=stats.complete_duration,
        queue_wait_duration=stats.queue_wait_duration,
        run_duration=stats.run_duration,
    )