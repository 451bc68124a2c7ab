"""The client: job insertion and distribution of job events to subscribers."""

from __future__ import annotations

import dataclasses
import json
import queue
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from riverqueue.base_service import Archetype, BaseService, init_service
from riverqueue.client_monitor import ClientMonitor
from riverqueue.config import (
    MAX_ATTEMPTS_DEFAULT,
    PRIORITY_DEFAULT,
    QUEUE_DEFAULT,
    Config,
    UnknownJobKindError,
)
from riverqueue.event import (
    ALL_KINDS,
    Event,
    EventKind,
    EventSubscription,
    JobStatistics,
    job_statistics_from_internal,
)
from riverqueue.insert_opts import InsertOpts, JobState, UniqueOpts

ERR_MISSING_CONFIG = "missing config"
ERR_MISSING_DATABASE_POOL_WITH_QUEUES = (
    "must have a non-nil database pool to execute jobs "
    "(either use a driver with database pool or don't configure Queues)"
)
ERR_MISSING_DRIVER = "missing database driver"
ERR_INSERT_NO_DRIVER_DB_POOL = (
    "driver must have non-nil database pool to use Insert and InsertMany "
    "(try InsertTx or InsertManyTx instead"
)

_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

_EVENT_KIND_BY_STATE = {
    JobState.CANCELLED: EventKind.JOB_CANCELLED,
    JobState.COMPLETED: EventKind.JOB_COMPLETED,
    JobState.SCHEDULED: EventKind.JOB_SNOOZED,
    JobState.AVAILABLE: EventKind.JOB_FAILED,
    JobState.DISCARDED: EventKind.JOB_FAILED,
    JobState.RETRYABLE: EventKind.JOB_FAILED,
    JobState.RUNNING: EventKind.JOB_FAILED,
}


class Driver(Protocol):
    """What a client needs from a database driver."""

    db_pool: Any

    def job_insert(self, params: JobInsertParams) -> Any: ...

    def job_insert_tx(self, tx: Any, params: JobInsertParams) -> Any: ...

    def job_insert_many(self, params: list[JobInsertParams]) -> int: ...

    def job_insert_many_tx(self, tx: Any, params: list[JobInsertParams]) -> int: ...


def _new_client_id() -> str:
    """A 26-character, time-ordered, Crockford base32 identifier."""
    millis = time.time_ns() // 1_000_000
    value = ((millis & ((1 << 48) - 1)) << 80) | secrets.randbits(80)
    return "".join(_CROCKFORD[(value >> (125 - 5 * i)) & 31] for i in range(26))


@dataclass
class JobInsertParams:
    """Everything needed to insert one job row."""

    encoded_args: bytes
    kind: str
    max_attempts: int = MAX_ATTEMPTS_DEFAULT
    metadata: bytes = b"{}"
    priority: int = PRIORITY_DEFAULT
    queue: str = QUEUE_DEFAULT
    scheduled_at: datetime | None = None
    state: JobState = JobState.AVAILABLE
    tags: list[str] | None = None
    unique: bool = False
    unique_by_args: bool = False
    unique_by_period: timedelta = timedelta(0)
    unique_by_queue: bool = False
    unique_by_state: list[JobState] | None = None


@dataclass
class InsertManyParams:
    """A single job with its insert options, for batch insertion."""

    args: Any
    insert_opts: InsertOpts | None = None


def _kind_of(args: Any) -> str:
    kind = args.kind
    return kind() if callable(kind) else kind


def _json_default(value: Any) -> Any:
    if isinstance(value, timedelta):
        return value // timedelta(microseconds=1) * 1000
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _encode_args(args: Any) -> bytes:
    try:
        if dataclasses.is_dataclass(args) and not isinstance(args, type):
            payload = dataclasses.asdict(args)
        else:
            payload = {k: v for k, v in vars(args).items() if not k.startswith("_")}
        return json.dumps(payload, separators=(",", ":"), default=_json_default).encode()
    except (TypeError, ValueError) as exc:
        raise ValueError(f"error marshaling args to JSON: {exc}") from exc


def insert_params_from_args_and_options(
    args: Any, insert_opts: InsertOpts | None
) -> JobInsertParams:
    """Combine job args, their own insert options and call-site options."""
    encoded_args = _encode_args(args)
    opts = insert_opts if insert_opts is not None else InsertOpts()

    own_opts_func = getattr(args, "insert_opts", None)
    job_opts = own_opts_func() if callable(own_opts_func) else InsertOpts()

    max_attempts = opts.max_attempts or job_opts.max_attempts or MAX_ATTEMPTS_DEFAULT
    priority = opts.priority or job_opts.priority or PRIORITY_DEFAULT
    queue_name = opts.queue or job_opts.queue or QUEUE_DEFAULT
    tags = opts.tags if opts.tags is not None else job_opts.tags

    if priority > 4:
        raise ValueError("priority must be between 1 and 4")

    unique_opts: UniqueOpts = opts.unique_opts
    if unique_opts.is_empty():
        unique_opts = job_opts.unique_opts
    unique_opts.validate()

    params = JobInsertParams(
        encoded_args=encoded_args,
        kind=_kind_of(args),
        max_attempts=max_attempts,
        priority=priority,
        queue=queue_name,
        tags=tags,
    )

    if not unique_opts.is_empty():
        params.unique = True
        params.unique_by_args = unique_opts.by_args
        params.unique_by_queue = unique_opts.by_queue
        params.unique_by_period = unique_opts.by_period
        params.unique_by_state = (
            list(unique_opts.by_state) if unique_opts.by_state is not None else None
        )

    if opts.scheduled_at is not None:
        params.scheduled_at = opts.scheduled_at
        params.state = JobState.SCHEDULED

    return params


def _close_queue(q: queue.Queue) -> None:
    """Signal the end of a subscription by enqueueing None, making room if needed."""
    while True:
        try:
            q.put_nowait(None)
            return
        except queue.Full:
            try:
                q.get_nowait()
            except queue.Empty:
                pass


class Client:
    """Inserts jobs and distributes job events to subscribers."""

    def __init__(self, driver: Driver | None, config: Config | None) -> None:
        if driver is None:
            raise ValueError(ERR_MISSING_DRIVER)
        if config is None:
            raise ValueError(ERR_MISSING_CONFIG)

        config = config.with_defaults()
        config.validate()

        self.config = config
        self.driver = driver
        self.id = _new_client_id()
        self.monitor = ClientMonitor()

        archetype = Archetype(disable_sleep=config.disable_sleep, logger=config.logger)
        self._base_service = init_service(archetype, BaseService())
        self._base_service.name = type(self).__name__

        self._subscriptions: dict[int, EventSubscription] = {}
        self._subscriptions_lock = threading.Lock()
        self._subscriptions_seq = 0

        self._stats_lock = threading.Lock()
        self._stats_aggregate = JobStatistics()
        self._stats_num_jobs = 0

        if config.will_execute_jobs():
            if driver.db_pool is None:
                raise ValueError(ERR_MISSING_DATABASE_POOL_WITH_QUEUES)
            for queue_name in config.queues or {}:
                self.monitor.initialize_producer_status(queue_name)

    # Insertion

    def _validate_job_args(self, args: Any) -> None:
        workers = self.config.workers
        if workers is None:
            return
        kind = _kind_of(args)
        if kind not in workers:
            raise UnknownJobKindError(kind)

    def _require_pool(self) -> None:
        if self.driver.db_pool is None:
            raise ValueError(ERR_INSERT_NO_DRIVER_DB_POOL)

    def insert(self, args: Any, opts: InsertOpts | None = None) -> Any:
        """Insert a job and return the inserted row."""
        self._require_pool()
        self._validate_job_args(args)
        params = insert_params_from_args_and_options(args, opts)
        return self.driver.job_insert(params)

    def insert_tx(self, tx: Any, args: Any, opts: InsertOpts | None = None) -> Any:
        """Insert a job within the given transaction and return the row."""
        self._validate_job_args(args)
        params = insert_params_from_args_and_options(args, opts)
        return self.driver.job_insert_tx(tx, params)

    def _insert_many_params(self, params: list[InsertManyParams]) -> list[JobInsertParams]:
        if not params:
            raise ValueError("no jobs to insert")
        result = []
        for param in params:
            self._validate_job_args(param.args)
            # Unique inserts take advisory locks, which en masse invite deadlocks.
            if param.insert_opts is not None and not param.insert_opts.unique_opts.is_empty():
                raise ValueError("UniqueOpts are not supported for batch inserts")
            result.append(insert_params_from_args_and_options(param.args, param.insert_opts))
        return result

    def insert_many(self, params: list[InsertManyParams]) -> int:
        """Insert many jobs at once and return how many were inserted."""
        self._require_pool()
        return self.driver.job_insert_many(self._insert_many_params(params))

    def insert_many_tx(self, tx: Any, params: list[InsertManyParams]) -> int:
        """Insert many jobs within the given transaction and return the count."""
        return self.driver.job_insert_many_tx(tx, self._insert_many_params(params))

    # Subscriptions

    def subscribe(self, *args: EventKind | str) -> tuple[queue.Queue, Callable[[], None]]:
        """Subscribe to event kinds; returns an event queue and a cancel function.

        The queue is bounded and never blocks the client: events that would
        overflow it are dropped. None is put on the queue once the
        subscription ends.
        """
        kinds = []
        for kind in args:
            try:
                event_kind = EventKind(kind)
            except ValueError:
                raise ValueError(f"unknown event kind: {getattr(kind, 'value', kind)}") from None
            if event_kind not in ALL_KINDS:
                raise ValueError(f"unknown event kind: {event_kind.value}")
            kinds.append(event_kind)

        with self._subscriptions_lock:
            sub_id = self._subscriptions_seq
            self._subscriptions_seq += 1
            subscription = EventSubscription(kinds=frozenset(kinds))
            self._subscriptions[sub_id] = subscription

        def cancel() -> None:
            with self._subscriptions_lock:
                sub = self._subscriptions.pop(sub_id, None)
            if sub is not None:
                _close_queue(sub.queue)

        return subscription.queue, cancel

    def distribute_job(self, job: Any, stats: JobStatistics | None) -> None:
        """Send an event for a finished job to every interested subscriber."""
        with self._subscriptions_lock:
            if not self._subscriptions:
                return
            try:
                state = JobState(job.state)
            except ValueError:
                raise RuntimeError("unreachable state to distribute") from None
            event = Event(kind=_EVENT_KIND_BY_STATE[state], job=job, job_stats=stats)
            for sub in self._subscriptions.values():
                if sub.listens_for(event.kind):
                    try:
                        sub.queue.put_nowait(event)
                    except queue.Full:
                        pass

    def distribute_job_completer_callback(self, job: Any, stats: Any) -> None:
        """Record a completed job's statistics and distribute its event."""
        public_stats = job_statistics_from_internal(stats)
        with self._stats_lock:
            agg = self._stats_aggregate
            agg.complete_duration += public_stats.complete_duration
            agg.queue_wait_duration += public_stats.queue_wait_duration
            agg.run_duration += public_stats.run_duration
            self._stats_num_jobs += 1
        self.distribute_job(job, public_stats)

    def close_subscriptions(self) -> None:
        """End every subscription, signalling each queue with None."""
        with self._subscriptions_lock:
            subs = list(self._subscriptions.values())
            self._subscriptions.clear()
        for sub in subs:
            _close_queue(sub.queue)

    def _log_stats(self) -> None:
        """Log average job timings since the last call, then reset them."""
        with self._stats_lock:
            n = self._stats_num_jobs
            agg = self._stats_aggregate

            def average(total: timedelta) -> timedelta:
                return total / n if n else timedelta(0)

            self._base_service.logger.info(
                "%s: Job stats (since last stats line) num_jobs_run=%d "
                "average_complete_duration=%s average_queue_wait_duration=%s "
                "average_run_duration=%s",
                self._base_service.name,
                n,
                average(agg.complete_duration),
                average(agg.queue_wait_duration),
                average(agg.run_duration),
            )
            self._stats_aggregate = JobStatistics()
            self._stats_num_jobs = 0