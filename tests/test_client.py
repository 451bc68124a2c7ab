from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import ClassVar

import pytest

from riverqueue.client import (
    ERR_INSERT_NO_DRIVER_DB_POOL,
    Client,
    InsertManyParams,
    JobInsertParams,
    insert_params_from_args_and_options,
)
from riverqueue.config import (
    FETCH_COOLDOWN_DEFAULT,
    FETCH_POLL_INTERVAL_DEFAULT,
    JOB_TIMEOUT_DEFAULT,
    MAX_ATTEMPTS_DEFAULT,
    PRIORITY_DEFAULT,
    QUEUE_DEFAULT,
    RESCUE_AFTER_DEFAULT,
    Config,
    QueueConfig,
    UnknownJobKindError,
    Workers,
)
from riverqueue.event import EventKind, JobStatistics
from riverqueue.insert_opts import InsertOpts, JobState, UniqueOpts


@dataclass
class NoOpArgs:
    name: str = ""
    kind: ClassVar[str] = "noOp"


@dataclass
class UnregisteredJobArgs:
    kind: ClassVar[str] = "RandomWorkerNameThatIsNeverRegistered"


@dataclass
class TimeoutTestArgs:
    timeout_value: timedelta = timedelta(0)
    kind: ClassVar[str] = "timeoutTest"


class CustomInsertOptsJobArgs:
    kind = "customInsertOpts"

    def insert_opts(self) -> InsertOpts:
        return InsertOpts(max_attempts=42, priority=2, queue="other", tags=["tag1", "tag2"])


@dataclass
class FakeJob:
    id: int
    kind: str
    encoded_args: bytes
    max_attempts: int
    priority: int
    queue: str
    state: JobState
    tags: list = field(default_factory=list)
    attempt: int = 0


class FakeDriver:
    def __init__(self, with_pool: bool = True) -> None:
        self.db_pool = object() if with_pool else None
        self.jobs: list[FakeJob] = []
        self._ids = itertools.count(1)

    def _row(self, params: JobInsertParams) -> FakeJob:
        return FakeJob(
            id=next(self._ids),
            kind=params.kind,
            encoded_args=params.encoded_args,
            max_attempts=params.max_attempts,
            priority=params.priority,
            queue=params.queue,
            state=params.state,
            tags=list(params.tags or []),
        )

    def job_insert(self, params):
        row = self._row(params)
        self.jobs.append(row)
        return row

    def job_insert_tx(self, tx, params):
        row = self._row(params)
        tx.append(row)
        return row

    def job_insert_many(self, params):
        self.jobs.extend(self._row(p) for p in params)
        return len(params)

    def job_insert_many_tx(self, tx, params):
        tx.extend(self._row(p) for p in params)
        return len(params)


def make_config(**overrides) -> Config:
    workers = Workers()
    workers.add("noOp", object())
    values = dict(
        fetch_cooldown=timedelta(milliseconds=20),
        fetch_poll_interval=timedelta(milliseconds=50),
        queues={QUEUE_DEFAULT: QueueConfig(max_workers=50)},
        workers=workers,
        disable_sleep=True,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def client(driver) -> Client:
    return Client(driver, make_config())


def job_with_state(state, job_id=1) -> FakeJob:
    return FakeJob(job_id, "noOp", b"{}", 25, 1, QUEUE_DEFAULT, state)


# Insert


def test_insert_succeeds(client, driver):
    row = client.insert(NoOpArgs())
    assert row.attempt == 0
    assert row.max_attempts == MAX_ATTEMPTS_DEFAULT
    assert row.kind == "noOp"
    assert row.priority == PRIORITY_DEFAULT
    assert row.queue == QUEUE_DEFAULT
    assert row.tags == []
    assert driver.jobs == [row]


def test_insert_with_insert_opts(client):
    row = client.insert(
        NoOpArgs(), InsertOpts(max_attempts=17, priority=3, queue="custom", tags=["custom"])
    )
    assert row.max_attempts == 17
    assert row.priority == 3
    assert row.queue == "custom"
    assert row.tags == ["custom"]


def test_insert_errors_on_driver_without_pool():
    client = Client(FakeDriver(with_pool=False), Config())
    with pytest.raises(ValueError) as excinfo:
        client.insert(NoOpArgs())
    assert str(excinfo.value) == ERR_INSERT_NO_DRIVER_DB_POOL


def test_insert_errors_on_unknown_job_kind(client):
    with pytest.raises(UnknownJobKindError) as excinfo:
        client.insert(UnregisteredJobArgs())
    assert excinfo.value.kind == "RandomWorkerNameThatIsNeverRegistered"


def test_insert_allows_unknown_kind_without_workers(client, driver):
    client.config.workers = None
    row = client.insert(UnregisteredJobArgs())
    assert row.kind == "RandomWorkerNameThatIsNeverRegistered"


def test_insert_scheduled_job_state(client):
    at = datetime.now(timezone.utc) + timedelta(hours=1)
    row = client.insert(NoOpArgs(name="testJob"), InsertOpts(queue="other", priority=2, scheduled_at=at))
    assert row.state is JobState.SCHEDULED
    assert row.queue == "other"


# InsertTx


def test_insert_tx_succeeds_and_stays_in_tx(client, driver):
    tx: list = []
    row = client.insert_tx(tx, NoOpArgs())
    assert tx == [row]
    assert driver.jobs == []
    assert row.max_attempts == MAX_ATTEMPTS_DEFAULT


def test_insert_tx_with_driver_without_pool():
    client = Client(FakeDriver(with_pool=False), Config())
    tx: list = []
    row = client.insert_tx(tx, NoOpArgs())
    assert tx == [row]


def test_insert_tx_errors_on_unknown_kind(client):
    with pytest.raises(UnknownJobKindError) as excinfo:
        client.insert_tx([], UnregisteredJobArgs())
    assert excinfo.value == UnknownJobKindError("RandomWorkerNameThatIsNeverRegistered")


# InsertMany


def test_insert_many_succeeds(client, driver):
    count = client.insert_many(
        [
            InsertManyParams(NoOpArgs(), InsertOpts(queue="foo", priority=2)),
            InsertManyParams(NoOpArgs()),
        ]
    )
    assert count == 2
    assert [job.kind for job in driver.jobs] == ["noOp", "noOp"]
    assert driver.jobs[0].queue == "foo"


def test_insert_many_errors_on_driver_without_pool():
    client = Client(FakeDriver(with_pool=False), Config())
    with pytest.raises(ValueError, match="database pool"):
        client.insert_many([InsertManyParams(NoOpArgs())])


def test_insert_many_errors_with_zero_jobs(client):
    with pytest.raises(ValueError, match="^no jobs to insert$"):
        client.insert_many([])


def test_insert_many_errors_on_unknown_kind(client, driver):
    with pytest.raises(UnknownJobKindError):
        client.insert_many([InsertManyParams(UnregisteredJobArgs())])
    assert driver.jobs == []


def test_insert_many_allows_unknown_without_workers(client):
    client.config.workers = None
    assert client.insert_many([InsertManyParams(UnregisteredJobArgs())]) == 1


def test_insert_many_rejects_unique_opts(client):
    with pytest.raises(ValueError, match="^UniqueOpts are not supported for batch inserts$"):
        client.insert_many(
            [InsertManyParams(NoOpArgs(), InsertOpts(unique_opts=UniqueOpts(by_args=True)))]
        )


def test_insert_many_tx_succeeds(client, driver):
    tx: list = []
    count = client.insert_many_tx(tx, [InsertManyParams(NoOpArgs()), InsertManyParams(NoOpArgs())])
    assert count == 2
    assert len(tx) == 2
    assert driver.jobs == []


def test_insert_many_tx_with_driver_without_pool():
    client = Client(FakeDriver(with_pool=False), Config())
    assert client.insert_many_tx([], [InsertManyParams(NoOpArgs())]) == 1


def test_insert_many_tx_errors_with_zero_jobs(client):
    with pytest.raises(ValueError, match="no jobs to insert"):
        client.insert_many_tx([], [])


def test_insert_many_tx_rejects_unique_opts(client):
    with pytest.raises(ValueError, match="UniqueOpts are not supported"):
        client.insert_many_tx(
            [], [InsertManyParams(NoOpArgs(), InsertOpts(unique_opts=UniqueOpts(by_args=True)))]
        )


# Construction


def test_new_client_missing_driver():
    with pytest.raises(ValueError, match="missing database driver"):
        Client(None, Config())


def test_new_client_missing_config():
    with pytest.raises(ValueError, match="missing config"):
        Client(FakeDriver(), None)


def test_new_client_missing_pool_with_queues():
    with pytest.raises(ValueError, match="non-nil database pool to execute jobs"):
        Client(FakeDriver(with_pool=False), make_config())


def test_new_client_defaults(driver):
    workers = Workers()
    workers.add("noOp", object())
    client = Client(driver, Config(queues={QUEUE_DEFAULT: QueueConfig(1)}, workers=workers))
    assert client.config.error_handler is None
    assert client.config.fetch_cooldown == FETCH_COOLDOWN_DEFAULT
    assert client.config.fetch_poll_interval == FETCH_POLL_INTERVAL_DEFAULT
    assert client.config.job_timeout == JOB_TIMEOUT_DEFAULT
    assert client.config.logger is not None
    assert client.config.disable_sleep is False


def test_new_client_overrides(driver):
    client = Client(
        driver,
        make_config(
            advisory_lock_prefix=123_456,
            fetch_cooldown=timedelta(milliseconds=123),
            fetch_poll_interval=timedelta(milliseconds=124),
            job_timeout=timedelta(milliseconds=125),
        ),
    )
    assert client.config.advisory_lock_prefix == 123_456
    assert client.config.fetch_cooldown == timedelta(milliseconds=123)
    assert client.config.fetch_poll_interval == timedelta(milliseconds=124)
    assert client.config.job_timeout == timedelta(milliseconds=125)
    assert client.config.disable_sleep is True


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"completed_job_retention_period": timedelta(seconds=-1)},
         "CompletedJobRetentionPeriod cannot be less than zero"),
        ({"fetch_cooldown": timedelta(microseconds=999)}, "FetchCooldown must be at least 1ms"),
        ({"fetch_cooldown": timedelta(milliseconds=20), "fetch_poll_interval": timedelta(milliseconds=19)},
         "FetchPollInterval cannot be shorter than FetchCooldown (20ms)"),
        ({"job_timeout": timedelta(hours=7), "rescue_stuck_jobs_after": timedelta(hours=6)},
         "RescueStuckJobsAfter cannot be less than JobTimeout"),
        ({"queues": {QUEUE_DEFAULT: QueueConfig(max_workers=-1)}},
         'invalid number of workers for queue "default": -1'),
        ({"queues": {"no-hyphens": QueueConfig(max_workers=1)}},
         'queue name is invalid, see documentation: "no-hyphens"'),
        ({"workers": None}, "Workers must be set if Queues is set"),
    ],
)
def test_new_client_validations(driver, overrides, message):
    with pytest.raises(ValueError) as excinfo:
        Client(driver, make_config(**overrides))
    assert message in str(excinfo.value)


def test_new_client_rescue_after_follows_large_job_timeout(driver):
    client = Client(driver, make_config(job_timeout=timedelta(hours=23)))
    assert client.config.rescue_stuck_jobs_after == timedelta(hours=23) + RESCUE_AFTER_DEFAULT


def test_client_id_is_crockford_base32(client):
    assert len(client.id) == 26
    assert set(client.id) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")


# Insert params


def test_insert_params_defaults():
    params = insert_params_from_args_and_options(NoOpArgs(), None)
    assert params.encoded_args == b'{"name":""}'
    assert params.kind == "noOp"
    assert params.max_attempts == MAX_ATTEMPTS_DEFAULT
    assert params.priority == PRIORITY_DEFAULT
    assert params.queue == QUEUE_DEFAULT
    assert params.scheduled_at is None
    assert params.tags is None
    assert params.unique is False
    assert params.state is JobState.AVAILABLE


def test_insert_params_insert_opts_overrides():
    at = datetime.now(timezone.utc) + timedelta(hours=1)
    opts = InsertOpts(max_attempts=42, priority=2, queue="other", scheduled_at=at, tags=["tag1", "tag2"])
    params = insert_params_from_args_and_options(NoOpArgs(), opts)
    assert params.max_attempts == 42
    assert params.priority == 2
    assert params.queue == "other"
    assert params.scheduled_at == at
    assert params.state is JobState.SCHEDULED
    assert params.tags == ["tag1", "tag2"]


def test_insert_params_worker_insert_opts_overrides():
    params = insert_params_from_args_and_options(CustomInsertOptsJobArgs(), None)
    assert params.max_attempts == 42
    assert params.priority == 2
    assert params.queue == "other"
    assert params.tags == ["tag1", "tag2"]


def test_insert_params_priority_limited_to_4():
    with pytest.raises(ValueError, match="priority must be between 1 and 4"):
        insert_params_from_args_and_options(NoOpArgs(), InsertOpts(priority=5))


def test_insert_params_non_empty_args():
    params = insert_params_from_args_and_options(TimeoutTestArgs(timedelta(hours=1)), None)
    assert params.encoded_args == b'{"timeout_value":3600000000000}'


def test_insert_params_unique_opts_validated():
    with pytest.raises(ValueError, match="^JobUniqueOpts.ByPeriod should not be less than 1 second$"):
        insert_params_from_args_and_options(
            NoOpArgs(), InsertOpts(unique_opts=UniqueOpts(by_period=timedelta(milliseconds=1)))
        )


def test_insert_params_unique_opts_copied():
    params = insert_params_from_args_and_options(
        NoOpArgs(),
        InsertOpts(unique_opts=UniqueOpts(by_period=timedelta(hours=24), by_state=[JobState.AVAILABLE])),
    )
    assert params.unique is True
    assert params.unique_by_period == timedelta(hours=24)
    assert params.unique_by_state == [JobState.AVAILABLE]


# Subscriptions


def test_subscribe_unknown_kind_raises(client):
    with pytest.raises(ValueError, match="^unknown event kind: does_not_exist$"):
        client.subscribe("does_not_exist")


@pytest.mark.parametrize(
    "state, kind",
    [
        (JobState.CANCELLED, EventKind.JOB_CANCELLED),
        (JobState.COMPLETED, EventKind.JOB_COMPLETED),
        (JobState.SCHEDULED, EventKind.JOB_SNOOZED),
        (JobState.RETRYABLE, EventKind.JOB_FAILED),
        (JobState.DISCARDED, EventKind.JOB_FAILED),
    ],
)
def test_distribute_job_event_kinds(client, state, kind):
    q, _ = client.subscribe(*EventKind)
    job = job_with_state(state)
    client.distribute_job(job, None)
    event = q.get_nowait()
    assert event.kind is kind
    assert event.job is job


def test_subscribe_filters_kinds(client):
    completed_q, _ = client.subscribe(EventKind.JOB_COMPLETED)
    failed_q, _ = client.subscribe(EventKind.JOB_FAILED)
    client.distribute_job(job_with_state(JobState.COMPLETED, 1), None)
    client.distribute_job(job_with_state(JobState.RETRYABLE, 2), None)
    assert [completed_q.get_nowait().job.id] == [1]
    assert completed_q.empty()
    assert failed_q.get_nowait().job.id == 2
    assert failed_q.empty()


def test_events_drop_when_queue_full(client):
    q1, _ = client.subscribe(EventKind.JOB_COMPLETED)
    q2, _ = client.subscribe(EventKind.JOB_COMPLETED)
    for i in range(101):
        client.distribute_job(job_with_state(JobState.COMPLETED, i), None)
    assert q1.qsize() == 100
    assert q2.qsize() == 100


def test_subscription_cancellation(client):
    q, cancel = client.subscribe(EventKind.JOB_COMPLETED)
    cancel()
    assert q.get_nowait() is None
    client.distribute_job(job_with_state(JobState.COMPLETED), None)
    assert q.empty()
    cancel()
    assert q.empty()


def test_close_subscriptions(client):
    q1, _ = client.subscribe(EventKind.JOB_COMPLETED)
    q2, _ = client.subscribe(EventKind.JOB_FAILED)
    client.close_subscriptions()
    assert q1.get_nowait() is None
    assert q2.get_nowait() is None
    client.distribute_job(job_with_state(JobState.COMPLETED), None)
    assert q1.empty()


def test_distribute_unknown_state_raises(client):
    client.subscribe(EventKind.JOB_COMPLETED)
    with pytest.raises(RuntimeError, match="unreachable state"):
        client.distribute_job(job_with_state("bogus"), None)


def test_completer_callback_attaches_stats(client):
    q, _ = client.subscribe(EventKind.JOB_COMPLETED)
    stats = JobStatistics(timedelta(seconds=1), timedelta(seconds=2), timedelta(seconds=3))
    client.distribute_job_completer_callback(job_with_state(JobState.COMPLETED), stats)
    event = q.get_nowait()
    assert event.job_stats == JobStatistics(
        complete_duration=timedelta(seconds=1),
        queue_wait_duration=timedelta(seconds=2),
        run_duration=timedelta(seconds=3),
    )