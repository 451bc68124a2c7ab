# riverqueue

The client-side core of a job queue: validated client configuration, a
registry of workers by job kind, per-job insert options and uniqueness
rules, event subscriptions for finished jobs, and a monitor that
broadcasts component health snapshots.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Configuration

`riverqueue.config.Config` holds a client's settings. Durations are
`timedelta` values, and a zero duration means "use the default".
`Config.with_defaults()` returns a copy with unset values filled in:

- retention periods: 24 hours for cancelled and completed jobs, 7 days
  for discarded jobs;
- fetch cooldown 100 ms, fetch poll interval 1 s, job timeout 1 minute;
- rescue of stuck jobs after 1 hour, or after the job timeout plus 1 hour
  when a job timeout is set and no rescue period is;
- a logger named `riverqueue` at warning level when none is given.

`Config.validate()` raises `ValueError` on the first bad setting: negative
retention periods, a fetch cooldown or poll interval under 1 ms, a poll
interval shorter than the cooldown, a job timeout below
`JOB_TIMEOUT_INFINITE` (minus one microsecond, meaning "no timeout"), a
negative rescue period or one shorter than the job timeout, a queue with
fewer than 1 or more than 10,000 workers, an invalid queue name, or queues
without workers. `Config.will_execute_jobs()` tells whether any queues are
configured.

```python
from riverqueue.config import Config, QueueConfig, Workers

workers = Workers()
workers.add("sort", my_sort_worker)

config = Config(queues={"default": QueueConfig(max_workers=10)}, workers=workers).with_defaults()
config.validate()
```

`Workers.add` raises `ValueError` if a kind is registered twice;
`Workers.get` returns the worker for a kind or `None`.

Queue names must be 1 to 64 characters of lower-case letters and digits,
optionally joined by single underscores; `validate_queue_name` checks one
and raises `ValueError` otherwise.

## Inserting jobs

`riverqueue.client.Client(driver, config)` applies the configuration's
defaults, validates it, and raises `ValueError` if the driver or config is
missing, or if queues are configured but the driver has no `db_pool`.
The driver is any object with a `db_pool` attribute and the methods
`job_insert`, `job_insert_tx`, `job_insert_many` and `job_insert_many_tx`
(the `Driver` protocol); the client builds `JobInsertParams` and hands
them to it.

Job args are objects with a `kind` (an attribute or a method). Their
dataclass fields, or their public attributes, are encoded as compact JSON;
a `timedelta` is encoded as whole nanoseconds. An args object may supply
its own defaults through an `insert_opts()` method returning `InsertOpts`.

- `Client.insert(args, opts=None)` and `Client.insert_tx(tx, args, opts=None)`
  insert one job; `insert` requires the driver to have a `db_pool`.
- `Client.insert_many(params)` and `Client.insert_many_tx(tx, params)`
  insert a batch of `InsertManyParams` and return the count. An empty
  batch, or one carrying uniqueness options, raises `ValueError`.

When a workers registry is configured, a kind without a registered worker
raises `UnknownJobKindError`. Options given at insert time override those
from the args object, which override the defaults (queue `default`,
priority 1, 25 attempts). Tags are taken whole from one source, never
merged. A priority above 4 raises `ValueError`. A `scheduled_at` time puts
the job in the `scheduled` state instead of `available`.
`insert_params_from_args_and_options` performs the same resolution on its
own.

`UniqueOpts` describes uniqueness by args, period, queue and job state;
`UniqueOpts.validate()` rejects periods under one second and states that
are not `JobState` members.

## Events

```python
from riverqueue.event import EventKind

events, cancel = client.subscribe(EventKind.JOB_COMPLETED, EventKind.JOB_FAILED)
```

An unknown kind raises `ValueError`. Each subscription gets a queue
holding up to 100 `Event` objects; delivery never blocks, and events that
would overflow a slow subscriber's queue are dropped. `cancel()` ends the
subscription and `Client.close_subscriptions()` ends all of them; an
ended subscription's queue receives `None`.

`Client.distribute_job(job, stats)` sends an event for a finished job: a
cancelled job gives `JOB_CANCELLED`, completed `JOB_COMPLETED`, scheduled
`JOB_SNOOZED`, and any other state `JOB_FAILED`.
`Client.distribute_job_completer_callback(job, stats)` also adds the
job's durations to the client's running statistics.

## Status monitoring

`riverqueue.client_monitor.ClientMonitor` keeps a `ClientSnapshot` of the
elector, notifier and per-queue producer statuses.
`initialize_producer_status` records a producer as uninitialised without
broadcasting; `set_producer_status`, `set_elector_status` and
`set_notifier_status` record a change and broadcast a copy of the
snapshot, without blocking, to every queue returned by
`register_updates()`, while `run()` is active in a background thread.
`shutdown()` stops `run()` and waits for it. `ClientSnapshot.healthy()` is
true when the notifier and every producer are healthy.

## Services and error handlers

`riverqueue.base_service.BaseService` gives a service a logger, a name, a
UTC clock and a random source; `init_service(archetype, service)` copies
these from an `Archetype`. `cancellable_sleep` returns early when its
`threading.Event` is set and does nothing when sleep is disabled.

`riverqueue.error_handler.ErrorHandler` is the abstract interface for
`handle_error` and `handle_panic` hooks returning an `ErrorHandlerResult`.

## What this package does not do

It has no database driver and stores nothing itself: every insert goes
through the driver you supply. The client does not fetch or work jobs,
retry them, elect a leader, run maintenance or periodic jobs, or migrate
a schema, and the package provides no command-line tool.