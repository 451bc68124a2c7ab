"""Common facilities shared by long-lived service objects."""

from __future__ import annotations

import logging
import random
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _default_logger() -> logging.Logger:
    logger = logging.getLogger("riverqueue")
    if logger.level == logging.NOTSET:
        logger.setLevel(logging.WARNING)
    return logger


@dataclass
class Archetype:
    """Immutable base properties that services copy from one another."""

    disable_sleep: bool = False
    logger: logging.Logger = field(default_factory=_default_logger)
    time_now_utc: Callable[[], datetime] = _utc_now


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class BaseService:
    """Base for service-like objects: logger, name, clock and random source."""

    def __init__(self) -> None:
        self.disable_sleep = False
        self.logger = _default_logger()
        self.name = type(self).__name__
        self.rand = random.Random(secrets.randbits(64))
        self.time_now_utc: Callable[[], datetime] = _utc_now

    def cancellable_sleep(
        self,
        duration: timedelta | float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Sleep, returning early if cancel_event is set; skipped when sleep is disabled."""
        if self.disable_sleep:
            return
        seconds = _seconds(duration)
        if seconds <= 0:
            return
        if cancel_event is None:
            time.sleep(seconds)
        else:
            cancel_event.wait(seconds)

    def cancellable_sleep_random_between(
        self,
        minimum: timedelta | float,
        maximum: timedelta | float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Sleep a random time in [minimum, maximum), cancellable like cancellable_sleep."""
        low = round(_seconds(minimum) * 1_000_000)
        high = round(_seconds(maximum) * 1_000_000)
        micros = low if high <= low else self.rand.randrange(low, high)
        self.cancellable_sleep(timedelta(microseconds=micros), cancel_event)


ServiceT = TypeVar("ServiceT", bound=BaseService)


def init_service(archetype: Archetype, service: ServiceT) -> ServiceT:
    """Initialise a service's base properties from an archetype and return it."""
    service.disable_sleep = archetype.disable_sleep
    service.logger = archetype.logger
    service.name = type(service).__name__
    service.rand = random.Random(secrets.randbits(64))
    service.time_now_utc = archetype.time_now_utc
    return service