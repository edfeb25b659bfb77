"""Configuration, key namespacing and throttling for token semaphores."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .exceptions import SemaphoreConfigError

API_VERSION = "1"
EXISTS_TOKEN = "1"
KEY_PREFIX = "SEMAPHORE"

# Seconds the EXISTS marker lives while the pool is being populated.
CREATION_TTL = 10
DEFAULT_CREATE_RELEASE_INTERVAL = 30.0

Clock = Callable[[], float]


@dataclass(frozen=True)
class SemaphoreConfig:
    """Options recognised by a token semaphore.

    Args:
        resources: Number of tokens in the pool (default: 1)
        expiration: Seconds to keep the pool keys alive after each mutation,
            or None to keep them forever
        stale_client_timeout: Seconds after which a holder is considered
            dead and its token may be reclaimed, or None to never reclaim
        create_release_interval: Minimum seconds between two pool
            creation/reclamation attempts made by the same instance
    """

    resources: int = 1
    expiration: float | None = None
    stale_client_timeout: float | None = None
    create_release_interval: float = DEFAULT_CREATE_RELEASE_INTERVAL

    def __post_init__(self) -> None:
        if isinstance(self.resources, bool) or not isinstance(self.resources, int):
            raise SemaphoreConfigError("resources", self.resources, "must be an int")
        if self.resources < 1:
            raise SemaphoreConfigError("resources", self.resources, "must be >= 1")
        for option in ("expiration", "stale_client_timeout"):
            value = getattr(self, option)
            if value is not None and value <= 0:
                raise SemaphoreConfigError(option, value, "must be positive or None")
        if self.create_release_interval < 0:
            raise SemaphoreConfigError(
                "create_release_interval",
                self.create_release_interval,
                "must be non-negative",
            )

    @property
    def check_staleness(self) -> bool:
        return self.stale_client_timeout is not None


@dataclass(frozen=True)
class PoolKeys:
    """Redis keys holding the state of one named pool."""

    available: str
    grabbed: str
    exists: str
    version: str
    release_locks: str

    @classmethod
    def for_name(cls, name: str) -> PoolKeys:
        def namespaced(variable: str) -> str:
            return f"{KEY_PREFIX}:{name}:{variable}"

        return cls(
            available=namespaced("AVAILABLE"),
            grabbed=namespaced("GRABBED"),
            exists=namespaced("EXISTS"),
            version=namespaced("VERSION"),
            release_locks=namespaced("release_locks"),
        )

    @property
    def pool(self) -> tuple[str, str, str, str]:
        """The keys that make up the pool, in deletion order."""
        return (self.available, self.grabbed, self.exists, self.version)


class Throttle:
    """Lets an action through at most once per ``interval`` seconds.

    The first call always passes. State is local to the instance, so each
    process throttles itself independently of how many others contend.
    """

    def __init__(self, interval: float, *, clock: Clock = time.time) -> None:
        self._interval = interval
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        """Return True and start a new window if the last one has elapsed."""
        now = self._clock()
        if self._last is None or now >= self._last + self._interval:
            self._last = now
            return True
        return False
