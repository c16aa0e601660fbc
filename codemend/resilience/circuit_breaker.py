"""Three-state circuit breaker shared by every caller of a named dependency.

CLOSED counts consecutive failures; once ``failure_threshold`` of them land
inside ``failure_window`` the breaker OPENs and calls short-circuit with
``DependencyOpen`` (or the caller's fallback). After ``reset_timeout`` the
next caller becomes the single HALF_OPEN trial: success closes the breaker,
failure re-opens it. Other callers are short-circuited while the trial runs.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, Union

import structlog
from pydantic import BaseModel

from codemend.config.breaker import BreakerConfig
from codemend.core.errors import DependencyOpen, TransientError

logger = structlog.get_logger(__name__)

Fallback = Callable[[], Union[Any, Awaitable[Any]]]


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerState(BaseModel):
    name: str
    state: BreakerState
    failure_count: int
    last_failure_at: Optional[float] = None
    open_until: Optional[float] = None
    total_calls: int = 0
    total_failures: int = 0
    total_short_circuits: int = 0


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        exclude: Tuple[Type[BaseException], ...] = (),
    ):
        self.name = name
        self.config = config or BreakerConfig.default()
        self.clock = clock
        # Exceptions that mean the dependency answered (e.g. bad input); they never count as failures.
        self.exclude = exclude

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._open_until: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

        self._total_calls = 0
        self._total_failures = 0
        self._total_short_circuits = 0

    @property
    def state(self) -> BreakerState:
        return self._state

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            open_until=self._open_until,
            total_calls=self._total_calls,
            total_failures=self._total_failures,
            total_short_circuits=self._total_short_circuits,
        )

    def retry_after(self) -> float:
        if self._open_until is None:
            return 0.0
        return max(0.0, self._open_until - self.clock())

    async def call(self, fn: Callable[..., Any], *args: Any, fallback: Optional[Fallback] = None, **kwargs: Any) -> Any:
        """Invokes ``fn(*args, **kwargs)`` through the breaker.

        ``fn`` may be a plain function or a coroutine function. When the
        breaker refuses the call, ``fallback()`` is returned if given,
        otherwise ``DependencyOpen`` is raised.
        """
        admitted, is_trial = await self._admit()
        if not admitted:
            if fallback is not None:
                return await _maybe_await(fallback())
            raise DependencyOpen(self.name, retry_after=self.retry_after())

        try:
            if self.config.call_timeout:
                result = await asyncio.wait_for(_maybe_await(fn(*args, **kwargs)), timeout=self.config.call_timeout)
            else:
                result = await _maybe_await(fn(*args, **kwargs))
        except asyncio.TimeoutError as e:
            await self._on_failure(is_trial, e)
            raise TransientError(f"Call to '{self.name}' timed out after {self.config.call_timeout}s") from e
        except asyncio.CancelledError:
            if is_trial:
                await self._release_trial()
            raise
        except Exception as e:
            if isinstance(e, self.exclude):
                await self._on_success(is_trial)
            else:
                await self._on_failure(is_trial, e)
            raise

        await self._on_success(is_trial)
        return result

    async def _admit(self) -> Tuple[bool, bool]:
        async with self._lock:
            self._total_calls += 1
            if self._state == BreakerState.CLOSED:
                return True, False

            if self._state == BreakerState.OPEN and self._open_until is not None and self.clock() >= self._open_until:
                self._transition(BreakerState.HALF_OPEN)

            if self._state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                logger.info("circuit_trial", breaker=self.name)
                return True, True

            self._total_short_circuits += 1
            return False, False

    async def _on_success(self, is_trial: bool) -> None:
        async with self._lock:
            self._failure_count = 0
            if is_trial:
                self._trial_in_flight = False
                self._open_until = None
                self._transition(BreakerState.CLOSED)

    async def _on_failure(self, is_trial: bool, error: BaseException) -> None:
        async with self._lock:
            now = self.clock()
            self._total_failures += 1
            if is_trial:
                self._trial_in_flight = False
                self._open(now)
                return

            if self._last_failure_at is not None and now - self._last_failure_at > self.config.failure_window:
                self._failure_count = 0
            self._failure_count += 1
            self._last_failure_at = now
            logger.debug("circuit_failure", breaker=self.name, count=self._failure_count, error=str(error))

            if self._state == BreakerState.CLOSED and self._failure_count >= self.config.failure_threshold:
                self._open(now)

    async def _release_trial(self) -> None:
        async with self._lock:
            # A cancelled trial proves nothing; let the next caller try again.
            self._trial_in_flight = False
            self._state = BreakerState.OPEN
            self._open_until = self.clock()

    def _open(self, now: float) -> None:
        self._last_failure_at = now
        self._open_until = now + self.config.reset_timeout
        self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        if new_state == self._state:
            return
        logger.warning(
            "circuit_state_changed",
            breaker=self.name,
            from_state=self._state.value,
            to_state=new_state.value,
            failures=self._failure_count,
        )
        self._state = new_state

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._open_until = None
        self._trial_in_flight = False


class BreakerRegistry:
    """Process-wide breakers keyed by dependency name."""

    def __init__(
        self,
        configs: Optional[Dict[str, BreakerConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.configs = dict(configs or {})
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, exclude: Tuple[Type[BaseException], ...] = ()) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            config = self.configs.get(name) or self.configs.get("default") or BreakerConfig.default()
            breaker = CircuitBreaker(name, config, clock=self.clock, exclude=exclude)
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> List[CircuitBreakerState]:
        return [b.snapshot() for b in self._breakers.values()]

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
