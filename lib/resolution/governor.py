"""Adaptive per-target rate governor with circuit breaking.

Each target (a hostname or a named service like "serper") has its own delay
that grows on failure and relaxes on success. After ``failure_threshold``
consecutive failures the target enters a cooldown during which no call is
dispatched. Once the cooldown elapses the next caller is let through
(half-open); a success closes the circuit, another failure reopens it.

Usage:
    governor = RateGovernor()
    await governor.wait_for_slot("ufficiocamerale.it")
    try:
        resp = await client.get(url)
        governor.report_success("ufficiocamerale.it")
    except httpx.HTTPError:
        governor.report_failure("ufficiocamerale.it")
        raise
"""

import asyncio
import random
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from lib.resolution.errors import ConfigurationError
from lib.resolution.normalize import domain_of


@dataclass
class DomainState:
    current_delay: float
    consecutive_failures: int = 0
    cooldown_until: float = 0.0
    last_access: Optional[float] = None
    total_successes: int = 0
    total_failures: int = 0


def target_key(target: str) -> str:
    """Hostname for URLs, lowercased name for named services."""
    if "/" in target or "." in target:
        domain = domain_of(target)
        if domain:
            return domain
    return target.strip().lower()


class RateGovernor:
    def __init__(
        self,
        min_delay: float = 1.5,
        max_delay: float = 30.0,
        backoff_factor: float = 2.0,
        recovery_factor: float = 0.75,
        failure_threshold: int = 3,
        cooldown_multiplier: float = 4.0,
        max_cooldown: float = 120.0,
        jitter_max: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_delay < 0 or max_delay < min_delay:
            raise ConfigurationError(f"invalid governor delays: min={min_delay} max={max_delay}")
        if backoff_factor < 1.5:
            raise ConfigurationError(f"backoff_factor must be >= 1.5, got {backoff_factor}")
        if not 0 < recovery_factor < 1:
            raise ConfigurationError(f"recovery_factor must be in (0, 1), got {recovery_factor}")
        if failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")

        self.min_delay = min_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.recovery_factor = recovery_factor
        self.failure_threshold = failure_threshold
        self.cooldown_multiplier = cooldown_multiplier
        self.max_cooldown = max_cooldown
        self.jitter_max = jitter_max
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, DomainState] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _state(self, key: str) -> DomainState:
        state = self._states.get(key)
        if state is None:
            state = DomainState(current_delay=self.min_delay)
            self._states[key] = state
        return state

    async def wait_for_slot(self, target: str) -> float:
        """Suspend until ``target`` may be contacted. Returns seconds waited.

        Callers for the same target are serialized on that target's lock;
        other targets proceed independently.
        """
        key = target_key(target)
        state = self._state(key)
        waited = 0.0
        async with self._locks[key]:
            now = self._clock()
            if state.cooldown_until > now:
                pause = state.cooldown_until - now
                logger.warning(
                    f"[governor] {key} circuit open, waiting {pause:.1f}s "
                    f"({state.consecutive_failures} consecutive failures)"
                )
                await self._sleep(pause)
                waited += pause
                now = self._clock()

            if state.last_access is not None:
                spacing = state.current_delay - (now - state.last_access)
                if spacing > 0:
                    jitter = random.uniform(0, self.jitter_max) if self.jitter_max > 0 else 0.0
                    await self._sleep(spacing + jitter)
                    waited += spacing + jitter

            state.last_access = self._clock()
        return waited

    def report_success(self, target: str) -> None:
        key = target_key(target)
        state = self._state(key)
        was_open = state.consecutive_failures >= self.failure_threshold
        state.consecutive_failures = 0
        state.cooldown_until = 0.0
        state.total_successes += 1
        state.current_delay = max(self.min_delay, state.current_delay * self.recovery_factor)
        if was_open:
            logger.info(f"[governor] {key} recovered, delay {state.current_delay:.2f}s")

    def report_failure(self, target: str) -> None:
        key = target_key(target)
        state = self._state(key)
        state.consecutive_failures += 1
        state.total_failures += 1
        state.current_delay = min(self.max_delay, state.current_delay * self.backoff_factor)

        if state.consecutive_failures >= self.failure_threshold:
            cooldown = min(state.current_delay * self.cooldown_multiplier, self.max_cooldown)
            state.cooldown_until = self._clock() + cooldown
            logger.warning(
                f"[governor] {key} tripped after {state.consecutive_failures} failures, "
                f"cooldown {cooldown:.1f}s"
            )
        else:
            logger.debug(f"[governor] {key} backoff -> {state.current_delay:.2f}s")

    def is_open(self, target: str) -> bool:
        """True while the target is inside a cooldown window."""
        state = self._states.get(target_key(target))
        return bool(state and state.cooldown_until > self._clock())

    def snapshot(self, target: str) -> DomainState:
        """Copy of the target's state (default state if never seen)."""
        state = self._states.get(target_key(target))
        if state is None:
            return DomainState(current_delay=self.min_delay)
        return replace(state)

    def reset(self, target: Optional[str] = None) -> None:
        """Forget one target's state, or every target's when called without one."""
        if target is None:
            self._states.clear()
            return
        self._states.pop(target_key(target), None)

    def targets(self) -> list[str]:
        return list(self._states)
