# polling.py
"""One polling loop for every "wait until the page is ready" situation.

Short page transitions use a bounded policy; backend document generation,
whose duration is unknown, uses a large cap or none at all. A check answers
READY, TERMINAL_ERROR or NOT_YET. Terminal errors raise immediately and an
exhausted cap comes back as ``ready=False`` so the caller decides what next.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from errors import TerminalPageError
from executor import Sleep
from intelligence import PageIntelligence, matches_any

logger = logging.getLogger(__name__)


class Readiness(Enum):
    READY = "ready"
    TERMINAL_ERROR = "terminal_error"
    NOT_YET = "not_yet"


@dataclass(frozen=True)
class ReadinessCheck:
    readiness: Readiness
    signal: str = ""


@dataclass(frozen=True)
class PollPolicy:
    interval: float
    max_attempts: Optional[int]
    name: str = "page"
    log_every: int = 10

    @classmethod
    def bounded(cls, name: str, interval: float = 3.0, max_attempts: int = 40) -> "PollPolicy":
        return cls(interval=interval, max_attempts=max_attempts, name=name)

    @classmethod
    def unbounded(cls, name: str, interval: float = 5.0, max_attempts: Optional[int] = 120) -> "PollPolicy":
        return cls(interval=interval, max_attempts=max_attempts, name=name, log_every=6)


@dataclass(frozen=True)
class PollResult:
    ready: bool
    attempts: int
    signal: str = ""
    elapsed: float = 0.0


Check = Callable[[], Awaitable[ReadinessCheck]]


class ReadinessPoller:
    def __init__(self, policy: PollPolicy, *, sleep: Sleep = asyncio.sleep):
        self.policy = policy
        self._sleep = sleep

    async def poll(self, check: Check) -> PollResult:
        policy = self.policy
        cap = policy.max_attempts
        started = time.monotonic()
        attempt = 0
        while cap is None or attempt < cap:
            attempt += 1
            try:
                outcome = await check()
            except Exception as exc:
                logger.debug("  • %s check %d raised %s; treating as not ready.", policy.name, attempt, exc)
                outcome = ReadinessCheck(Readiness.NOT_YET, str(exc))

            if outcome.readiness is Readiness.READY:
                logger.info("✅ %s ready after %d attempt(s): %s", policy.name, attempt, outcome.signal)
                return PollResult(True, attempt, outcome.signal, time.monotonic() - started)
            if outcome.readiness is Readiness.TERMINAL_ERROR:
                logger.error("❌ %s reported an error at attempt %d: %s", policy.name, attempt, outcome.signal)
                raise TerminalPageError(outcome.signal, attempt)

            if attempt % policy.log_every == 0:
                limit = "∞" if cap is None else str(cap)
                logger.info("⏳ Still waiting for %s (%d/%s)...", policy.name, attempt, limit)
            if cap is not None and attempt >= cap:
                break
            await self._sleep(policy.interval)

        logger.warning("⚠️ Gave up waiting for %s after %d attempt(s).", policy.name, attempt)
        return PollResult(False, attempt, "", time.monotonic() - started)


def observation_check(
    intelligence: PageIntelligence,
    instruction: str,
    *,
    ready_terms: Iterable[str] = (),
    error_terms: Iterable[str] = (),
    ignore_terms: Iterable[str] = (),
) -> Check:
    """
    Build a check from one ``observe`` call. Elements whose description
    mentions an error term win over ready elements; with no ``ready_terms``
    any non-error element counts as ready.
    """
    ready_terms = tuple(ready_terms)
    error_terms = tuple(error_terms)
    ignore_terms = tuple(ignore_terms)

    async def check() -> ReadinessCheck:
        elements = await intelligence.observe(instruction)
        error = matches_any(elements, error_terms, exclude=ignore_terms) if error_terms else None
        if error:
            return ReadinessCheck(Readiness.TERMINAL_ERROR, error)
        if ready_terms:
            ready = matches_any(elements, ready_terms, exclude=ignore_terms)
        else:
            ready = next((el.description for el in elements), None)
        if ready:
            return ReadinessCheck(Readiness.READY, ready)
        return ReadinessCheck(Readiness.NOT_YET)

    return check
