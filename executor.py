# executor.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 2.0
    backoff: float = 2.0

    def wait_before(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based) before the next one."""
        return self.delay * (self.backoff ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    label: str = "action",
    sleep: Sleep = asyncio.sleep,
) -> Any:
    """
    Run ``operation`` until it succeeds or ``policy.max_attempts`` is spent.
    The last exception propagates to the caller unchanged.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            logger.warning("⚠️ Attempt %d/%d failed for %s: %s", attempt, attempts, label, exc)
            if attempt >= attempts:
                raise
            await sleep(policy.wait_before(attempt))


class ActionExecutor:
    """Browser interactions with bounded retry, plus a settle pause after each action."""

    def __init__(
        self,
        session,
        policy: Optional[RetryPolicy] = None,
        *,
        after_action_delay: float = 0.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.session = session
        self.policy = policy or RetryPolicy()
        self.after_action_delay = after_action_delay
        self._sleep = sleep

    async def _settle(self) -> None:
        if self.after_action_delay > 0:
            await self._sleep(self.after_action_delay)

    async def act(self, description: str) -> None:
        logger.info("🖱️ %s", description)
        await with_retry(lambda: self.session.act(description), self.policy, label=description, sleep=self._sleep)
        await self._settle()

    async def navigate(self, url: str) -> None:
        logger.info("🌐 Navigating to %s", url)
        await with_retry(lambda: self.session.navigate(url), self.policy, label=f"navigate {url}", sleep=self._sleep)
        await self._settle()

    async def type_text(self, field: str, text: str) -> None:
        description = f"type '{text}' into the {field}"
        logger.info("⌨️ %s", description)
        await with_retry(lambda: self.session.act(description), self.policy, label=description, sleep=self._sleep)
        await self._settle()

    async def try_act(self, description: str) -> bool:
        """Best-effort action: True on success, False (logged) after retries are spent."""
        try:
            await self.act(description)
            return True
        except Exception as exc:
            logger.info("  • Skipped '%s': %s", description, exc)
            return False

    async def click_with_reverification(
        self,
        description: str,
        still_pending: Callable[[], Awaitable[bool]],
    ) -> None:
        """
        Click a non-idempotent control. A failed click is only retried after
        ``still_pending`` confirms the page has not moved on; otherwise the
        original error propagates so the caller never clicks twice.
        """
        attempts = max(1, self.policy.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self.session.act(description)
                await self._settle()
                return
            except Exception as exc:
                logger.warning("⚠️ Attempt %d/%d failed for %s: %s", attempt, attempts, description, exc)
                if attempt >= attempts:
                    raise
                await self._sleep(self.policy.wait_before(attempt))
                if not await still_pending():
                    logger.warning("  • Page changed after the failed click on '%s'; not clicking again.", description)
                    raise
