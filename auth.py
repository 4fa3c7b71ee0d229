# auth.py
"""Portal login through UAE PASS.

The phone approval happens on the user's device, so success is detected by
polling: the browser must have left the UAE PASS domain *and* the portal
must show logged-in controls. A changed URL alone is not enough.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re

from errors import AuthenticationError
from executor import ActionExecutor, Sleep
from intelligence import PageIntelligence, matches_any
from polling import PollPolicy, Readiness, ReadinessCheck, ReadinessPoller
from settings import AgentSettings

logger = logging.getLogger(__name__)

LOGIN_POLL_INTERVAL = 3.0


class AuthenticationSequencer:
    def __init__(
        self,
        executor: ActionExecutor,
        intelligence: PageIntelligence,
        session,
        settings: AgentSettings,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self.executor = executor
        self.intelligence = intelligence
        self.session = session
        self.settings = settings
        self._sleep = sleep
        self._auth_url = re.compile(settings.detection.auth_url_pattern, re.IGNORECASE)

    async def login(self) -> None:
        settings = self.settings

        logger.info("🔐 Logging in to %s", settings.navigation.base_url)
        await self.executor.navigate(settings.navigation.base_url)
        await self.accept_cookies()

        if await self.is_authenticated():
            logger.info("✅ Already logged in (persistent profile).")
        else:
            await self._sign_in()

        if settings.account_switching.enabled:
            await self.switch_account()

    async def _sign_in(self) -> None:
        settings = self.settings
        elements = settings.elements
        waits = settings.wait_times

        await self.executor.act(f"click the {elements.login_button}")
        await self.executor.act(f"click the {elements.uae_pass_login_button}")
        await self.session.wait_for_network_settled(waits.page_load)

        await self.executor.type_text(elements.phone_field, settings.mobile_number)
        await self.executor.try_act("click on the Remember me checkbox to enable it")

        challenge = await self.intelligence.observe("find a CAPTCHA, 'I am not a robot' checkbox or image challenge")
        if matches_any(challenge, ("captcha", "robot", "challenge")):
            logger.info("🧩 CAPTCHA detected; solve it in the browser within %.0fs.", waits.captcha)
            await self._sleep(waits.captcha)

        await self.executor.act(f"click the {elements.submit_login_button}")
        logger.info("📱 Approve the login in the UAE PASS app (up to %.0fs)...", waits.uae_pass_timeout)

        attempts = max(1, math.ceil(waits.uae_pass_timeout / LOGIN_POLL_INTERVAL))
        poller = ReadinessPoller(
            PollPolicy.bounded("UAE PASS approval", interval=LOGIN_POLL_INTERVAL, max_attempts=attempts),
            sleep=self._sleep,
        )
        result = await poller.poll(self._login_check)
        if not result.ready:
            raise AuthenticationError(
                "Login verification timeout. Please check if UAE Pass approval was completed."
            )
        logger.info("✅ Logged in.")

    async def _login_check(self) -> ReadinessCheck:
        url = await self.session.current_url()
        if self._auth_url.search(url):
            return ReadinessCheck(Readiness.NOT_YET, "still on UAE PASS")
        indicator = await self._login_indicator()
        if indicator:
            return ReadinessCheck(Readiness.READY, indicator)
        return ReadinessCheck(Readiness.NOT_YET, "left UAE PASS but no logged-in controls yet")

    async def _login_indicator(self):
        observed = await self.intelligence.observe(
            "find the logout button, user profile menu, dashboard link or My Account link"
        )
        return matches_any(observed, self.settings.detection.login_indicators)

    async def is_authenticated(self) -> bool:
        try:
            url = await self.session.current_url()
            if self._auth_url.search(url):
                return False
            return bool(await self._login_indicator())
        except Exception as exc:
            logger.warning("⚠️ Could not verify login state: %s", exc)
            return False

    async def accept_cookies(self) -> None:
        observed = await self.intelligence.observe("find a cookie banner Accept all or Allow all cookies button")
        if matches_any(observed, ("accept", "allow")):
            await self.executor.try_act("click Allow all cookies or Accept all on the cookie banner")

    async def switch_account(self) -> None:
        target = self.settings.account_switching.target_account_name
        logger.info("👥 Switching account to %s", target)
        await self.executor.act("click the user menu in the top right header")
        await self.executor.act("click the Switch Account option in the dropdown menu")
        await self.session.wait_for_network_settled(self.settings.wait_times.page_load)
        await self.executor.act(f"click on the {target} account profile")
        await self.session.wait_for_network_settled(self.settings.wait_times.page_load)
        if not await self.is_authenticated():
            raise AuthenticationError(f"Lost the session while switching to account {target}")
        logger.info("✅ Now acting as %s", target)
