# browser.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Protocol

from errors import ElementNotFoundError
from intelligence import PageIntelligence

logger = logging.getLogger(__name__)

QUOTED_TEXT = re.compile(r"'([^']*)'|\"([^\"]*)\"")

CHECKED_LABELS_SCRIPT = """
() => {
    const labels = [];
    const describe = (el) => {
        if (el.labels && el.labels.length) {
            return Array.from(el.labels).map((l) => (l.innerText || "").trim()).join(" ");
        }
        const wrapping = el.closest("label, [role='radio'], li, div");
        return wrapping ? (wrapping.innerText || "").trim() : (el.getAttribute("aria-label") || el.value || "");
    };
    document.querySelectorAll("input[type='radio']:checked").forEach((el) => labels.push(describe(el)));
    document.querySelectorAll("[role='radio'][aria-checked='true']").forEach((el) => {
        labels.push((el.innerText || el.getAttribute("aria-label") || "").trim());
    });
    return labels.filter(Boolean);
}
"""


class BrowserSession(Protocol):
    async def navigate(self, url: str) -> None: ...

    async def act(self, action: str) -> None: ...

    async def current_url(self) -> str: ...

    async def wait_for_network_settled(self, timeout: float = 10.0) -> None: ...

    async def raw_text_content(self) -> str: ...

    async def checked_option_labels(self) -> List[str]: ...

    async def download(self, action: str, target_dir: Path, timeout: float = 60.0) -> Optional[Path]: ...


class PlaywrightSession:
    """Browser session over one async Playwright page, acting through page intelligence."""

    def __init__(self, page, intelligence: PageIntelligence, *, action_timeout: float = 10.0):
        self.page = page
        self.intelligence = intelligence
        self.action_timeout_ms = int(action_timeout * 1000)

    async def navigate(self, url: str) -> None:
        await self.page.goto(url, wait_until="load")

    async def current_url(self) -> str:
        return self.page.url or ""

    async def wait_for_network_settled(self, timeout: float = 10.0) -> None:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=int(timeout * 1000))
        except Exception as exc:
            # Long-polling pages never go idle; settling is advisory.
            logger.debug("  • Network did not settle within %.1fs: %s", timeout, exc)

    async def raw_text_content(self) -> str:
        text = await self.page.evaluate("() => document.body ? document.body.innerText : ''")
        return text or ""

    async def checked_option_labels(self) -> List[str]:
        labels = await self.page.evaluate(CHECKED_LABELS_SCRIPT)
        return [str(label) for label in labels or []]

    async def act(self, action: str) -> None:
        elements = await self.intelligence.observe(action)
        target = next((el for el in elements if el.selector), None)
        if target is None:
            raise ElementNotFoundError(f"No element found for: {action}")

        locator = self.page.locator(target.selector).first
        await locator.wait_for(state="visible", timeout=self.action_timeout_ms)
        method = target.method
        logger.debug("  • %s -> %s (%s)", action, target.description, method)
        if method == "fill":
            await locator.fill(self._text_argument(target.arguments, action), timeout=self.action_timeout_ms)
        elif method == "check":
            await locator.check(timeout=self.action_timeout_ms)
        elif method == "press":
            key = target.arguments[0] if target.arguments else "Enter"
            await locator.press(key, timeout=self.action_timeout_ms)
        elif method == "select":
            await locator.select_option(self._text_argument(target.arguments, action), timeout=self.action_timeout_ms)
        else:
            await locator.click(timeout=self.action_timeout_ms)

    async def download(self, action: str, target_dir: Path, timeout: float = 60.0) -> Optional[Path]:
        target_dir.mkdir(parents=True, exist_ok=True)
        async with self.page.expect_download(timeout=int(timeout * 1000)) as download_info:
            await self.act(action)
        download = await download_info.value
        destination = target_dir / download.suggested_filename
        await download.save_as(str(destination))
        logger.info("📥 Saved %s", destination)
        return destination

    @staticmethod
    def _text_argument(arguments, action: str) -> str:
        if arguments:
            return arguments[0]
        match = QUOTED_TEXT.search(action)
        if match:
            return match.group(1) if match.group(1) is not None else match.group(2)
        raise ElementNotFoundError(f"No text to enter for: {action}")
