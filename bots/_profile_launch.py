"""Launch helpers for a persistent Chromium profile.

The portal session (UAE PASS approval, selected account, cookie consent) is
kept in the profile directory so repeated runs can often skip the login. The
helpers return everything needed for shutdown so callers can release the
browser even when the batch fails.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright

logger = logging.getLogger(__name__)


async def launch_persistent(
    start_url: Optional[str],
    profile_dir: Path,
    *,
    headless: bool = False,
    downloads_dir: Optional[Path] = None,
) -> Tuple[Playwright, BrowserContext, Page]:
    """Launch a persistent Chromium context backed by ``profile_dir``.

    Parameters
    ----------
    start_url:
        Optional URL to open right after launch.
    profile_dir:
        Directory that stores the Chromium profile. Created when missing so
        the next run reuses the same session.
    headless:
        Whether to hide the browser window. The default keeps it visible
        because the operator has to solve CAPTCHAs in it.
    downloads_dir:
        Where Chromium stores downloaded documents before they are renamed.
    """

    profile_path = Path(profile_dir)
    profile_path.mkdir(parents=True, exist_ok=True)
    launch_kwargs = {"headless": headless, "accept_downloads": True}
    if downloads_dir is not None:
        Path(downloads_dir).mkdir(parents=True, exist_ok=True)
        launch_kwargs["downloads_path"] = str(downloads_dir)

    playwright = await async_playwright().start()
    context = await playwright.chromium.launch_persistent_context(str(profile_path), **launch_kwargs)

    if context.pages:
        page = context.pages[0]
    else:
        page = await context.new_page()

    if start_url:
        try:
            await page.goto(start_url, wait_until="load")
        except Exception as exc:
            # The login sequence navigates again with retries.
            logger.warning("⚠️ Initial navigation to %s failed: %s", start_url, exc)

    return playwright, context, page


async def shutdown(playwright: Optional[Playwright], context: Optional[BrowserContext]) -> None:
    """Dispose of the resources returned by ``launch_persistent``."""

    try:
        if context:
            await context.close()
    finally:
        if playwright:
            await playwright.stop()
