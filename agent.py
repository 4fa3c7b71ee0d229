# agent.py
from __future__ import annotations

import logging
from typing import List

from auth import AuthenticationSequencer
from bots._profile_launch import launch_persistent, shutdown as shutdown_persistent
from browser import PlaywrightSession
from errors import BatchAbortedError
from executor import ActionExecutor, RetryPolicy
from funds import FundsGuard
from intelligence import OpenAIPageIntelligence
from ledger import ApplicationLedger
from orchestrator import BatchOrchestrator
from portal import DariPortal
from processor import PlotProcessor
from records import PlotIdentifier
from report import BatchReport
from settings import AgentSettings
from spreadsheet import load_plots

logger = logging.getLogger(__name__)


class DocumentAgent:
    """Login, batch and report for one workflow run."""

    def __init__(self, settings: AgentSettings):
        self.settings = settings

    def load_plots(self) -> List[PlotIdentifier]:
        return load_plots(self.settings.spreadsheet_path, self.settings.plot_column_index)

    async def run(self) -> BatchReport:
        settings = self.settings
        # Spreadsheet problems are fatal before the browser opens.
        plots = self.load_plots()
        ledger = ApplicationLedger(settings.ledger_path).load()

        logger.info("🤖 %s: %d plot(s)", settings.preset.title, len(plots))
        playwright, context, page = await launch_persistent(
            None,
            settings.profile_dir,
            headless=settings.headless,
            downloads_dir=settings.download_dir,
        )
        try:
            intelligence = OpenAIPageIntelligence(page, model=settings.openai_model)
            session = PlaywrightSession(page, intelligence)
            retry = settings.retry
            executor = ActionExecutor(
                session,
                RetryPolicy(retry.max_attempts, retry.delay, retry.backoff),
                after_action_delay=settings.wait_times.after_click,
            )
            auth = AuthenticationSequencer(executor, intelligence, session, settings)
            portal = DariPortal(executor, intelligence, session, settings)

            await auth.login()
            if not await portal.open_service():
                logger.warning("⚠️ Service page not confirmed; the first search may fail.")

            processor = PlotProcessor(portal, ledger, FundsGuard(len(plots)), settings)
            orchestrator = BatchOrchestrator(
                processor,
                portal,
                ledger,
                settings,
                is_authenticated=auth.is_authenticated,
                relogin=auth.login,
            )
            try:
                report = await orchestrator.run(plots)
            except BatchAbortedError as exc:
                exc.report.write_json(settings.reports_dir)
                raise
            report.write_json(settings.reports_dir)
            return report
        finally:
            await shutdown_persistent(playwright, context)
