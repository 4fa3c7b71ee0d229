# orchestrator.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, NoReturn, Optional, Sequence

from errors import AuthenticationError, BatchAbortedError, BatchAffordabilityError
from executor import Sleep
from ledger import ApplicationLedger
from polling import PollPolicy, Readiness, ReadinessCheck, ReadinessPoller
from portal import DariPortal
from processor import PlotProcessor
from records import ApplicationRecord, PlotIdentifier, PlotState
from report import BatchReport
from settings import AgentSettings

logger = logging.getLogger(__name__)

AuthCheck = Callable[[], Awaitable[bool]]
Relogin = Callable[[], Awaitable[None]]

LOGIN_RECHECK_ATTEMPTS = 5


class BatchOrchestrator:
    """
    Runs every plot through the processor in spreadsheet order. A failing
    plot is recorded and the page is recovered before moving on; only a
    batch-wide affordability failure stops the loop before the end. A session
    that cannot be restored ends the loop early, but paid plots still get the
    recovery pass and the caller still gets the report.
    """

    def __init__(
        self,
        processor: PlotProcessor,
        portal: DariPortal,
        ledger: ApplicationLedger,
        settings: AgentSettings,
        *,
        is_authenticated: Optional[AuthCheck] = None,
        relogin: Optional[Relogin] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.processor = processor
        self.portal = portal
        self.ledger = ledger
        self.settings = settings
        self.is_authenticated = is_authenticated
        self.relogin = relogin
        self._sleep = sleep

    async def run(self, plots: Sequence[PlotIdentifier]) -> BatchReport:
        report = BatchReport(workflow=self.settings.workflow, plot_count=len(plots))
        records: List[ApplicationRecord] = [ApplicationRecord(plot=plot) for plot in plots]
        logger.info("🚀 %d plot(s) to process, %d application(s) already in history.", len(records), len(self.ledger))

        for index, record in enumerate(records, start=1):
            logger.info("── Plot %d/%d: %s ──", index, len(records), record.plot.value)
            session_lost: Optional[AuthenticationError] = None
            try:
                await self.processor.process(record.plot, record)
            except BatchAffordabilityError as exc:
                logger.error("❌ %s", exc)
                self._abort(report, records, index - 1, exc)
            except AuthenticationError as exc:
                record.fail(PlotState.ERROR, str(exc))
                session_lost = exc
            except Exception as exc:
                logger.exception("❌ Plot %s failed: %s", record.plot.value, exc)
                record.fail(PlotState.ERROR, str(exc) or exc.__class__.__name__)
                try:
                    await self.recover()
                except AuthenticationError as auth_exc:
                    session_lost = auth_exc
            report.records.append(record)

            if session_lost is not None:
                self._stop_early(report, records[index:], session_lost)
                break
            if index < len(records):
                await self.portal.return_to_service()

        await self.recovery_pass(report.records)
        return report.finish()

    def _abort(
        self,
        report: BatchReport,
        records: List[ApplicationRecord],
        stopped_at: int,
        cause: BatchAffordabilityError,
    ) -> NoReturn:
        # Plots already finished keep their outcome; nothing was charged for any of them.
        for record in records[stopped_at:]:
            record.state = PlotState.NOT_ATTEMPTED
        report.records = records
        report.aborted = True
        report.shortfall = cause.shortfall
        report.abort_reason = str(cause)
        report.finish()
        raise BatchAbortedError(report, cause) from cause

    def _stop_early(
        self,
        report: BatchReport,
        remaining: Sequence[ApplicationRecord],
        cause: AuthenticationError,
    ) -> None:
        logger.error("❌ Session could not be restored (%s); %d plot(s) left unattempted.", cause, len(remaining))
        for record in remaining:
            record.state = PlotState.NOT_ATTEMPTED
        report.records.extend(remaining)
        report.aborted = True
        report.abort_reason = f"Session lost: {cause}"

    async def _still_logged_in(self) -> bool:
        async def check() -> ReadinessCheck:
            if await self.is_authenticated():
                return ReadinessCheck(Readiness.READY, "logged-in controls visible")
            return ReadinessCheck(Readiness.NOT_YET)

        policy = PollPolicy.bounded(
            "login check",
            interval=self.settings.polling.transition_interval,
            max_attempts=LOGIN_RECHECK_ATTEMPTS,
        )
        result = await ReadinessPoller(policy, sleep=self._sleep).poll(check)
        return result.ready

    async def recover(self) -> None:
        """
        Reload home, then make sure we are still logged in. A login check that
        keeps failing triggers one full re-login; only a failed re-login raises
        ``AuthenticationError``.
        """
        try:
            if await self.portal.on_error_page():
                logger.info("🔄 On an error page; reloading home.")
            await self.portal.reset_to_home()
        except Exception as exc:
            logger.warning("⚠️ Page recovery failed: %s", exc)

        if self.is_authenticated is None or await self._still_logged_in():
            return
        if self.relogin is None:
            logger.warning("⚠️ Logged-in controls not found after recovery; continuing.")
            return

        logger.warning("🔐 Session looks lost; logging in again.")
        try:
            await self.relogin()
        except AuthenticationError:
            raise
        except Exception as exc:
            raise AuthenticationError(f"Re-login after recovery failed: {exc}") from exc

    async def recovery_pass(self, records: Sequence[ApplicationRecord]) -> None:
        pending = [record for record in records if record.is_pending_download]
        if not pending:
            return
        logger.info("🔁 Recovery pass for %d paid plot(s) without a document.", len(pending))
        for record in pending:
            try:
                await self.processor.resume_download(record, via_recovery=True)
            except Exception as exc:
                logger.exception("❌ Recovery for plot %s failed: %s", record.plot.value, exc)
                record.error = f"Recovery failed: {exc}"
            if record.document_downloaded:
                logger.info("✅ Recovered document for plot %s.", record.plot.value)
            else:
                logger.warning("⏳ Plot %s is still waiting for its document.", record.plot.value)
