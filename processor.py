# processor.py
"""Drives one plot from search to downloaded document.

States advance strictly in order::

    SearchingProperty -> PropertySelected -> ApplicationIdentified
        -> FundsValidated -> Paid -> AwaitingDocument -> Downloaded

with NotOwned, InsufficientFunds, ExtractionFailed and Error as terminal
alternates (plus DryRun when payments are switched off). A plot that already
has a history entry never reaches the payment steps; it goes straight to the
applications list and only tries the download.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from errors import TerminalPageError
from extraction import parse_amount
from funds import FundsGuard
from ledger import ApplicationLedger
from polling import PollPolicy
from portal import DariPortal
from records import ApplicationRecord, PlotIdentifier, PlotState
from settings import AgentSettings

logger = logging.getLogger(__name__)


class PlotProcessor:
    def __init__(
        self,
        portal: DariPortal,
        ledger: ApplicationLedger,
        funds_guard: FundsGuard,
        settings: AgentSettings,
    ):
        self.portal = portal
        self.ledger = ledger
        self.funds_guard = funds_guard
        self.settings = settings

    async def process(self, plot: PlotIdentifier, record: ApplicationRecord) -> ApplicationRecord:
        portal = self.portal
        logger.info("🎯 Plot %s (row %d)", plot.value, plot.row_number)

        entry = self.ledger.lookup(plot.value)
        if entry is not None:
            record.pre_existing = True
            record.request_id = entry.request_id
            record.payment_completed = entry.payment_confirmed or entry.downloaded
            record.payment_unconfirmed = not record.payment_completed
            if entry.downloaded:
                record.document_downloaded = True
                record.state = PlotState.DOWNLOADED
                logger.info("⏭️ Plot %s already downloaded (application %s).", plot.value, entry.request_id)
                return record
            logger.info("⏭️ Plot %s has application %s from a previous run; skipping payment.", plot.value, entry.request_id)
            if not entry.payment_confirmed:
                logger.warning(
                    "⚠️ History for plot %s was written before payment was confirmed; "
                    "check application %s manually if no document appears.",
                    plot.value,
                    entry.request_id,
                )
            return await self.resume_download(record)

        # 1. search
        record.state = PlotState.SEARCHING_PROPERTY
        search = await portal.search_plot(plot)
        if not search.found:
            logger.info("🚫 Plot %s is not owned by this account (%s).", plot.value, search.reason)
            record.state = PlotState.NOT_OWNED
            return record

        # 2. select and proceed
        await portal.select_result()
        await portal.confirm_selection()
        await portal.proceed()
        record.state = PlotState.PROPERTY_SELECTED

        # 3. application id
        page = await portal.wait_for_application_page()
        if not page.ready:
            return record.fail(PlotState.ERROR, "Could not reach the payment page after clicking Proceed")
        if await portal.on_error_page():
            return record.fail(PlotState.ERROR, "Navigation failed after clicking Proceed")

        request_id = await portal.extract_request_id()
        if not request_id:
            return record.fail(PlotState.EXTRACTION_FAILED, "No application id found on the payment page")
        record.request_id = request_id
        if self.settings.payment.enabled:
            self.ledger.record_payment(plot.value, request_id)
        record.state = PlotState.APPLICATION_IDENTIFIED

        # 4. funds
        if not await portal.select_wallet():
            return record.fail(PlotState.ERROR, "DARI wallet could not be selected")
        balance_text, fee_text = await portal.read_payment_details()
        try:
            balance = parse_amount(balance_text)
            fee = parse_amount(fee_text)
            if fee <= 0:
                raise ValueError(f"fee must be positive, got {fee_text!r}")
        except ValueError as exc:
            return record.fail(PlotState.ERROR, f"Unreadable payment amounts: {exc}")
        logger.info("💰 Wallet balance %s, fee %s", balance, fee)

        # BatchAffordabilityError propagates to stop the batch.
        if not self.funds_guard.check(fee, balance):
            return record.fail(PlotState.INSUFFICIENT_FUNDS, f"Balance {balance} is below the fee {fee}")
        record.state = PlotState.FUNDS_VALIDATED

        if not self.settings.payment.enabled:
            logger.info("🧪 Payments disabled; stopping plot %s before Pay.", plot.value)
            record.state = PlotState.DRY_RUN
            return record

        # 5. pay
        payment = await portal.pay()
        if not payment.succeeded:
            if not payment.clicked:
                return record.fail(PlotState.ERROR, payment.signal)
            return record.fail(PlotState.ERROR, f"Payment error: {payment.signal}")
        record.payment_completed = True
        self.ledger.confirm_payment(plot.value)
        record.state = PlotState.PAID
        logger.info("✅ Paid for plot %s (application %s).", plot.value, request_id)

        # 6-7. wait and download
        return await self.await_and_download(record, portal.document_policy())

    async def resume_download(self, record: ApplicationRecord, *, via_recovery: bool = False) -> ApplicationRecord:
        """Find an already-paid application in the applications list and try to download it."""
        portal = self.portal
        request_id = record.request_id or ""
        record.state = _waiting_state(record)
        await portal.open_applications_list()
        if not await portal.search_application(request_id):
            record.error = f"Application {request_id} not found in the applications list"
            return record
        await portal.open_application()
        return await self.await_and_download(record, portal.recovery_policy(), via_recovery=via_recovery)

    async def await_and_download(
        self,
        record: ApplicationRecord,
        policy: PollPolicy,
        *,
        via_recovery: bool = False,
    ) -> ApplicationRecord:
        record.state = PlotState.AWAITING_DOCUMENT
        try:
            ready = await self.portal.wait_for_document(policy)
        except TerminalPageError as exc:
            return record.fail(PlotState.ERROR, f"Document generation failed: {exc.signal}")

        if not ready.ready:
            logger.warning("⏳ Document for plot %s not ready yet; deferring.", record.plot.value)
            record.state = _waiting_state(record)
            return record

        record.download_attempts += 1
        record.last_download_attempt_at = datetime.now(UTC)
        path = None
        try:
            path = await self.portal.download_document(record.plot, record.request_id)
        except Exception as exc:
            logger.warning("⚠️ Download for plot %s failed: %s", record.plot.value, exc)
            record.error = f"Download failed: {exc}"
        if path is None:
            record.state = _waiting_state(record)
            return record

        # a document only exists for a paid application
        record.payment_completed = True
        record.payment_unconfirmed = False
        record.document_downloaded = True
        record.document_path = str(path)
        record.downloaded_via_recovery = via_recovery
        record.error = None
        record.state = PlotState.DOWNLOADED
        self.ledger.mark_downloaded(record.plot.value)
        logger.info("📄 Document for plot %s saved to %s", record.plot.value, path)
        return record


def _waiting_state(record: ApplicationRecord) -> PlotState:
    # an unconfirmed history entry may never have been charged
    return PlotState.PAID if record.payment_completed else PlotState.APPLICATION_IDENTIFIED
