# portal.py
"""Operation sequences for the Dari portal's current UI.

Each method is one user-visible step (search a plot, pick the wallet, pay,
wait for the document...). The state machine in ``processor`` decides which
step runs next; this module only knows how a step is done on this site.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from errors import ElementNotFoundError
from executor import ActionExecutor, RetryPolicy, Sleep, with_retry
from extraction import extract_amount, extract_request_id
from intelligence import ObservedElement, PageIntelligence, matches_any
from polling import PollPolicy, PollResult, ReadinessPoller, observation_check
from records import PlotIdentifier, SearchResult
from settings import AgentSettings

logger = logging.getLogger(__name__)

GATEWAY_URL_PATTERN = re.compile(r"abudhabipay\.|paymentpage\.", re.IGNORECASE)

WALLET_ACTIONS = (
    "click the DARI wallet radio button in the payment options section",
    "click the radio button next to the text 'DARI wallet'",
    "select DARI wallet as the payment method",
    "click near the text DARI wallet to select it as the payment option",
)

APPLICATION_PAGE_TERMS = (
    "dari wallet",
    "credit card",
    "debit",
    "payment",
    "application id",
    "reference number",
    "certificate",
)


@dataclass(frozen=True)
class PaymentCheck:
    clicked: bool
    succeeded: bool
    signal: str = ""


class DariPortal:
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

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _transition_poller(self, name: str, max_attempts: Optional[int] = None) -> ReadinessPoller:
        polling = self.settings.polling
        policy = PollPolicy.bounded(
            name,
            interval=polling.transition_interval,
            max_attempts=max_attempts or polling.transition_max_attempts,
        )
        return ReadinessPoller(policy, sleep=self._sleep)

    async def _page_text(self) -> str:
        try:
            return (await self.session.raw_text_content()).lower()
        except Exception as exc:
            logger.debug("  • Could not read page text: %s", exc)
            return ""

    async def settle(self) -> None:
        await self.session.wait_for_network_settled(self.settings.wait_times.page_load)
        await self._sleep(self.settings.wait_times.dom_settle)

    async def on_error_page(self) -> bool:
        url = (await self.session.current_url()).lower()
        return "404" in url or "error" in url

    # ------------------------------------------------------------------
    # navigation
    # ------------------------------------------------------------------
    async def open_service(self) -> bool:
        navigation = self.settings.navigation
        elements = self.settings.elements
        if navigation.service_url:
            await self.executor.navigate(navigation.service_url)
        else:
            await self.executor.act(f"click the {elements.services_menu}")
            await self.executor.act(f"click the '{navigation.service_text}' service card")
        return await self.verify_service_page()

    async def verify_service_page(self) -> bool:
        service = self.settings.navigation.service_text
        check = observation_check(
            self.intelligence,
            f"Find the Plot Number filter field or the property list on the {service} service page",
            ready_terms=("plot", "filter", "propert"),
        )
        result = await self._transition_poller("service page", max_attempts=20).poll(check)
        if result.ready:
            logger.info("📋 On the '%s' service page.", service)
        else:
            logger.warning("⚠️ Could not confirm the '%s' service page.", service)
        return result.ready

    async def return_to_service(self) -> None:
        try:
            await self.open_service()
        except Exception as exc:
            logger.warning("⚠️ Could not return to the service page: %s", exc)

    async def reset_to_home(self) -> None:
        await self.executor.navigate(self.settings.navigation.base_url)
        await self.settle()

    async def guard_stray_payment_page(self) -> bool:
        url = await self.session.current_url()
        if not GATEWAY_URL_PATTERN.search(url):
            return False
        logger.warning("⚠️ Unexpected redirect to the external payment gateway (%s). Going back.", url)
        await self.return_to_service()
        return True

    # ------------------------------------------------------------------
    # search and selection
    # ------------------------------------------------------------------
    async def search_plot(self, plot: PlotIdentifier, *, allow_retry: bool = True) -> SearchResult:
        detection = self.settings.detection
        await self.executor.type_text(self.settings.elements.plot_number_field, plot.value)

        buttons = await self.intelligence.observe(
            "Find any Search, Show Results, Filter, or Apply button near the filters"
        )
        if matches_any(buttons, ("search", "show results", "filter", "apply"), exclude=("pay",)):
            await self.executor.try_act(f"click the {self.settings.elements.show_results_button}")
        else:
            logger.info("  • No search button found, assuming the list filters itself.")

        if await self.guard_stray_payment_page():
            if not allow_retry:
                raise ElementNotFoundError("Search keeps redirecting to the payment gateway")
            return await self.search_plot(plot, allow_retry=False)

        await self._transition_poller("search results", max_attempts=30).poll(
            observation_check(
                self.intelligence,
                "Find filtered property results on the right side, or a message saying no properties were found",
            )
        )

        text = await self._page_text()
        phrase = next((p for p in detection.not_owned_phrases if p in text), None)
        if phrase:
            return SearchResult(False, phrase)

        results = await self.intelligence.observe(
            "Find the property cards or results on the right side showing filtered properties, "
            "or any message indicating no properties were found"
        )
        message = matches_any(results, detection.not_owned_phrases + detection.no_result_phrases)
        if message:
            return SearchResult(False, message)
        if not results:
            return SearchResult(False, "no results observed")
        return SearchResult(True, matches=results)

    async def select_result(self) -> None:
        await self.executor.act("click on the property that appears in the search results on the right side")

    async def confirm_selection(self) -> bool:
        try:
            observed = await self.intelligence.observe(
                "find the selected property card with checkmark or highlight, and the Proceed button at the bottom"
            )
        except Exception as exc:
            logger.info("  • Selection check unavailable: %s", exc)
            return False
        selected = matches_any(observed, ("selected", "checkmark", "checked", "highlighted"))
        if selected:
            logger.info("✅ Property selected: %s", selected)
        else:
            logger.warning("⚠️ Could not confirm the property selection; continuing.")
        return bool(selected)

    async def proceed(self) -> None:
        observed = await self.intelligence.observe(
            "Find the red Proceed button on the right side at the bottom (NOT the gray Cancel button)"
        )
        if not matches_any(
            [el for el in observed if el.method == "click"],
            ("proceed",),
            exclude=("cancel",),
        ):
            raise ElementNotFoundError("Could not find the Proceed button")
        await self.executor.act(f"click the red {self.settings.elements.proceed_button}, not the Cancel button")

    async def wait_for_application_page(self) -> PollResult:
        detection = self.settings.detection
        terms = APPLICATION_PAGE_TERMS + self.settings.preset.document_keywords
        check = observation_check(
            self.intelligence,
            "Find payment options (DARI wallet, credit card), application ID field, "
            "certificate details, or processing messages",
            ready_terms=terms,
            error_terms=detection.error_indicators,
        )
        return await self._transition_poller("application page", max_attempts=30).poll(check)

    async def extract_request_id(self) -> Optional[str]:
        detection = self.settings.detection
        return await extract_request_id(
            self.intelligence,
            self.session,
            pattern=detection.application_id_pattern,
            fallbacks=detection.application_id_fallbacks,
        )

    # ------------------------------------------------------------------
    # funds and payment
    # ------------------------------------------------------------------
    async def wallet_selected(self) -> bool:
        try:
            labels = await self.session.checked_option_labels()
        except Exception as exc:
            logger.debug("  • Could not inspect the checked payment option: %s", exc)
            return False
        for label in labels:
            lowered = label.lower()
            if "dari" in lowered and "wallet" in lowered:
                return True
        return False

    async def select_wallet(self) -> bool:
        if await self.wallet_selected():
            return True
        actions = (f"click the {self.settings.elements.wallet_radio_button}",) + WALLET_ACTIONS
        for action in actions:
            if not await self.executor.try_act(action):
                continue
            if await self.wallet_selected():
                logger.info("✅ DARI wallet selected.")
                return True
            logger.info("  • '%s' did not leave the wallet checked.", action)
        return False

    async def read_payment_details(self) -> Tuple[Optional[str], Optional[str]]:
        payment = self.settings.payment
        await self._transition_poller("payment details", max_attempts=20).poll(
            observation_check(
                self.intelligence,
                "Find the payment details section showing the wallet balance and the total to be paid",
                ready_terms=("balance", "total", "amount"),
            )
        )
        balance = await extract_amount(
            self.intelligence,
            self.session,
            instruction="Extract the DARI wallet balance shown in the payment options (number only)",
            key="walletBalance",
            pattern=payment.wallet_balance_pattern,
        )
        fee = await extract_amount(
            self.intelligence,
            self.session,
            instruction="Extract the 'Total to be paid' amount (number only)",
            key="totalAmount",
            pattern=payment.total_amount_pattern,
        )
        return balance, fee

    async def pay_button_pending(self) -> bool:
        """True while the Pay button is still there and nothing says the payment went through."""
        detection = self.settings.detection
        buttons = await self.intelligence.observe("find the Pay now button at the bottom of the page")
        if not matches_any(buttons, ("pay now",)):
            return False
        status = await self.intelligence.observe(
            "find any payment processing, success, confirmation or error messages"
        )
        return not matches_any(status, detection.processing_indicators + detection.error_indicators)

    async def pay(self) -> PaymentCheck:
        detection = self.settings.detection
        buttons = await self.intelligence.observe(
            "find the Pay now button at the bottom of the page to complete the payment"
        )
        if not matches_any(buttons, ("pay now",)):
            return PaymentCheck(clicked=False, succeeded=False, signal="Pay now button not found")

        logger.info("💳 Paying...")
        await self.executor.click_with_reverification(
            f"click the {self.settings.elements.pay_now_button} to complete the payment",
            self.pay_button_pending,
        )
        await self.settle()

        observed = await self.intelligence.observe(
            "find any success messages, error messages, payment confirmation, download buttons, "
            "or processing status indicators"
        )
        error = matches_any(observed, detection.error_indicators)
        if error:
            return PaymentCheck(clicked=True, succeeded=False, signal=error)
        signal = next((el.description for el in observed), "no error indicator")
        return PaymentCheck(clicked=True, succeeded=True, signal=signal)

    # ------------------------------------------------------------------
    # document
    # ------------------------------------------------------------------
    def document_policy(self) -> PollPolicy:
        polling = self.settings.polling
        return PollPolicy.unbounded(
            "document generation",
            interval=polling.document_interval,
            max_attempts=polling.document_max_attempts,
        )

    def recovery_policy(self) -> PollPolicy:
        polling = self.settings.polling
        return PollPolicy.bounded(
            "document on the application page",
            interval=polling.recovery_interval,
            max_attempts=polling.recovery_max_attempts,
        )

    async def wait_for_document(self, policy: Optional[PollPolicy] = None) -> PollResult:
        check = observation_check(
            self.intelligence,
            "find ALL interactive elements including: Download Certificate button, Download button, "
            "processing status messages, error messages, success indicators, and any page headings",
            ready_terms=("download",),
            error_terms=self.settings.detection.error_indicators,
        )
        poller = ReadinessPoller(policy or self.document_policy(), sleep=self._sleep)
        return await poller.poll(check)

    async def download_document(self, plot: PlotIdentifier, request_id: Optional[str]) -> Optional[Path]:
        description = f"click the {self.settings.elements.download_button}"
        retry = self.settings.retry
        saved = await with_retry(
            lambda: self.session.download(description, self.settings.download_dir),
            RetryPolicy(retry.max_attempts, retry.delay, retry.backoff),
            label=description,
            sleep=self._sleep,
        )
        if saved is None:
            return None
        saved = Path(saved)
        stem = "_".join(part for part in (plot.value, request_id) if part)
        target = saved.with_name(f"{re.sub(r'[^A-Za-z0-9_-]+', '-', stem)}{saved.suffix or '.pdf'}")
        if target != saved:
            try:
                saved = saved.replace(target)
            except OSError as exc:
                logger.warning("  • Kept download as %s (%s)", saved.name, exc)
        return saved

    # ------------------------------------------------------------------
    # applications list
    # ------------------------------------------------------------------
    async def open_applications_list(self) -> bool:
        await self.executor.navigate(self.settings.navigation.applications_url)
        result = await self._transition_poller("applications list", max_attempts=20).poll(
            observation_check(
                self.intelligence,
                "find applications list, search filters, or application ID input field on this page",
            )
        )
        return result.ready

    async def search_application(self, request_id: str) -> bool:
        await self.executor.type_text(
            "Application ID input field or search filter in the left sidebar",
            request_id,
        )
        await self.executor.try_act("click the Search button or Show Results button to filter applications")
        await self.settle()
        observed: List[ObservedElement] = await self.intelligence.observe(
            "find application cards or results on the right side of the page"
        )
        if not observed:
            logger.warning("⚠️ Application %s not found in the applications list.", request_id)
            return False
        return True

    async def open_application(self) -> None:
        await self.executor.act("click the View Application link or button in the application card")
        await self.settle()
