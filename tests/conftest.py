from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from intelligence import ObservedElement
from polling import PollPolicy, PollResult
from portal import PaymentCheck
from records import PlotIdentifier, SearchResult
from settings import AgentSettings, PollSettings, RetrySettings, WaitTimes


async def no_sleep(_seconds: float) -> None:
    return None


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def element(description: str, method: str = "click") -> ObservedElement:
    return ObservedElement(description=description, method=method, selector=f'[data-agent-ref="{abs(hash(description)) % 1000}"]')


Rule = Union[Sequence[ObservedElement], Callable[[int], Sequence[ObservedElement]]]


class ScriptedIntelligence:
    """Page intelligence stub: the first rule whose key occurs in the instruction answers it."""

    def __init__(
        self,
        observations: Optional[List[Tuple[str, Rule]]] = None,
        extractions: Optional[List[Tuple[str, Any]]] = None,
    ) -> None:
        self.observations = list(observations or [])
        self.extractions = list(extractions or [])
        self.observe_calls: List[str] = []
        self.extract_calls: List[str] = []
        self._counts: Dict[str, int] = {}

    async def observe(self, instruction: str) -> List[ObservedElement]:
        self.observe_calls.append(instruction)
        lowered = instruction.lower()
        for key, rule in self.observations:
            if key.lower() in lowered:
                self._counts[key] = self._counts.get(key, 0) + 1
                result = rule(self._counts[key]) if callable(rule) else rule
                return list(result)
        return []

    async def extract(self, instruction: str, schema=None):
        self.extract_calls.append(instruction)
        lowered = instruction.lower()
        for key, value in self.extractions:
            if key.lower() in lowered:
                if isinstance(value, Exception):
                    raise value
                return value
        return {} if schema else ""


class FakeSession:
    def __init__(self, url: str = "https://www.dari.ae/en/", text: str = "") -> None:
        self.url = url
        self.text = text
        self.actions: List[str] = []
        self.navigations: List[str] = []
        self.text_reads = 0
        self.checked_labels: List[str] = []
        self.failures: Dict[str, int] = {}
        self.hooks: List[Tuple[str, Callable[["FakeSession"], None]]] = []

    async def navigate(self, url: str) -> None:
        self.navigations.append(url)
        self.url = url

    async def act(self, action: str) -> None:
        self.actions.append(action)
        for key, remaining in list(self.failures.items()):
            if key in action and remaining > 0:
                self.failures[key] = remaining - 1
                raise RuntimeError(f"element detached: {action}")
        for key, hook in self.hooks:
            if key in action:
                hook(self)

    async def current_url(self) -> str:
        return self.url

    async def wait_for_network_settled(self, timeout: float = 10.0) -> None:
        return None

    async def raw_text_content(self) -> str:
        self.text_reads += 1
        return self.text

    async def checked_option_labels(self) -> List[str]:
        return list(self.checked_labels)

    async def download(self, action: str, target_dir: Path, timeout: float = 60.0) -> Optional[Path]:
        self.actions.append(action)
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / "document.pdf"
        path.write_bytes(b"%PDF-1.4")
        return path


class FakePortal:
    """In-memory model of the portal: who owns what, the wallet, and document readiness."""

    def __init__(
        self,
        *,
        fee: str = "100",
        balance: str = "400",
        not_owned: Sequence[str] = (),
        balance_before: Optional[Dict[str, str]] = None,
        pending_once: Sequence[str] = (),
        document_errors: Sequence[str] = (),
        failing_plots: Sequence[str] = (),
        missing_ids: Sequence[str] = (),
        pay_errors: Sequence[str] = (),
        balance_text: Optional[str] = None,
    ) -> None:
        self.fee = Decimal(fee)
        self.balance = Decimal(balance)
        self.not_owned = set(not_owned)
        self.balance_before = dict(balance_before or {})
        self.pending_once = set(pending_once)
        self.document_errors = set(document_errors)
        self.failing_plots = set(failing_plots)
        self.missing_ids = set(missing_ids)
        self.pay_errors = set(pay_errors)
        self.balance_text = balance_text
        self.current: Optional[PlotIdentifier] = None
        self.searched: List[str] = []
        self.pay_calls: List[str] = []
        self.downloads: List[str] = []
        self.application_searches: List[str] = []
        self.resets = 0
        self.service_returns = 0

    @staticmethod
    def request_id_for(plot_id: str) -> str:
        return f"APP-{plot_id}-2024"

    async def search_plot(self, plot: PlotIdentifier) -> SearchResult:
        self.current = plot
        self.searched.append(plot.value)
        if plot.value in self.failing_plots:
            raise RuntimeError("page crashed")
        if plot.value in self.not_owned:
            return SearchResult(False, "you don't own any property")
        return SearchResult(True)

    async def select_result(self) -> None:
        return None

    async def confirm_selection(self) -> bool:
        return True

    async def proceed(self) -> None:
        return None

    async def wait_for_application_page(self) -> PollResult:
        return PollResult(True, 1, "application id")

    async def on_error_page(self) -> bool:
        return False

    async def extract_request_id(self) -> Optional[str]:
        if self.current.value in self.missing_ids:
            return None
        return self.request_id_for(self.current.value)

    async def select_wallet(self) -> bool:
        return True

    async def read_payment_details(self):
        if self.current.value in self.balance_before:
            self.balance = Decimal(self.balance_before[self.current.value])
        balance = self.balance_text if self.balance_text is not None else str(self.balance)
        return balance, str(self.fee)

    async def pay(self) -> PaymentCheck:
        self.pay_calls.append(self.current.value)
        if self.current.value in self.pay_errors:
            return PaymentCheck(clicked=True, succeeded=False, signal="Payment failed")
        self.balance -= self.fee
        return PaymentCheck(clicked=True, succeeded=True, signal="Payment successful")

    def document_policy(self) -> PollPolicy:
        return PollPolicy.unbounded("document", interval=0, max_attempts=3)

    def recovery_policy(self) -> PollPolicy:
        return PollPolicy.bounded("document", interval=0, max_attempts=3)

    async def wait_for_document(self, policy: Optional[PollPolicy] = None) -> PollResult:
        from errors import TerminalPageError

        plot_id = self.current.value
        if plot_id in self.document_errors:
            raise TerminalPageError("Certificate generation failed", 3)
        if plot_id in self.pending_once:
            self.pending_once.discard(plot_id)
            return PollResult(False, 3)
        return PollResult(True, 1, "Download Certificate")

    async def download_document(self, plot: PlotIdentifier, request_id: Optional[str]) -> Optional[Path]:
        self.downloads.append(plot.value)
        return Path(f"downloads/{plot.value}_{request_id}.pdf")

    async def open_applications_list(self) -> bool:
        return True

    async def search_application(self, request_id: str) -> bool:
        self.application_searches.append(request_id)
        # the applications list search selects the plot that owns this id
        plot_id = request_id[len("APP-") : -len("-2024")]
        self.current = PlotIdentifier(plot_id, 0)
        return True

    async def open_application(self) -> None:
        return None

    async def return_to_service(self) -> None:
        self.service_returns += 1

    async def reset_to_home(self) -> None:
        self.resets += 1


def make_plots(*values: str) -> List[PlotIdentifier]:
    return [PlotIdentifier(value, row) for row, value in enumerate(values, start=2)]


@pytest.fixture
def settings(tmp_path: Path) -> AgentSettings:
    return replace(
        AgentSettings(),
        mobile_number="0500000000",
        spreadsheet_path=tmp_path / "plots.csv",
        download_dir=tmp_path / "downloads",
        ledger_path=tmp_path / "history.json",
        reports_dir=tmp_path / "reports",
        wait_times=WaitTimes(page_load=0, after_click=0, captcha=20, uae_pass_timeout=9, dom_settle=0),
        polling=PollSettings(
            transition_interval=0,
            transition_max_attempts=3,
            document_interval=0,
            document_max_attempts=3,
            recovery_interval=0,
            recovery_max_attempts=3,
        ),
        retry=RetrySettings(max_attempts=3, delay=0, backoff=2),
    )
