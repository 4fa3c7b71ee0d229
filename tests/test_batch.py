from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from conftest import FakePortal, make_plots, no_sleep
from errors import AuthenticationError, BatchAbortedError
from funds import FundsGuard
from ledger import ApplicationLedger
from orchestrator import BatchOrchestrator
from processor import PlotProcessor
from records import PlotState


def _run(portal, settings, plots, ledger=None, is_authenticated=None, relogin=None):
    if ledger is None:
        ledger = ApplicationLedger(settings.ledger_path).load()
    processor = PlotProcessor(portal, ledger, FundsGuard(len(plots)), settings)
    orchestrator = BatchOrchestrator(
        processor,
        portal,
        ledger,
        settings,
        is_authenticated=is_authenticated,
        relogin=relogin,
        sleep=no_sleep,
    )
    return asyncio.run(orchestrator.run(plots))


def test_batch_aborts_before_any_payment_when_wallet_cannot_cover_all_plots(settings) -> None:
    portal = FakePortal(fee="100", balance="250")
    plots = make_plots("A-1", "A-2", "A-3")

    with pytest.raises(BatchAbortedError) as excinfo:
        _run(portal, settings, plots)

    assert portal.pay_calls == []
    assert excinfo.value.shortfall == Decimal("50")
    report = excinfo.value.report
    assert report.aborted
    assert [r.state for r in report.records] == [PlotState.NOT_ATTEMPTED] * 3
    assert report.tally()["not_attempted"] == 3
    assert report.tally()["paid"] == 0
    # remaining plots were never searched
    assert portal.searched == ["A-1"]


def test_not_owned_plot_is_skipped_and_the_rest_are_paid(settings) -> None:
    portal = FakePortal(fee="100", balance="400", not_owned=["A-2"])
    report = _run(portal, settings, make_plots("A-1", "A-2", "A-3"))

    assert portal.pay_calls == ["A-1", "A-3"]
    tally = report.tally()
    assert tally["paid"] == 2
    assert tally["not_owned"] == 1
    assert tally["downloaded"] == 2
    assert [r.state for r in report.records] == [
        PlotState.DOWNLOADED,
        PlotState.NOT_OWNED,
        PlotState.DOWNLOADED,
    ]


def test_batch_check_runs_on_first_plot_that_reaches_payment(settings) -> None:
    portal = FakePortal(fee="100", balance="250", not_owned=["A-1"])

    with pytest.raises(BatchAbortedError) as excinfo:
        _run(portal, settings, make_plots("A-1", "A-2", "A-3"))

    report = excinfo.value.report
    assert portal.pay_calls == []
    assert report.records[0].state is PlotState.NOT_OWNED
    assert [r.state for r in report.records[1:]] == [PlotState.NOT_ATTEMPTED] * 2


def test_drained_wallet_only_fails_that_plot(settings) -> None:
    portal = FakePortal(fee="100", balance="300", balance_before={"A-2": "50", "A-3": "500"})
    report = _run(portal, settings, make_plots("A-1", "A-2", "A-3"))

    assert portal.pay_calls == ["A-1", "A-3"]
    states = [r.state for r in report.records]
    assert states == [PlotState.DOWNLOADED, PlotState.INSUFFICIENT_FUNDS, PlotState.DOWNLOADED]
    assert report.tally()["insufficient_funds"] == 1


def test_plot_with_history_is_never_paid_again(settings) -> None:
    ledger = ApplicationLedger(settings.ledger_path).load()
    ledger.record_payment("A-1", FakePortal.request_id_for("A-1"))

    portal = FakePortal()
    report = _run(portal, settings, make_plots("A-1", "A-2"), ledger=ApplicationLedger(settings.ledger_path).load())

    assert portal.pay_calls == ["A-2"]
    first = report.records[0]
    assert first.pre_existing
    assert first.state is PlotState.DOWNLOADED
    assert portal.application_searches == ["APP-A-1-2024"]
    assert report.tally()["paid"] == 1
    assert report.tally()["resumed"] == 1


def test_second_run_pays_nothing(settings) -> None:
    plots = make_plots("A-1", "A-2")
    first = FakePortal(pending_once=["A-1", "A-2"])
    _run(first, settings, plots)
    assert first.pay_calls == ["A-1", "A-2"]

    second = FakePortal()
    report = _run(second, settings, plots)

    assert second.pay_calls == []
    assert all(r.pre_existing for r in report.records)


def test_document_not_ready_is_picked_up_by_recovery_pass(settings) -> None:
    portal = FakePortal(pending_once=["A-1"])
    report = _run(portal, settings, make_plots("A-1", "A-2"))

    record = report.records[0]
    assert record.document_downloaded
    assert record.downloaded_via_recovery
    assert record.download_attempts == 1
    assert portal.application_searches == ["APP-A-1-2024"]
    assert report.tally()["downloaded_via_recovery"] == 1
    assert report.tally()["still_pending"] == 0

    ledger = ApplicationLedger(settings.ledger_path).load()
    assert ledger.lookup("A-1").downloaded


def test_document_error_marks_plot_as_error_and_batch_continues(settings) -> None:
    portal = FakePortal(document_errors=["A-1"])
    report = _run(portal, settings, make_plots("A-1", "A-2"))

    assert report.records[0].state is PlotState.ERROR
    assert "generation failed" in report.records[0].error
    assert report.records[1].state is PlotState.DOWNLOADED


def test_unexpected_exception_is_isolated_and_page_recovered(settings) -> None:
    portal = FakePortal(failing_plots=["A-1"])
    report = _run(portal, settings, make_plots("A-1", "A-2"))

    assert report.records[0].state is PlotState.ERROR
    assert report.records[0].error == "page crashed"
    assert portal.resets == 1
    assert report.records[1].state is PlotState.DOWNLOADED


def _login_checks(*answers: bool):
    """Login check that replays ``answers`` and then keeps returning the last one."""
    calls = []

    async def check() -> bool:
        answer = answers[min(len(calls), len(answers) - 1)]
        calls.append(answer)
        return answer

    check.calls = calls
    return check


def test_flaky_login_check_after_recovery_does_not_stop_the_batch(settings) -> None:
    portal = FakePortal(pending_once=["A-1"], failing_plots=["A-2"])
    check = _login_checks(False, True)

    report = _run(portal, settings, make_plots("A-1", "A-2", "A-3"), is_authenticated=check)

    assert check.calls == [False, True]
    assert portal.pay_calls == ["A-1", "A-3"]
    assert not report.aborted
    assert [r.state for r in report.records] == [PlotState.DOWNLOADED, PlotState.ERROR, PlotState.DOWNLOADED]
    assert report.records[0].downloaded_via_recovery


def test_missing_login_controls_without_relogin_only_warn(settings) -> None:
    portal = FakePortal(failing_plots=["A-1"])

    report = _run(portal, settings, make_plots("A-1", "A-2"), is_authenticated=_login_checks(False))

    assert portal.searched == ["A-1", "A-2"]
    assert not report.aborted
    assert report.records[1].state is PlotState.DOWNLOADED


def test_lost_session_is_restored_by_logging_in_again(settings) -> None:
    portal = FakePortal(failing_plots=["A-1"])
    logins = []

    async def relogin() -> None:
        logins.append("login")

    report = _run(
        portal,
        settings,
        make_plots("A-1", "A-2"),
        is_authenticated=_login_checks(False),
        relogin=relogin,
    )

    assert logins == ["login"]
    assert not report.aborted
    assert report.records[1].state is PlotState.DOWNLOADED


def test_failed_relogin_returns_partial_report_and_still_recovers_paid_plots(settings) -> None:
    portal = FakePortal(pending_once=["A-1"], failing_plots=["A-2"])

    async def relogin() -> None:
        raise AuthenticationError("UAE PASS approval timed out")

    report = _run(
        portal,
        settings,
        make_plots("A-1", "A-2", "A-3"),
        is_authenticated=_login_checks(False),
        relogin=relogin,
    )

    assert report.aborted
    assert report.shortfall is None
    assert report.abort_reason == "Session lost: UAE PASS approval timed out"
    assert report.finished_at is not None
    assert portal.searched == ["A-1", "A-2"]
    assert [r.state for r in report.records] == [PlotState.DOWNLOADED, PlotState.ERROR, PlotState.NOT_ATTEMPTED]
    assert report.records[0].downloaded_via_recovery
    tally = report.tally()
    assert tally["paid"] == 1
    assert tally["still_pending"] == 0
    assert tally["not_attempted"] == 1
    assert "Batch stopped early" in "\n".join(report.render_summary())


def test_unexpected_relogin_failure_is_reported_as_lost_session(settings) -> None:
    portal = FakePortal(failing_plots=["A-1"])

    async def relogin() -> None:
        raise RuntimeError("browser closed")

    report = _run(
        portal,
        settings,
        make_plots("A-1", "A-2"),
        is_authenticated=_login_checks(False),
        relogin=relogin,
    )

    assert report.aborted
    assert "Re-login after recovery failed: browser closed" in report.abort_reason
    assert report.records[1].state is PlotState.NOT_ATTEMPTED


def test_missing_application_id_is_extraction_failure(settings) -> None:
    portal = FakePortal(missing_ids=["A-1"])
    report = _run(portal, settings, make_plots("A-1", "A-2"))

    assert report.records[0].state is PlotState.EXTRACTION_FAILED
    assert portal.pay_calls == ["A-2"]
    assert ApplicationLedger(settings.ledger_path).load().lookup("A-1") is None


def test_payment_error_indicator_is_an_error_not_a_success(settings) -> None:
    portal = FakePortal(pay_errors=["A-1"])
    report = _run(portal, settings, make_plots("A-1"))

    record = report.records[0]
    assert record.state is PlotState.ERROR
    assert not record.payment_completed
    entry = ApplicationLedger(settings.ledger_path).load().lookup("A-1")
    assert entry is not None and not entry.payment_confirmed


def test_non_numeric_balance_is_an_error(settings) -> None:
    portal = FakePortal(balance_text="not shown")
    report = _run(portal, settings, make_plots("A-1"))

    assert report.records[0].state is PlotState.ERROR
    assert "Unreadable payment amounts" in report.records[0].error
    assert portal.pay_calls == []


def test_dry_run_stops_before_pay(settings) -> None:
    dry = replace(settings, payment=replace(settings.payment, enabled=False))
    portal = FakePortal()
    report = _run(portal, dry, make_plots("A-1", "A-2"))

    assert portal.pay_calls == []
    assert [r.state for r in report.records] == [PlotState.DRY_RUN, PlotState.DRY_RUN]
    assert report.tally()["dry_run"] == 2
    assert len(ApplicationLedger(settings.ledger_path).load()) == 0


def test_identifier_is_in_history_before_payment(settings) -> None:
    seen = {}

    class InspectingPortal(FakePortal):
        async def pay(self):
            seen["entry"] = ApplicationLedger(settings.ledger_path).load().lookup(self.current.value)
            return await super().pay()

    _run(InspectingPortal(), settings, make_plots("A-1"))

    assert seen["entry"].request_id == "APP-A-1-2024"
    assert not seen["entry"].payment_confirmed
    assert ApplicationLedger(settings.ledger_path).load().lookup("A-1").payment_confirmed


def test_unconfirmed_history_entry_is_not_reported_as_paid(settings) -> None:
    plots = make_plots("A-1")
    _run(FakePortal(pay_errors=["A-1"]), settings, plots)

    second = FakePortal(pending_once=["A-1"])
    report = _run(second, settings, plots)

    record = report.records[0]
    assert second.pay_calls == []
    assert record.pre_existing
    assert record.payment_unconfirmed
    assert not record.payment_completed
    assert record.state is PlotState.APPLICATION_IDENTIFIED
    tally = report.tally()
    assert tally["unconfirmed"] == 1
    assert tally["still_pending"] == 0
    assert tally["paid"] == 0


def test_document_for_unconfirmed_entry_proves_payment(settings) -> None:
    ledger = ApplicationLedger(settings.ledger_path).load()
    ledger.record_payment("A-1", FakePortal.request_id_for("A-1"))

    report = _run(FakePortal(), settings, make_plots("A-1"))

    record = report.records[0]
    assert record.state is PlotState.DOWNLOADED
    assert record.payment_completed
    assert not record.payment_unconfirmed
    assert report.tally()["unconfirmed"] == 0


def test_zero_fee_is_an_error_not_a_free_payment(settings) -> None:
    portal = FakePortal(fee="0")
    report = _run(portal, settings, make_plots("A-1"))

    assert report.records[0].state is PlotState.ERROR
    assert "fee must be positive" in report.records[0].error
    assert portal.pay_calls == []
