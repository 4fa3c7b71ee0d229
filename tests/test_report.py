from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

from records import ApplicationRecord, PlotIdentifier, PlotState
from report import BatchReport


def _record(value: str, state: PlotState, **kwargs) -> ApplicationRecord:
    return ApplicationRecord(plot=PlotIdentifier(value, 2), state=state, **kwargs)


def test_tally_separates_paid_from_resumed() -> None:
    report = BatchReport(
        "site-plan",
        records=[
            _record("A-1", PlotState.DOWNLOADED, request_id="R-1", payment_completed=True, document_downloaded=True),
            _record("A-2", PlotState.PAID, request_id="R-2", payment_completed=True),
            _record(
                "A-3",
                PlotState.DOWNLOADED,
                request_id="R-3",
                payment_completed=True,
                document_downloaded=True,
                pre_existing=True,
                downloaded_via_recovery=True,
            ),
            _record("A-4", PlotState.NOT_OWNED, error="you don't own any property"),
        ],
        plot_count=4,
    )

    tally = report.tally()

    assert tally["paid"] == 2
    assert tally["resumed"] == 1
    assert tally["downloaded"] == 2
    assert tally["downloaded_via_recovery"] == 1
    assert tally["still_pending"] == 1
    assert tally["not_owned"] == 1
    assert tally["errored"] == 0


def test_aborted_summary_names_the_shortfall() -> None:
    report = BatchReport(
        "site-plan",
        records=[_record("A-1", PlotState.NOT_ATTEMPTED)],
        plot_count=1,
        aborted=True,
        shortfall=Decimal("50"),
        abort_reason="wallet cannot cover the batch",
    )

    summary = "\n".join(report.render_summary())

    assert "Batch aborted" in summary
    assert "at least 50" in summary
    assert "Not attempted:           1" in summary


def test_report_json_is_written_to_reports_dir(tmp_path: Path) -> None:
    report = BatchReport("title-deed", records=[_record("A-1", PlotState.ERROR, error="page crashed")], plot_count=1)
    report.finish()

    path = report.write_json(tmp_path / "reports")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert path.name.startswith("report_title-deed_")
    assert data["tally"]["errored"] == 1
    assert data["plots"][0]["plotId"] == "A-1"
    assert data["plots"][0]["error"] == "page crashed"
    assert data["finishedAt"] is not None


def test_unconfirmed_history_entries_have_their_own_line() -> None:
    report = BatchReport(
        "site-plan",
        records=[
            _record("A-1", PlotState.APPLICATION_IDENTIFIED, request_id="R-1", pre_existing=True, payment_unconfirmed=True),
        ],
        plot_count=1,
    )

    tally = report.tally()
    summary = "\n".join(report.render_summary())

    assert tally["unconfirmed"] == 1
    assert tally["still_pending"] == 0
    assert "Payment unconfirmed:     1" in summary
    assert "Paid, still pending:     0" in summary
    assert report.to_dict()["plots"][0]["paymentUnconfirmed"] is True


def test_session_lost_summary_does_not_claim_nothing_was_charged() -> None:
    report = BatchReport(
        "site-plan",
        records=[
            _record("A-1", PlotState.DOWNLOADED, request_id="R-1", payment_completed=True, document_downloaded=True),
            _record("A-2", PlotState.NOT_ATTEMPTED),
        ],
        plot_count=2,
        aborted=True,
        abort_reason="Session lost: approval timed out",
    )

    summary = "\n".join(report.render_summary())

    assert "Batch stopped early: Session lost: approval timed out" in summary
    assert "before any payment" not in summary
