# report.py
from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from records import ApplicationRecord, PlotState

logger = logging.getLogger(__name__)

TALLY_KEYS = (
    "paid",
    "downloaded",
    "downloaded_via_recovery",
    "resumed",
    "unconfirmed",
    "not_owned",
    "insufficient_funds",
    "extraction_failed",
    "errored",
    "still_pending",
    "not_attempted",
    "dry_run",
)


@dataclass
class BatchReport:
    workflow: str
    records: List[ApplicationRecord] = field(default_factory=list)
    plot_count: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None
    aborted: bool = False
    shortfall: Optional[Decimal] = None
    abort_reason: Optional[str] = None

    def tally(self) -> Dict[str, int]:
        counts: Counter = Counter({key: 0 for key in TALLY_KEYS})
        for record in self.records:
            state = record.state
            if record.payment_completed and not record.pre_existing:
                counts["paid"] += 1
            if record.pre_existing:
                counts["resumed"] += 1
            if record.payment_unconfirmed:
                counts["unconfirmed"] += 1
            if record.document_downloaded:
                counts["downloaded"] += 1
            if record.downloaded_via_recovery:
                counts["downloaded_via_recovery"] += 1
            if record.is_pending_download:
                counts["still_pending"] += 1
            if state is PlotState.NOT_OWNED:
                counts["not_owned"] += 1
            elif state is PlotState.INSUFFICIENT_FUNDS:
                counts["insufficient_funds"] += 1
            elif state is PlotState.EXTRACTION_FAILED:
                counts["extraction_failed"] += 1
            elif state is PlotState.ERROR:
                counts["errored"] += 1
            elif state is PlotState.NOT_ATTEMPTED:
                counts["not_attempted"] += 1
            elif state is PlotState.DRY_RUN:
                counts["dry_run"] += 1
        return dict(counts)

    def finish(self) -> "BatchReport":
        self.finished_at = datetime.now(UTC)
        return self

    def render_summary(self) -> List[str]:
        tally = self.tally()
        lines = [
            "",
            "📊 BATCH SUMMARY",
            f"   Plots in batch:          {self.plot_count}",
            f"   Paid this run:           {tally['paid']}",
            f"   Resumed from history:    {tally['resumed']}",
            f"   Downloaded:              {tally['downloaded']} ({tally['downloaded_via_recovery']} via recovery)",
            f"   Paid, still pending:     {tally['still_pending']}",
            f"   Payment unconfirmed:     {tally['unconfirmed']}",
            f"   Not owned:               {tally['not_owned']}",
            f"   Insufficient funds:      {tally['insufficient_funds']}",
            f"   Extraction failed:       {tally['extraction_failed']}",
            f"   Errors:                  {tally['errored']}",
        ]
        if tally["dry_run"]:
            lines.append(f"   Stopped before Pay:      {tally['dry_run']}")
        if self.aborted:
            lines.append(f"   Not attempted:           {tally['not_attempted']}")
            if self.shortfall is not None:
                lines.append(f"❌ Batch aborted before any payment: {self.abort_reason or 'unknown reason'}")
                lines.append(f"   Top up the wallet by at least {self.shortfall} and run again.")
            else:
                lines.append(f"❌ Batch stopped early: {self.abort_reason or 'unknown reason'}")
        for record in self.records:
            if record.error:
                lines.append(f"   • {record.plot.value} (row {record.plot.row_number}): {record.error}")
        return lines

    def to_dict(self) -> Dict[str, object]:
        return {
            "workflow": self.workflow,
            "plotCount": self.plot_count,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "aborted": self.aborted,
            "abortReason": self.abort_reason,
            "shortfall": str(self.shortfall) if self.shortfall is not None else None,
            "tally": self.tally(),
            "plots": [record.to_dict() for record in self.records],
        }

    def write_json(self, output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self.started_at.strftime("%Y%m%d-%H%M%S")
        path = output_dir / f"report_{self.workflow}_{timestamp}.json"
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("🗂️ Batch report saved to %s", path)
        return path
