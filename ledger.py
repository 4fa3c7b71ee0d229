# ledger.py
"""Durable record of plots that already have a document request.

One JSON array on disk, rewritten in full on every mutation so an entry
written just before a crash is still there on the next run. A plot id never
gets a second entry: that is what keeps a plot from being paid for twice.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional

from errors import LedgerConflictError
from records import LedgerEntry

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ApplicationLedger:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, LedgerEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, plot_id: object) -> bool:
        return plot_id in self._entries

    def load(self) -> "ApplicationLedger":
        self._entries = {}
        if not self.path.exists():
            logger.info("📖 No application history at %s, starting fresh.", self.path)
            return self
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            if not isinstance(raw, list):
                raise ValueError("expected a JSON array")
            for item in raw:
                entry = LedgerEntry.from_json(item)
                if entry.plot_id in self._entries:
                    logger.warning("  • Duplicate history entry for plot %s, keeping the first.", entry.plot_id)
                    continue
                self._entries[entry.plot_id] = entry
        except Exception as exc:
            logger.error("❌ Application history %s is unreadable (%s); starting with an empty ledger.", self.path, exc)
            self._entries = {}
            return self
        logger.info("📖 Loaded %d application(s) from history.", len(self._entries))
        return self

    def lookup(self, plot_id: str) -> Optional[LedgerEntry]:
        return self._entries.get(plot_id)

    def record_payment(self, plot_id: str, request_id: str) -> LedgerEntry:
        existing = self._entries.get(plot_id)
        if existing is not None:
            logger.error(
                "❌ Refusing to overwrite history for plot %s (has %s, got %s).",
                plot_id,
                existing.request_id,
                request_id,
            )
            raise LedgerConflictError(f"Plot {plot_id} already has application {existing.request_id}")
        entry = LedgerEntry(plot_id=plot_id, request_id=request_id, payment_date=_now())
        self._entries[plot_id] = entry
        self._save()
        logger.info("💾 Saved application %s for plot %s to history.", request_id, plot_id)
        return entry

    def confirm_payment(self, plot_id: str) -> None:
        entry = self._entries.get(plot_id)
        if entry is None:
            logger.warning("⚠️ No history entry for plot %s; cannot confirm payment.", plot_id)
            return
        entry.payment_confirmed = True
        entry.last_checked = _now()
        self._save()

    def mark_downloaded(self, plot_id: str) -> None:
        entry = self._entries.get(plot_id)
        if entry is None:
            logger.warning("⚠️ No history entry for plot %s; cannot mark as downloaded.", plot_id)
            return
        entry.downloaded = True
        entry.last_checked = _now()
        self._save()
        logger.info("💾 Marked plot %s as downloaded in history.", plot_id)

    def _save(self) -> None:
        payload: List[dict] = [entry.to_json() for entry in self._entries.values()]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
