from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class PlotIdentifier:
    value: str
    row_number: int

    def __str__(self) -> str:
        return self.value


class PlotState(Enum):
    SEARCHING_PROPERTY = "searching_property"
    PROPERTY_SELECTED = "property_selected"
    APPLICATION_IDENTIFIED = "application_identified"
    FUNDS_VALIDATED = "funds_validated"
    PAID = "paid"
    AWAITING_DOCUMENT = "awaiting_document"
    DOWNLOADED = "downloaded"
    # terminal alternates
    NOT_OWNED = "not_owned"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXTRACTION_FAILED = "extraction_failed"
    ERROR = "error"
    NOT_ATTEMPTED = "not_attempted"
    DRY_RUN = "dry_run"


@dataclass
class ApplicationRecord:
    """Outcome of one plot in the current run, mutated as the pipeline advances."""

    plot: PlotIdentifier
    request_id: Optional[str] = None
    payment_completed: bool = False
    document_downloaded: bool = False
    download_attempts: int = 0
    last_download_attempt_at: Optional[datetime] = None
    pre_existing: bool = False
    error: Optional[str] = None
    state: PlotState = PlotState.SEARCHING_PROPERTY
    downloaded_via_recovery: bool = False
    document_path: Optional[str] = None
    # history entry exists but the Pay click was never verified
    payment_unconfirmed: bool = False

    @property
    def is_pending_download(self) -> bool:
        return self.payment_completed and not self.document_downloaded and bool(self.request_id)

    def fail(self, state: PlotState, message: Optional[str] = None) -> "ApplicationRecord":
        self.state = state
        if message:
            self.error = message
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plotId": self.plot.value,
            "rowNumber": self.plot.row_number,
            "state": self.state.value,
            "requestId": self.request_id,
            "paymentCompleted": self.payment_completed,
            "documentDownloaded": self.document_downloaded,
            "downloadAttempts": self.download_attempts,
            "lastDownloadAttemptAt": (
                self.last_download_attempt_at.isoformat() if self.last_download_attempt_at else None
            ),
            "preExisting": self.pre_existing,
            "paymentUnconfirmed": self.payment_unconfirmed,
            "downloadedViaRecovery": self.downloaded_via_recovery,
            "documentPath": self.document_path,
            "error": self.error,
        }


@dataclass
class LedgerEntry:
    plot_id: str
    request_id: str
    payment_date: str
    downloaded: bool = False
    last_checked: Optional[str] = None
    payment_confirmed: bool = False

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "plotNumber": self.plot_id,
            "applicationId": self.request_id,
            "paymentDate": self.payment_date,
            "downloaded": self.downloaded,
            "paymentConfirmed": self.payment_confirmed,
        }
        if self.last_checked:
            payload["lastChecked"] = self.last_checked
        return payload

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "LedgerEntry":
        plot_id = data.get("plotNumber") or data.get("plotId")
        request_id = data.get("applicationId") or data.get("requestId")
        if not plot_id or not request_id:
            raise ValueError(f"ledger entry missing plot or application id: {data!r}")
        return cls(
            plot_id=str(plot_id),
            request_id=str(request_id),
            payment_date=str(data.get("paymentDate") or ""),
            downloaded=bool(data.get("downloaded", False)),
            last_checked=data.get("lastChecked"),
            payment_confirmed=bool(data.get("paymentConfirmed", False)),
        )


@dataclass
class SearchResult:
    found: bool
    reason: str = ""
    matches: list = field(default_factory=list)
