# spreadsheet.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional

import pandas as pd

from errors import ConfigurationError
from records import PlotIdentifier

logger = logging.getLogger(__name__)

HEADER_MATCH = "plot id"


def _read_sheet(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    try:
        if suffix == ".csv":
            return pd.read_csv(path, header=None, dtype=str, keep_default_na=False)
        return pd.read_excel(path, sheet_name=0, header=None, dtype=str, keep_default_na=False)
    except Exception as exc:
        raise ConfigurationError(f"Failed to read spreadsheet {path}: {exc}") from exc


def _clean(value) -> str:
    text = "" if value is None else str(value).strip()
    if text.lower() == "nan":
        return ""
    # Excel hands integers back as floats.
    return re.sub(r"^(\d+)\.0$", r"\1", text)


def load_plots(path: Path, column_index: Optional[int] = None) -> List[PlotIdentifier]:
    """
    Read plot identifiers from the first sheet. The first row is the header;
    without ``column_index`` the column whose header contains "plot id" is
    used. Row numbers are 1-based sheet rows, so the first plot is row 2.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Spreadsheet not found at: {path}")

    frame = _read_sheet(path)
    if frame.empty:
        raise ConfigurationError(f"Spreadsheet {path} is empty")

    header = [_clean(value) for value in frame.iloc[0].tolist()]
    if column_index is None:
        column_index = next(
            (i for i, name in enumerate(header) if HEADER_MATCH in name.lower()),
            None,
        )
        if column_index is None:
            raise ConfigurationError(
                f'Could not find a "Plot Id" column in {path}. Available columns: {", ".join(header)}'
            )
    elif not 0 <= column_index < frame.shape[1]:
        raise ConfigurationError(
            f"Column index {column_index} is outside the {frame.shape[1]} column(s) in {path}"
        )

    logger.info("📑 Reading plots from column %d (%s)", column_index, header[column_index] or "unnamed")
    plots: List[PlotIdentifier] = []
    for i in range(1, len(frame)):
        value = _clean(frame.iat[i, column_index])
        if value:
            plots.append(PlotIdentifier(value=value, row_number=i + 1))

    if not plots:
        raise ConfigurationError(f"No plot identifiers found in {path}")
    logger.info("📑 Loaded %d plot(s) from %s", len(plots), path)
    return plots
