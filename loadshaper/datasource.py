from __future__ import annotations

import itertools
import logging
import threading
from pathlib import Path
from typing import Iterator, Mapping, Sequence

import pandas as pd

from .scenario import WorkloadConfigError

LOGGER = logging.getLogger("loadshaper.datasource")


class CsvRowSource:
    """Cyclic supply of substitution variables read from a CSV file with a header row."""

    def __init__(self, rows: Sequence[Mapping[str, str]], label: str = "<rows>") -> None:
        if not rows:
            raise WorkloadConfigError(f"data source {label} has no rows")
        self._rows = [dict(row) for row in rows]
        self._label = label
        self._cycle: Iterator[dict[str, str]] = itertools.cycle(self._rows)
        self._lock = threading.Lock()

    @classmethod
    def from_csv(cls, path: Path) -> "CsvRowSource":
        path = Path(path)
        if not path.is_file():
            raise WorkloadConfigError(f"CSV data source {path} does not exist")
        try:
            frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as exc:
            raise WorkloadConfigError(f"CSV data source {path} is not readable: {exc}") from exc
        frame.columns = [str(column).strip() for column in frame.columns]
        LOGGER.info("Loaded %d row(s) from %s (columns: %s)", len(frame), path, ", ".join(frame.columns))
        return cls(frame.to_dict(orient="records"), label=str(path))

    def __len__(self) -> int:
        return len(self._rows)

    def next_row(self) -> dict[str, str]:
        with self._lock:
            return dict(next(self._cycle))


__all__ = ["CsvRowSource"]
