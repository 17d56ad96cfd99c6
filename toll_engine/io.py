"""
Spreadsheet loading for toll exports.
Sheets are read without a header so column inference sees the raw grid.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from pathlib import Path
import csv
import logging
import pandas as pd

logger = logging.getLogger(__name__)

Rows = List[List[Any]]


def frame_to_rows(df: pd.DataFrame) -> Rows:
    """Convert a headerless DataFrame to a list of rows, NaN/NaT -> None."""
    if df.empty:
        return []
    cleaned = df.astype(object).where(pd.notna(df), None)
    return cleaned.values.tolist()


class DataSourceLoader(ABC):
    """Abstract base for toll export loaders."""

    @abstractmethod
    def load(self, source_path: Path) -> Rows:
        """Load the export and return its raw row grid."""
        pass


class ExcelSourceLoader(DataSourceLoader):
    """Load toll exports from Excel workbooks."""

    def load_all_sheets(self, file_path: Path) -> Dict[str, pd.DataFrame]:
        """Load all sheets from an Excel file, headerless."""
        sheets = pd.read_excel(file_path, sheet_name=None, header=None)
        logger.info(f"[IO] Loaded {file_path}: {len(sheets)} sheets {list(sheets.keys())}")
        return sheets

    def detect_sheet(self, sheets: Dict[str, pd.DataFrame]) -> Optional[str]:
        """The sheet with the most non-empty rows; the first sheet wins ties."""
        best_name, best_rows = None, -1
        for sheet_name, df in sheets.items():
            rows = int(df.dropna(how="all").shape[0])
            if rows > best_rows:
                best_name, best_rows = sheet_name, rows
        return best_name

    def load(self, source_path: Path) -> Rows:
        sheets = self.load_all_sheets(source_path)
        sheet_name = self.detect_sheet(sheets)
        if sheet_name is None:
            return []
        logger.info(f"[IO] Using sheet '{sheet_name}' ({sheets[sheet_name].shape[0]} rows)")
        return frame_to_rows(sheets[sheet_name])


class CsvSourceLoader(DataSourceLoader):
    """Load toll exports from CSV; the delimiter (',' or ';') is sniffed."""

    def load(self, source_path: Path) -> Rows:
        try:
            df = pd.read_csv(
                source_path,
                header=None,
                sep=None,
                engine="python",
                dtype=str,
                keep_default_na=False,
                encoding="utf-8-sig",
            )
        except csv.Error as e:
            raise ValueError(f"Cannot read CSV {source_path}: {e}") from e
        logger.info(f"[IO] Loaded {source_path}: {df.shape}")
        return frame_to_rows(df)


LOADERS: Dict[str, DataSourceLoader] = {
    ".xlsx": ExcelSourceLoader(),
    ".csv": CsvSourceLoader(),
}


def load_rows(file_path: Path, filename: Optional[str] = None) -> Rows:
    """
    Load a toll export by extension.

    Args:
        file_path: File on disk
        filename: Original upload name, used for the extension when given

    Raises:
        ValueError: If the extension is not supported
    """
    suffix = Path(filename or str(file_path)).suffix.lower()
    loader = LOADERS.get(suffix)
    if loader is None:
        raise ValueError(f"Unsupported file type '{suffix}'. Supported: {sorted(LOADERS)}")
    return loader.load(Path(file_path))
