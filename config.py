"""
Centralized configuration for the Toll Reconciliation application.
All import limits, reconciliation labels, and storage locations are defined here.
"""
from dataclasses import dataclass, field
from typing import Dict, List
from pathlib import Path
import os


@dataclass
class ColumnMapping:
    """Maps required columns for an uploaded toll export."""
    required_columns: List[str]
    optional_columns: List[str] = field(default_factory=list)

    def validate(self, columns: List[str]) -> tuple[bool, List[str]]:
        """Check if all required columns are present."""
        missing = [col for col in self.required_columns if col not in columns]
        return len(missing) == 0, missing


@dataclass
class ImportConfig:
    """Configuration for toll export ingestion."""
    chunk_size: int = field(default_factory=lambda: int(os.getenv('TOLL_IMPORT_CHUNK_SIZE', '500')))
    header_scan_rows: int = 50
    inference_sample_rows: int = 200
    inference_min_score: float = 0.5
    default_country: str = field(default_factory=lambda: os.getenv('TOLL_DEFAULT_COUNTRY', 'NL').upper())
    allowed_extensions: List[str] = field(default_factory=lambda: ['.xlsx', '.csv'])

    # Share of 00:00 times above which the import warns about a missing time column
    midnight_warning_ratio: float = 0.5

    column_mapping: ColumnMapping = field(default_factory=lambda: ColumnMapping(
        required_columns=["license_plate", "usage_date", "amount"],
        optional_columns=["usage_time", "country", "vat_rate", "location"]
    ))


@dataclass
class ReconciliationConfig:
    """Configuration for invoice matching labels and statuses."""
    concept_status: str = "concept"
    toll_tag: str = "tol"
    status_needs_toll: str = "needs_toll"
    status_toll_added: str = "toll_added"


@dataclass
class DashboardConfig:
    """Configuration for the reporting read contract."""
    default_days_back: int = field(default_factory=lambda: int(os.getenv('TOLL_DASHBOARD_DAYS_BACK', '120')))
    cache_timeout: int = 30


@dataclass
class StorageConfig:
    """Configuration for data persistence."""
    base_dir: Path = field(default_factory=lambda: Path(os.getenv('TOLL_DATA_DIR', 'instance/toll')))
    table_files: Dict[str, str] = field(default_factory=lambda: {
        "toll_records": "toll_records.json",
        "invoices": "invoices.json",
        "invoice_lines": "invoice_lines.json",
    })
    uploads_dir: str = "uploads"


@dataclass
class AppConfig:
    """Main toll configuration container."""
    imports: ImportConfig = field(default_factory=ImportConfig)

    # Reconciliation settings
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    # Dashboard settings
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)

    # Storage settings
    storage: StorageConfig = field(default_factory=StorageConfig)


# Global configuration instance
config = AppConfig()
