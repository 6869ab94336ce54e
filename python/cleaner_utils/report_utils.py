"""
Utility functions for report generation and saving.

This module provides functions to:
- Save reports in various formats (JSON, table+JSON)
- Render summary tables
- Generate timestamped report filenames
"""
import json
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tabulate import tabulate

from cleaner_utils.logging_utils import get_logger

logger = get_logger(__name__)


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/cleanup-report.json')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/cleanup-report-2026-01-15-14-30-00.json')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()

    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


# ============================================================================
# Formatting Utilities
# ============================================================================

def to_jsonable(data: Any) -> Any:
    """Recursively convert report data into JSON-serializable values.

    Converts:
    - dataclasses to dicts
    - datetime/date objects to ISO format strings
    - timedelta to total seconds
    - Enum members to their values
    - set/frozenset to sorted lists
    """
    if is_dataclass(data) and not isinstance(data, type):
        return to_jsonable(asdict(data))
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, timedelta):
        return data.total_seconds()
    if isinstance(data, (set, frozenset)):
        items = [to_jsonable(item) for item in data]
        try:
            return sorted(items)
        except TypeError:
            # Mixed types aren't sortable
            return items
    if isinstance(data, dict):
        return {str(k): to_jsonable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [to_jsonable(item) for item in data]
    return data


def format_table(rows: List[Sequence[Any]], headers: Sequence[str]) -> str:
    """Render rows as a grid table"""
    return tabulate(rows, headers=headers, tablefmt="grid")


# ============================================================================
# Report Saving Functions
# ============================================================================

def save_table_and_json(base_path: str, table_str: str, json_obj: Dict[str, Any], timestamp: bool = True) -> str:
    """
    Write a table string to <base>.txt and JSON object to <base>.json.

    Args:
        base_path: Base path for the reports (without extension)
        table_str: Table content to write
        json_obj: JSON object to write
        timestamp: If True, add timestamp to filenames (default: True)

    Returns:
        Path to the saved JSON file
    """
    base = Path(base_path)

    if timestamp:
        base = base.parent / f"{base.name}-{get_timestamp_suffix()}"

    base.parent.mkdir(parents=True, exist_ok=True)

    with open(f"{base}.txt", "w") as f:
        f.write(table_str)

    json_path = save_json(f"{base}.json", json_obj, timestamp=False)

    logger.info(f"Saved reports to {base}.txt and {base}.json")
    return json_path


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename (default: False)

    Returns:
        Path to the saved file
    """
    p = Path(path)

    if timestamp:
        p = Path(add_timestamp_to_path(str(p)))

    p.parent.mkdir(parents=True, exist_ok=True)

    with open(p, 'w') as f:
        json.dump(to_jsonable(data), f, indent=2)
    logger.info(f"Saved JSON to {p}")
    return str(p)
