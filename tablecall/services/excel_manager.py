"""
Excel File Manager with Concurrency Control

Process-safe Excel export of call history, one workbook per establishment.
Several Celery workers may export at once; a file lock serializes them.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from filelock import FileLock, Timeout

from tablecall.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class ExcelManager:
    """Process-safe Excel file manager."""

    DATA_DIR = Path(settings.data_directory)
    LOCK_TIMEOUT = settings.excel_lock_timeout

    CALL_COLUMNS = [
        "call_id",
        "establishment_id",
        "table_number",
        "type",
        "status",
        "created_at",
        "exported_at",
    ]

    @classmethod
    def history_file(cls, establishment_id: str) -> Path:
        return cls.DATA_DIR / f"call_history_{establishment_id}.xlsx"

    @classmethod
    def _ensure_data_dir(cls) -> None:
        """Create data directory if needed."""
        if not cls.DATA_DIR.exists():
            cls.DATA_DIR.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {cls.DATA_DIR}")

    @classmethod
    def _load_or_create_df(cls, file_path: Path) -> pd.DataFrame:
        """Load existing file or create new DataFrame."""
        if file_path.exists():
            try:
                return pd.read_excel(file_path, engine="openpyxl", dtype={"call_id": str, "table_number": str})
            except Exception as e:
                logger.warning(f"Error reading {file_path}: {e}")
        return pd.DataFrame(columns=cls.CALL_COLUMNS)

    @classmethod
    def export_call_history(
        cls,
        establishment_id: str,
        rows: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """
        Merge call rows into the establishment's workbook.

        A call already in the file is replaced by its newer row, so
        re-exporting after status changes keeps one line per call.
        """
        cls._ensure_data_dir()

        file_path = cls.history_file(establishment_id)
        lock_path = Path(f"{file_path}.lock")
        result = {
            "success": False,
            "message": "",
            "establishment_id": establishment_id,
            "rows": 0,
            "exported_at": None,
        }

        try:
            with FileLock(str(lock_path), timeout=cls.LOCK_TIMEOUT):
                logger.debug(f"Lock acquired for {file_path.name}")

                df = cls._load_or_create_df(file_path)

                export_time = datetime.now().isoformat()
                new_rows = pd.DataFrame([
                    {
                        "call_id": str(row.get("id")),
                        "establishment_id": establishment_id,
                        "table_number": str(row.get("table_number", "")),
                        "type": row.get("type"),
                        "status": row.get("status"),
                        "created_at": datetime.fromtimestamp(float(row["created_at"])).isoformat(),
                        "exported_at": export_time,
                    }
                    for row in rows
                ], columns=cls.CALL_COLUMNS)

                if len(df):
                    df = df[~df["call_id"].astype(str).isin(new_rows["call_id"])]
                    df = pd.concat([df, new_rows], ignore_index=True)
                else:
                    df = new_rows
                df.to_excel(str(file_path), index=False, engine="openpyxl")

                logger.info(f"{len(rows)} call(s) exported for {establishment_id}")

                result["success"] = True
                result["rows"] = len(rows)
                result["message"] = f"{len(rows)} call(s) exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for {file_path.name}")

        except Timeout:
            result["message"] = f"Lock timeout ({cls.LOCK_TIMEOUT}s)"
            logger.error(f"Lock timeout for {file_path.name}")

        except Exception as e:
            result["message"] = str(e)
            logger.exception(f"Error exporting call history for {establishment_id}")

        return result

    @classmethod
    def get_call_history(cls, establishment_id: str) -> list[dict[str, Any]]:
        """Read back an establishment's exported history."""
        file_path = cls.history_file(establishment_id)
        if not file_path.exists():
            return []

        try:
            df = pd.read_excel(file_path, engine="openpyxl", dtype={"call_id": str, "table_number": str})
            return df.to_dict("records")
        except Exception as e:
            logger.error(f"Error reading {file_path}: {e}")
            return []
