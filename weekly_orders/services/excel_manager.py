"""
Excel File Manager with Concurrency Control

Spreadsheet side of the weekly menu:
- Menu upload parsing (fixed layout, day rows in Monday..Friday order)
- Summary export to a shared workbook, guarded by a file lock
- Summary workbook download
"""

import logging
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Optional
from zipfile import BadZipFile

import pandas as pd
from filelock import FileLock, Timeout

from weekly_orders.core.config import get_settings
from weekly_orders.core.errors import InvalidMenuError
from weekly_orders.services.aggregator import AggregateSummary

logger = logging.getLogger(__name__)

# Day labels of rows 3..7 of an uploaded menu sheet
UPLOAD_DAY_ROWS = ("LUNES", "MARTES", "MIERCOLES", "JUEVES", "VIERNES")
UPLOAD_FIRST_ROW = 2


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and pd.isna(value):
        return True
    return not str(value).strip()


class ExcelManager:
    """Menu parsing and summary export."""

    SUMMARY_COLUMNS = ["week_start", "day", "option", "count", "exported_at"]
    COMMENT_COLUMNS = ["week_start", "day", "comment", "exported_at"]

    @staticmethod
    def _data_dir() -> Path:
        directory = Path(get_settings().data_directory)
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {directory}")
        return directory

    @classmethod
    def summary_file(cls) -> Path:
        return cls._data_dir() / get_settings().summary_excel_filename

    @classmethod
    def _lock_file(cls) -> Path:
        path = cls.summary_file()
        return path.with_name(path.name + ".lock")

    # =========================================================================
    # MENU UPLOAD
    # =========================================================================

    @staticmethod
    def parse_menu(content: bytes) -> dict[str, list[str]]:
        """
        Read the raw day -> options mapping of an uploaded workbook.

        Only the first sheet is read. Rows 3 to 7 hold Monday to Friday and
        the options start at the second column; the first column (the day
        label written in the sheet) is ignored.

        Raises:
            InvalidMenuError: the file is not a readable workbook
        """
        try:
            frame = pd.read_excel(BytesIO(content), header=None, engine="openpyxl", dtype=object)
        except (ValueError, OSError, KeyError, BadZipFile) as e:
            logger.warning(f"Unreadable menu workbook: {e}")
            raise InvalidMenuError("El archivo Excel no se pudo leer", detail=str(e))

        raw: dict[str, list[str]] = {}
        for offset, day in enumerate(UPLOAD_DAY_ROWS):
            index = UPLOAD_FIRST_ROW + offset
            if index >= len(frame.index):
                logger.warning(f"No row for {day} in the uploaded menu")
                continue
            cells = frame.iloc[index].tolist()[1:]
            options = [str(cell).strip() for cell in cells if not _is_blank(cell)]
            if not options:
                logger.warning(f"No options for {day} in the uploaded menu")
            raw[day] = options

        logger.info(f"Menu workbook parsed: {sum(len(v) for v in raw.values())} options")
        return raw

    # =========================================================================
    # SUMMARY EXPORT
    # =========================================================================

    @classmethod
    def _frames(cls, summary: AggregateSummary, exported_at: str) -> tuple[pd.DataFrame, pd.DataFrame]:
        counts = [
            {
                "week_start": summary.week_start,
                "day": day.day,
                "option": option,
                "count": count,
                "exported_at": exported_at,
            }
            for day in summary.orders
            for option, count in day.nonzero_counts().items()
        ]
        comments = [
            {
                "week_start": summary.week_start,
                "day": day.day,
                "comment": comment,
                "exported_at": exported_at,
            }
            for day in summary.orders
            for comment in day.comments
        ]
        return (
            pd.DataFrame(counts, columns=cls.SUMMARY_COLUMNS),
            pd.DataFrame(comments, columns=cls.COMMENT_COLUMNS),
        )

    @classmethod
    def summary_workbook(cls, summary: AggregateSummary) -> bytes:
        """Workbook bytes for a download; nothing is written to disk."""
        counts, comments = cls._frames(summary, datetime.now().isoformat())
        buffer = BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            counts.to_excel(writer, sheet_name="Resumen", index=False)
            comments.to_excel(writer, sheet_name="Comentarios", index=False)
        return buffer.getvalue()

    @classmethod
    def _load_sheet(cls, path: Path, sheet: str, columns: list[str]) -> pd.DataFrame:
        if path.exists():
            try:
                return pd.read_excel(path, sheet_name=sheet, engine="openpyxl")
            except (ValueError, OSError) as e:
                logger.warning(f"Error reading {path} [{sheet}]: {e}")
        return pd.DataFrame(columns=columns)

    @classmethod
    def export_summary(cls, summary: AggregateSummary) -> dict[str, Any]:
        """
        Write the summary of a week into the shared workbook.

        Rows of the same week already in the workbook are replaced, other
        weeks are kept.
        """
        week_start = summary.week_start
        result = {
            "success": False,
            "message": "",
            "week_start": week_start,
            "exported_at": None,
        }
        timeout = get_settings().excel_lock_timeout
        path = cls.summary_file()

        try:
            with FileLock(str(cls._lock_file()), timeout=timeout):
                logger.debug(f"Lock acquired for summary {week_start}")

                export_time = datetime.now().isoformat()
                counts, comments = cls._frames(summary, export_time)

                old_counts = cls._load_sheet(path, "Resumen", cls.SUMMARY_COLUMNS)
                old_comments = cls._load_sheet(path, "Comentarios", cls.COMMENT_COLUMNS)
                old_counts = old_counts[old_counts["week_start"].astype(str) != week_start]
                old_comments = old_comments[old_comments["week_start"].astype(str) != week_start]

                frames = [f for f in (old_counts, counts) if not f.empty]
                counts = pd.concat(frames, ignore_index=True) if frames else counts
                frames = [f for f in (old_comments, comments) if not f.empty]
                comments = pd.concat(frames, ignore_index=True) if frames else comments

                with pd.ExcelWriter(str(path), engine="openpyxl") as writer:
                    counts.to_excel(writer, sheet_name="Resumen", index=False)
                    comments.to_excel(writer, sheet_name="Comentarios", index=False)

                logger.info(f"Summary {week_start} exported to {path}")
                result["success"] = True
                result["message"] = f"Summary {week_start} exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for summary {week_start}")

        except Timeout:
            result["message"] = f"Lock timeout ({timeout}s)"
            logger.error(f"Lock timeout for summary {week_start}")

        except Exception as e:
            result["message"] = str(e)
            logger.exception(f"Error exporting summary {week_start}")

        return result

    @classmethod
    def read_summary(cls, path: Optional[Path] = None) -> list[dict[str, Any]]:
        """Count rows of an exported workbook."""
        path = path or cls.summary_file()
        if not path.exists():
            return []
        try:
            return pd.read_excel(path, sheet_name="Resumen", engine="openpyxl").to_dict("records")
        except (ValueError, OSError) as e:
            logger.error(f"Error reading summary workbook: {e}")
            return []

    @classmethod
    def clear_all(cls) -> bool:
        """Delete the exported workbook and its lock."""
        try:
            for f in (cls.summary_file(), cls._lock_file()):
                if f.exists():
                    f.unlink()
            logger.info("Summary workbook cleared")
            return True
        except OSError as e:
            logger.error(f"Error clearing files: {e}")
            return False
