"""Monthly borrow counts grouped by call-number range.

Call number "243" falls in range 200-299; each successful borrow bumps the
counter for (year, month, range, patron class). The ranges come from the
``statistics_ranges`` library setting.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from circdesk.database import STATISTICS_RANGES, read_connection, transaction
from circdesk.models import PatronClass
from circdesk.settings_store import LibrarySettings

logger = logging.getLogger(__name__)

_LEADING_DIGITS = re.compile(r"^(\d{1,3})")


def _label(bucket: Dict[str, Any]) -> str:
    return bucket.get("label") or f"{bucket['start']:03d}-{bucket['end']:03d}"


def classify_call_number(
    call_number: Optional[str], ranges: List[Dict[str, Any]] = STATISTICS_RANGES
) -> Optional[Tuple[int, int]]:
    """Return (range_start, range_end) for a call number, or None if unparseable."""
    if not call_number:
        return None
    match = _LEADING_DIGITS.match(call_number.strip())
    if not match:
        return None
    number = int(match.group(1))
    for bucket in ranges:
        if bucket["start"] <= number <= bucket["end"]:
            return bucket["start"], bucket["end"]
    return None


class StatisticsRecorder:
    def __init__(self, db_file: Optional[str] = None, library_settings: Optional[LibrarySettings] = None) -> None:
        self.db_file = db_file
        self.library_settings = library_settings or LibrarySettings(db_file=db_file)

    def ranges(self) -> List[Dict[str, Any]]:
        return self.library_settings.get_value("statistics_ranges", STATISTICS_RANGES) or STATISTICS_RANGES

    def record_borrow(
        self,
        call_number: Optional[str],
        patron_class: PatronClass,
        when: Optional[datetime] = None,
    ) -> bool:
        bucket = classify_call_number(call_number, self.ranges())
        if bucket is None:
            logger.debug(f"Skipping statistics for unparseable call number {call_number!r}")
            return False
        range_start, range_end = bucket
        when = when or datetime.now()
        with transaction(self.db_file) as conn:
            conn.execute(
                """
                INSERT INTO monthly_statistics (year, month, range_start, range_end, user_type, count)
                VALUES (?, ?, ?, ?, ?, 1)
                ON CONFLICT (year, month, range_start, user_type)
                DO UPDATE SET count = count + 1
                """,
                (when.year, when.month, range_start, range_end, PatronClass(patron_class).value),
            )
        logger.info(
            f"Borrow recorded: call number {call_number!r} -> {range_start}-{range_end}, "
            f"{when.month}/{when.year}, {PatronClass(patron_class).value}"
        )
        return True

    def yearly_matrix(self, year: int, patron_class: Optional[PatronClass] = None) -> Dict[str, Dict[int, int]]:
        """Counts for every configured range and month of a year, zero-filled.

        Keys are the range labels, e.g. "200-299".
        """
        labels = {(bucket["start"], bucket["end"]): _label(bucket) for bucket in self.ranges()}
        matrix = {label: {month: 0 for month in range(1, 13)} for label in labels.values()}
        sql = "SELECT range_start, range_end, month, SUM(count) AS total FROM monthly_statistics WHERE year = ?"
        params: tuple = (year,)
        if patron_class is not None:
            sql += " AND user_type = ?"
            params += (PatronClass(patron_class).value,)
        sql += " GROUP BY range_start, range_end, month"
        with read_connection(self.db_file) as conn:
            for row in conn.execute(sql, params).fetchall():
                key = labels.get((row["range_start"], row["range_end"]))
                if key is not None:
                    matrix[key][row["month"]] = row["total"]
        return matrix
