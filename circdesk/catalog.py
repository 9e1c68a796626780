import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from circdesk.database import read_connection, transaction
from circdesk.errors import AssetUnavailableError, NotFoundError, ValidationError
from circdesk.models import Asset, AssetStatus, Title, format_datetime, money
from circdesk.services.google_books import GoogleBooksService

logger = logging.getLogger(__name__)

ASSET_CODE_PREFIX = "BOOK"


# ------------------------------------------------------------------ #
# Helpers that run on a caller's connection (inside its transaction). #
# ------------------------------------------------------------------ #
def fetch_title(conn: sqlite3.Connection, title_id: int) -> Optional[Title]:
    row = conn.execute("SELECT * FROM titles WHERE id = ?", (title_id,)).fetchone()
    return Title.from_row(row) if row else None


def fetch_asset(conn: sqlite3.Connection, asset_id: int, include_deleted: bool = False) -> Optional[Asset]:
    sql = "SELECT * FROM assets WHERE id = ?"
    if not include_deleted:
        sql += " AND deleted_at IS NULL"
    row = conn.execute(sql, (asset_id,)).fetchone()
    return Asset.from_row(row) if row else None


def fetch_asset_by_code(conn: sqlite3.Connection, asset_code: str, include_deleted: bool = False) -> Optional[Asset]:
    sql = "SELECT * FROM assets WHERE asset_code = ?"
    if not include_deleted:
        sql += " AND deleted_at IS NULL"
    row = conn.execute(sql, (asset_code.strip(),)).fetchone()
    return Asset.from_row(row) if row else None


def update_asset_status(conn: sqlite3.Connection, asset_id: int, status: AssetStatus) -> None:
    """Persist a status transition. Only the circulation engine calls this."""
    conn.execute("UPDATE assets SET status = ? WHERE id = ?", (status.value, asset_id))


def next_asset_code(conn: sqlite3.Connection, year: int) -> str:
    """Next sequential code for the year, e.g. BOOK-2026-0001."""
    prefix = f"{ASSET_CODE_PREFIX}-{year}-"
    row = conn.execute(
        "SELECT asset_code FROM assets WHERE asset_code LIKE ? ORDER BY asset_code DESC LIMIT 1",
        (prefix + "%",),
    ).fetchone()
    sequence = 1
    if row:
        try:
            sequence = int(row["asset_code"][len(prefix):]) + 1
        except ValueError:
            logger.warning(f"Unparseable asset code {row['asset_code']}; restarting sequence")
    return f"{prefix}{sequence:04d}"


class CatalogStore:
    """Titles and their physical copies."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        google_books: Optional[GoogleBooksService] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db_file = db_file
        self.google_books = google_books
        self.clock = clock

    # ------------------------- Titles ------------------------- #
    def add_title(
        self,
        title: str,
        author: str,
        isbn: Optional[str] = None,
        call_number: Optional[str] = None,
        category: Optional[str] = None,
        price: Decimal = Decimal("0"),
    ) -> Title:
        if not title or not title.strip():
            raise ValidationError("Title cannot be empty.")
        if not author or not author.strip():
            raise ValidationError("Author cannot be empty.")
        price = money(price)
        if price < 0:
            raise ValidationError("Price cannot be negative.", price=price)
        with transaction(self.db_file) as conn:
            cursor = conn.execute(
                "INSERT INTO titles (title, author, isbn, call_number, category, price) VALUES (?, ?, ?, ?, ?, ?)",
                (title.strip(), author.strip(), isbn, call_number, category, price),
            )
            created = fetch_title(conn, cursor.lastrowid)
        logger.info(f"Title added: {created.title} (id={created.id})")
        return created

    def add_title_by_isbn(
        self,
        isbn: str,
        call_number: Optional[str] = None,
        price: Decimal = Decimal("0"),
    ) -> Title:
        """Fetch metadata from Google Books by ISBN and create the title."""
        service = self.google_books or GoogleBooksService()
        data = service.lookup_isbn(isbn)
        if data is None:
            raise LookupError("Book not found.")
        return self.add_title(
            title=data.title,
            author=", ".join(data.authors) if data.authors else "Unknown Author",
            isbn=data.isbn,
            call_number=call_number,
            category=data.categories[0] if data.categories else None,
            price=price,
        )

    def get_title(self, title_id: int) -> Title:
        with read_connection(self.db_file) as conn:
            title = fetch_title(conn, title_id)
        if title is None or title.deleted_at is not None:
            raise NotFoundError("title", title_id)
        return title

    # ------------------------- Assets ------------------------- #
    def add_asset(
        self,
        title_id: int,
        asset_code: Optional[str] = None,
        building: Optional[str] = None,
        aisle: Optional[str] = None,
        shelf: Optional[str] = None,
    ) -> Asset:
        """Register a physical copy. New copies always start available."""
        with transaction(self.db_file) as conn:
            title = fetch_title(conn, title_id)
            if title is None or title.deleted_at is not None:
                raise NotFoundError("title", title_id)
            code = asset_code.strip() if asset_code else next_asset_code(conn, self.clock().year)
            try:
                cursor = conn.execute(
                    "INSERT INTO assets (title_id, asset_code, building, aisle, shelf, status) VALUES (?, ?, ?, ?, ?, ?)",
                    (title_id, code, building, aisle, shelf, AssetStatus.AVAILABLE.value),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Asset code {code} already exists.", asset_code=code) from e
            asset = fetch_asset(conn, cursor.lastrowid)
        logger.info(f"Asset {asset.asset_code} added for title {title_id}")
        return asset

    def get_asset(self, asset_id: int, include_deleted: bool = False) -> Asset:
        with read_connection(self.db_file) as conn:
            asset = fetch_asset(conn, asset_id, include_deleted)
        if asset is None:
            raise NotFoundError("asset", asset_id)
        return asset

    def get_asset_by_code(self, asset_code: str, include_deleted: bool = False) -> Asset:
        with read_connection(self.db_file) as conn:
            asset = fetch_asset_by_code(conn, asset_code, include_deleted)
        if asset is None:
            raise NotFoundError("asset", asset_code)
        return asset

    def list_assets(self, title_id: int) -> List[Asset]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM assets WHERE title_id = ? AND deleted_at IS NULL ORDER BY asset_code",
                (title_id,),
            ).fetchall()
        return [Asset.from_row(row) for row in rows]

    def availability(self, title_id: int) -> Dict[str, int]:
        """Copy counts per status for a title, e.g. {"available": 2, ...}."""
        counts = {status.value: 0 for status in AssetStatus}
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM assets WHERE title_id = ? AND deleted_at IS NULL GROUP BY status",
                (title_id,),
            ).fetchall()
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def retire_asset(self, asset_id: int) -> Asset:
        """Soft-delete a copy. Copies out on loan cannot be retired."""
        with transaction(self.db_file) as conn:
            asset = fetch_asset(conn, asset_id)
            if asset is None:
                raise NotFoundError("asset", asset_id)
            if asset.status is AssetStatus.BORROWED:
                raise AssetUnavailableError(asset.asset_code, asset.status.value, required="not borrowed")
            conn.execute(
                "UPDATE assets SET deleted_at = ? WHERE id = ?",
                (format_datetime(self.clock()), asset_id),
            )
            retired = fetch_asset(conn, asset_id, include_deleted=True)
        logger.info(f"Asset {retired.asset_code} retired")
        return retired
