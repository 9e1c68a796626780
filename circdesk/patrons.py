import logging
import sqlite3
from typing import List, Optional

from circdesk.database import read_connection, transaction
from circdesk.errors import NotFoundError, ValidationError
from circdesk.models import Patron, PatronClass, PatronStatus

logger = logging.getLogger(__name__)


def fetch_patron(conn: sqlite3.Connection, patron_id: int) -> Optional[Patron]:
    row = conn.execute(
        "SELECT * FROM patrons WHERE id = ? AND deleted_at IS NULL", (patron_id,)
    ).fetchone()
    return Patron.from_row(row) if row else None


class PatronDirectory:
    """Students and faculty known to the library.

    Patron records are maintained by the registrar side of the system; the
    circulation engine only reads them.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def register(
        self,
        patron_code: str,
        name: str,
        patron_class: PatronClass = PatronClass.STUDENT,
        email: Optional[str] = None,
        status: PatronStatus = PatronStatus.ACTIVE,
    ) -> Patron:
        if not patron_code or not patron_code.strip():
            raise ValidationError("Patron code cannot be empty.")
        if not name or not name.strip():
            raise ValidationError("Patron name cannot be empty.")
        with transaction(self.db_file) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO patrons (patron_code, name, email, patron_class, status) VALUES (?, ?, ?, ?, ?)",
                    (patron_code.strip(), name.strip(), email, PatronClass(patron_class).value, PatronStatus(status).value),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Patron {patron_code} already exists.", patron_code=patron_code) from e
            patron = fetch_patron(conn, cursor.lastrowid)
        logger.info(f"Registered {patron.patron_class.value} {patron.patron_code} (id={patron.id})")
        return patron

    def get(self, patron_id: int) -> Patron:
        with read_connection(self.db_file) as conn:
            patron = fetch_patron(conn, patron_id)
        if patron is None:
            raise NotFoundError("patron", patron_id)
        return patron

    def get_by_code(self, patron_code: str) -> Patron:
        with read_connection(self.db_file) as conn:
            row = conn.execute(
                "SELECT * FROM patrons WHERE patron_code = ? AND deleted_at IS NULL",
                (patron_code.strip(),),
            ).fetchone()
        if row is None:
            raise NotFoundError("patron", patron_code)
        return Patron.from_row(row)

    def list(self, patron_class: Optional[PatronClass] = None) -> List[Patron]:
        sql = "SELECT * FROM patrons WHERE deleted_at IS NULL"
        params: tuple = ()
        if patron_class is not None:
            sql += " AND patron_class = ?"
            params = (PatronClass(patron_class).value,)
        with read_connection(self.db_file) as conn:
            rows = conn.execute(sql + " ORDER BY name", params).fetchall()
        return [Patron.from_row(row) for row in rows]

    def set_status(self, patron_id: int, status: PatronStatus) -> Patron:
        with transaction(self.db_file) as conn:
            if fetch_patron(conn, patron_id) is None:
                raise NotFoundError("patron", patron_id)
            conn.execute("UPDATE patrons SET status = ? WHERE id = ?", (PatronStatus(status).value, patron_id))
            patron = fetch_patron(conn, patron_id)
        logger.info(f"Patron {patron.patron_code} is now {patron.status.value}")
        return patron
