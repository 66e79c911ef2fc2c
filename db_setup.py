import sqlite3
import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)

DB_NAME = "contacts.db"

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt DATETIME NOT NULL,
        updatedAt DATETIME NOT NULL,
        CHECK(email IS NOT NULL OR phoneNumber IS NOT NULL),
        CHECK(
            (linkPrecedence = 'primary' AND linkedId IS NULL) OR
            (linkPrecedence = 'secondary' AND linkedId IS NOT NULL)
        ),
        FOREIGN KEY (linkedId) REFERENCES Contact (id)
    )
    ''',
    "CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)",
    "CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)",
    "CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)",
]


class StoreError(Exception):
    """The contact store could not be reached or a query failed."""


class ConflictError(StoreError):
    """Another transaction holds the store; the whole unit may be retried."""


def is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class ContactStore:
    """Access to the sqlite file holding the Contact table."""

    def __init__(self, db_name: str = DB_NAME, timeout: float = 5.0):
        self.db_name = db_name
        self.timeout = timeout

    def init_db(self):
        conn = self.connect()
        try:
            for statement in SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None leaves BEGIN/COMMIT to transaction()
        conn = sqlite3.connect(self.db_name, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self):
        """
        Run one unit of work holding the database write lock.

        BEGIN IMMEDIATE is taken before the first read, so two units can never
        both see the same "no match" state. The unit commits on normal exit and
        rolls back on every other path.
        """
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise StoreError("could not open contact store") from exc

        committed = False
        try:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            conn.commit()
            committed = True
        except sqlite3.OperationalError as exc:
            if is_lock_error(exc):
                raise ConflictError("contact store is busy") from exc
            raise StoreError("contact store query failed") from exc
        except sqlite3.Error as exc:
            raise StoreError("contact store query failed") from exc
        finally:
            if not committed and conn.in_transaction:
                try:
                    conn.rollback()
                except sqlite3.Error:
                    logger.exception("Rollback failed")
            conn.close()

    def now(self) -> str:
        try:
            conn = self.connect()
            try:
                row = conn.execute("SELECT CURRENT_TIMESTAMP AS now").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StoreError("contact store is unreachable") from exc
        return row["now"]
