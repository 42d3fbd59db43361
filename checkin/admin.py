"""Organizer credentials and the event-name word filter.

Both live in a small SQLite database separate from the ticket data.
"""

import logging
import sqlite3
from pathlib import Path

from better_profanity import profanity
from fastapi import HTTPException, status
from fastapi.security import HTTPBasicCredentials
from filelock import FileLock
from passlib.context import CryptContext

from checkin.config import LOCK_TIMEOUT
from checkin.errors import ProhibitedEventNameError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class AdminDatabase:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.lock_path = Path(str(self.db_path) + ".lock")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        conn.close()

    def connect(self) -> sqlite3.Connection:
        """Get a connection to the admin database, initializing if needed."""
        conn = sqlite3.connect(self.db_path, timeout=LOCK_TIMEOUT)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS authentication (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                password TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS prohibited_words (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                word TEXT UNIQUE NOT NULL
            )
        """)
        conn.commit()
        return conn

    def lock(self) -> FileLock:
        return FileLock(self.lock_path, timeout=LOCK_TIMEOUT)

    # --- credentials ---

    def ensure_user(self, username: str, password: str) -> None:
        """Seed the organizer account if no account exists yet."""
        with self.lock():
            db = self.connect()
            cur = db.cursor()
            cur.execute("SELECT COUNT(*) FROM authentication")
            if cur.fetchone()[0] == 0:
                cur.execute(
                    "INSERT INTO authentication (username, password) VALUES (?, ?)",
                    (username, pwd_context.hash(password)),
                )
                db.commit()
                logger.info("Created organizer account '%s'", username)
            db.close()

    def verify_credentials(self, credentials: HTTPBasicCredentials) -> str:
        """Verify provided HTTP Basic credentials."""
        db = self.connect()
        cur = db.cursor()
        cur.execute(
            "SELECT password FROM authentication WHERE username = ?",
            (credentials.username,),
        )
        row = cur.fetchone()
        db.close()
        if not row or not pwd_context.verify(credentials.password, row[0]):
            logger.warning("Rejected organizer login for '%s'", credentials.username)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": 'Basic realm="Organizer Area"'},
            )
        return credentials.username

    # --- prohibited words ---

    def list_prohibited_words(self) -> list[tuple[int, str]]:
        db = self.connect()
        rows = db.execute("SELECT id, word FROM prohibited_words ORDER BY word").fetchall()
        db.close()
        return rows

    def add_prohibited_word(self, word: str) -> None:
        with self.lock():
            db = self.connect()
            db.execute("INSERT OR IGNORE INTO prohibited_words (word) VALUES (?)", (word,))
            db.commit()
            db.close()
        self.load_filters()

    def remove_prohibited_word(self, word_id: int) -> None:
        with self.lock():
            db = self.connect()
            db.execute("DELETE FROM prohibited_words WHERE id = ?", (word_id,))
            db.commit()
            db.close()
        self.load_filters()

    def load_filters(self) -> None:
        """Load the default censor list plus organizer-prohibited words."""
        profanity.load_censor_words()
        profanity.add_censor_words([word for _, word in self.list_prohibited_words()])


def check_event_name(event_name: str) -> None:
    if profanity.contains_profanity(event_name):
        raise ProhibitedEventNameError(event_name)
