"""
SQLite persistence for chat registrations and the scraped meal cache.

A connection is opened per operation; there is no long lived transaction.
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List

from mensa_core.errors import StoreError


@dataclass(frozen=True)
class StoredRegistration:
    """One row of the registrations table."""

    chat_id: int
    mensa_id: int
    hour: int | None
    minute: int | None
    last_markup_id: int | None


class RegistrationStore:
    """Durable table of registrations, one row per chat."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        if self.path.parent != Path("."):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._create_tables()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open {self.path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _create_tables(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS registrations (
                    chat_id INTEGER NOT NULL UNIQUE PRIMARY KEY,
                    mensa_id INTEGER NOT NULL,
                    hour INTEGER,
                    minute INTEGER,
                    last_markup_id INTEGER
                );

                CREATE TABLE IF NOT EXISTS meals (
                    mensa_and_date TEXT UNIQUE,
                    json_text TEXT
                );
                """
            )

    # Registrations ---------------------------------------------------------
    def upsert_full(self, chat_id: int, mensa_id: int, hour: int | None, minute: int | None) -> None:
        """Creates the row or replaces location and schedule; a stored markup id survives."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO registrations (chat_id, mensa_id, hour, minute)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    mensa_id = excluded.mensa_id,
                    hour = excluded.hour,
                    minute = excluded.minute
                """,
                (chat_id, mensa_id, hour, minute),
            )

    def update_partial(
        self,
        chat_id: int,
        mensa_id: int | None = None,
        hour: int | None = None,
        minute: int | None = None,
        markup_id: int | None = None,
    ) -> None:
        """Updates only the fields that are given (not None)."""
        columns = {
            "mensa_id": mensa_id,
            "hour": hour,
            "minute": minute,
            "last_markup_id": markup_id,
        }
        changes = {column: value for column, value in columns.items() if value is not None}
        if not changes:
            return

        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._connection() as conn:
            conn.execute(
                f"UPDATE registrations SET {assignments} WHERE chat_id = ?",
                (*changes.values(), chat_id),
            )

    def clear_schedule(self, chat_id: int) -> None:
        """Removes the send time but keeps the row."""
        with self._connection() as conn:
            conn.execute(
                "UPDATE registrations SET hour = NULL, minute = NULL WHERE chat_id = ?",
                (chat_id,),
            )

    def load_all(self) -> List[StoredRegistration]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT chat_id, mensa_id, hour, minute, last_markup_id FROM registrations"
            ).fetchall()
        return [StoredRegistration(*row) for row in rows]

    # Meal cache ------------------------------------------------------------
    def get_meals_json(self, key: str) -> str | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT json_text FROM meals WHERE mensa_and_date = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def save_meals_json(self, key: str, json_text: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "REPLACE INTO meals (mensa_and_date, json_text) VALUES (?, ?)",
                (key, json_text),
            )
