"""Durable storage of committed transactions and client balances."""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Union

from .messages import TxnRequest

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user TEXT PRIMARY KEY,
    balance REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS transactions (
    msg_id TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    receiver TEXT NOT NULL,
    amount REAL NOT NULL,
    term INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""

_TXN_COLUMNS = "msg_id, sender, receiver, amount, term"


class DataStoreError(Exception):
    """A storage operation failed."""


class BalanceNotFound(DataStoreError):
    """No balance row exists for the requested user."""


class NoRowsUpdated(DataStoreError):
    """An update matched no rows."""


def _row_to_txn(row: tuple) -> TxnRequest:
    msg_id, sender, receiver, amount, term = row
    return TxnRequest(
        sender=sender, receiver=receiver, amount=amount, msg_id=msg_id, term=term
    )


class DataStore:
    """SQLite-backed store of users and committed transactions."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self._conn = sqlite3.connect(
            os.fspath(path), check_same_thread=False, isolation_level=None
        )
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            self._conn.close()
            raise DataStoreError(str(exc)) from exc

    def __enter__(self) -> DataStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise DataStoreError(str(exc)) from exc

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[tuple]:
        with self._lock:
            return self._execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    def add_user(self, user: str, balance: float) -> None:
        self._execute(
            "INSERT OR REPLACE INTO users (user, balance) VALUES (?, ?)",
            (user, balance),
        )

    def get_balance(self, user: str) -> float:
        row = self._fetchone("SELECT balance FROM users WHERE user = ?", (user,))
        if row is None:
            raise BalanceNotFound(f"no balance found for user: {user}")
        return row[0]

    @contextmanager
    def transaction(self) -> Iterator[DataStore]:
        """Run the enclosed statements atomically; roll back on any exception."""
        with self._lock:
            if self._in_transaction:
                raise DataStoreError("a transaction is already in progress")
            self._execute("BEGIN")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self._execute("ROLLBACK")
                raise
            else:
                try:
                    self._execute("COMMIT")
                except DataStoreError:
                    self._execute("ROLLBACK")
                    raise
            finally:
                self._in_transaction = False

    def update_balance(self, user: str, balance: float) -> None:
        cursor = self._execute(
            "UPDATE users SET balance = ? WHERE user = ?", (balance, user)
        )
        if cursor.rowcount == 0:
            raise NoRowsUpdated("no rows updated for user")

    def insert_transaction(
        self, txn: TxnRequest, created_at: Optional[datetime] = None
    ) -> None:
        stamp = (created_at or datetime.now()).isoformat()
        self._execute(
            "INSERT INTO transactions (msg_id, sender, receiver, amount, term, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (txn.msg_id, txn.sender, txn.receiver, txn.amount, txn.term, stamp),
        )

    def get_transaction(self, msg_id: str) -> Optional[TxnRequest]:
        row = self._fetchone(
            f"SELECT {_TXN_COLUMNS} FROM transactions WHERE msg_id = ?", (msg_id,)
        )
        return None if row is None else _row_to_txn(row)

    def latest_term(self) -> int:
        row = self._fetchone("SELECT term FROM transactions ORDER BY term DESC LIMIT 1")
        return 0 if row is None else row[0]

    def transactions_after_term(self, term: int) -> list[TxnRequest]:
        rows = self._fetchall(
            f"SELECT {_TXN_COLUMNS} FROM transactions WHERE term > ?"
            " ORDER BY created_at, rowid",
            (term,),
        )
        return [_row_to_txn(row) for row in rows]

    def all_transactions(self) -> list[TxnRequest]:
        rows = self._fetchall(
            f"SELECT {_TXN_COLUMNS} FROM transactions ORDER BY created_at, rowid"
        )
        return [_row_to_txn(row) for row in rows]