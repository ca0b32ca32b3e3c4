import asyncio
import hashlib
import hmac
import itertools
import json
import logging
import secrets
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Literal

from presencebook.config import ADMIN_EMAIL, ADMIN_PASSWORD, DB_PATH

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

FilterOp = Literal["==", "array-contains"]
Filter = tuple[str, FilterOp, Any]
Document = dict[str, Any]
SnapshotCallback = Callable[[list[Document]], None]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Placeholder replaced by the commit time when the write lands.
SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    """Failure reported by the document store.

    `code` follows the remote datastore vocabulary (`unavailable`,
    `permission-denied`, `deadline-exceeded`, `not-found`, ...).
    """

    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(message)
        self.code = code


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist", code="not-found")
        self.collection = collection
        self.doc_id = doc_id


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db(db_path: Path | str | None = None):
    conn = sqlite3.connect(str(db_path or DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    email = (ADMIN_EMAIL or "").strip().lower()
    password = (ADMIN_PASSWORD or "").strip()
    if not email or not password:
        return

    cursor.execute(
        """
        SELECT uid
        FROM accounts
        WHERE email = ? COLLATE NOCASE
        """,
        (email,),
    )
    row = cursor.fetchone()
    if row:
        uid = str(row[0])
    else:
        uid = uuid.uuid4().hex
        cursor.execute(
            """
            INSERT INTO accounts (uid, email, password_hash)
            VALUES (?, ?, ?)
            """,
            (uid, email, _hash_password(password)),
        )

    profile = {
        "role": "admin",
        "email": email,
        "name": "Administrator",
        "department": None,
    }
    cursor.execute(
        """
        INSERT OR IGNORE INTO documents (collection, id, data)
        VALUES ('users', ?, ?)
        """,
        (uid, json.dumps(profile)),
    )


def create_tables():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        id TEXT NOT NULL,
        data TEXT NOT NULL,              -- JSON object
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (collection, id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS accounts (
        uid TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Accounts (authentication provider)
# -----------------------------
def create_account(email: str, password: str, *, uid: str | None = None) -> str:
    clean_email = email.strip().lower()
    clean_password = password.strip()
    if not clean_email:
        raise ValueError("Email is required.")
    if not clean_password:
        raise ValueError("Password is required.")

    new_uid = uid or uuid.uuid4().hex
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO accounts (uid, email, password_hash)
        VALUES (?, ?, ?)
        """,
        (new_uid, clean_email, _hash_password(clean_password)),
    )
    conn.commit()
    conn.close()
    return new_uid


def verify_account_credentials(email: str, password: str) -> dict | None:
    clean_email = email.strip().lower()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT uid, email, password_hash
        FROM accounts
        WHERE email = ? COLLATE NOCASE
        LIMIT 1
        """,
        (clean_email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(clean_password, str(row[2])):
        return None
    return {"uid": str(row[0]), "email": str(row[1])}


# -----------------------------
# Document store
# -----------------------------
@dataclass
class _Listener:
    collection: str
    where: list[Filter]
    callback: SnapshotCallback
    active: bool = field(default=True)


def _matches(doc: Document, where: list[Filter]) -> bool:
    for field_name, op, value in where:
        current = doc.get(field_name)
        if op == "==":
            if current != value:
                return False
        elif op == "array-contains":
            if not isinstance(current, list) or value not in current:
                return False
        else:
            raise StoreError(f"Unsupported filter operator: {op}", code="invalid-argument")
    return True


def _order(docs: list[Document], order_by: str, descending: bool) -> list[Document]:
    present = [d for d in docs if d.get(order_by) is not None]
    missing = [d for d in docs if d.get(order_by) is None]
    present.sort(key=lambda d: (d[order_by], d["id"]), reverse=descending)
    return present + missing


class DocumentStore:
    """Document store over a single sqlite file.

    Mirrors the remote datastore surface the app was written against:
    create/read/update/delete, equality and array-contains queries, and
    change subscriptions that re-deliver the full filtered snapshot after
    every write to the collection (at-least-once, in-process only).
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path or DB_PATH)
        self._clock_lock = threading.Lock()
        self._last_stamp: datetime | None = None
        self._listeners: dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)

    # -- server clock
    def _server_now(self) -> str:
        with self._clock_lock:
            now = datetime.now(timezone.utc)
            if self._last_stamp is not None and now <= self._last_stamp:
                now = self._last_stamp + timedelta(microseconds=1)
            self._last_stamp = now
        return now.isoformat(timespec="microseconds")

    def _resolve(self, data: Document) -> Document:
        stamp: str | None = None
        resolved: Document = {}
        for key, value in data.items():
            if key == "id":
                continue
            if value is SERVER_TIMESTAMP:
                stamp = stamp or self._server_now()
                value = stamp
            resolved[key] = value
        return resolved

    def _connect(self):
        try:
            return connect_db(self.db_path)
        except sqlite3.OperationalError as exc:
            raise StoreError(str(exc), code="unavailable") from exc

    # -- sync primitives (run in worker threads)
    def _get_sync(self, collection: str, doc_id: str) -> Document | None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT data
                FROM documents
                WHERE collection = ? AND id = ?
                """,
                (collection, doc_id),
            )
            row = cur.fetchone()
        except sqlite3.OperationalError as exc:
            raise StoreError(str(exc), code="unavailable") from exc
        finally:
            conn.close()
        if not row:
            return None
        return {"id": doc_id, **json.loads(row[0])}

    def _query_sync(
        self,
        collection: str,
        where: list[Filter],
        order_by: str | None,
        descending: bool,
        limit: int | None,
    ) -> list[Document]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, data
                FROM documents
                WHERE collection = ?
                ORDER BY id
                """,
                (collection,),
            )
            rows = cur.fetchall()
        except sqlite3.OperationalError as exc:
            raise StoreError(str(exc), code="unavailable") from exc
        finally:
            conn.close()

        docs = [{"id": str(r[0]), **json.loads(r[1])} for r in rows]
        docs = [d for d in docs if _matches(d, where)]
        if order_by:
            docs = _order(docs, order_by, descending)
        if limit is not None:
            docs = docs[: max(0, int(limit))]
        return docs

    def _write_sync(self, collection: str, doc_id: str, data: Document, mode: str) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            if mode == "create":
                cur.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES (?, ?, ?)
                    """,
                    (collection, doc_id, json.dumps(self._resolve(data))),
                )
            elif mode in ("update", "merge"):
                cur.execute(
                    """
                    SELECT data
                    FROM documents
                    WHERE collection = ? AND id = ?
                    """,
                    (collection, doc_id),
                )
                row = cur.fetchone()
                if not row and mode == "update":
                    raise DocumentNotFoundError(collection, doc_id)
                merged = json.loads(row[0]) if row else {}
                merged.update(self._resolve(data))
                cur.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES (?, ?, ?)
                    ON CONFLICT(collection, id) DO UPDATE
                    SET data = excluded.data,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (collection, doc_id, json.dumps(merged)),
                )
            else:
                cur.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES (?, ?, ?)
                    ON CONFLICT(collection, id) DO UPDATE
                    SET data = excluded.data,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (collection, doc_id, json.dumps(self._resolve(data))),
                )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc), code="already-exists") from exc
        except sqlite3.OperationalError as exc:
            raise StoreError(str(exc), code="unavailable") from exc
        finally:
            conn.close()

    def _delete_sync(self, collection: str, doc_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                DELETE FROM documents
                WHERE collection = ? AND id = ?
                """,
                (collection, doc_id),
            )
            deleted = cur.rowcount > 0
            conn.commit()
        except sqlite3.OperationalError as exc:
            raise StoreError(str(exc), code="unavailable") from exc
        finally:
            conn.close()
        return deleted

    # -- async surface
    async def add(self, collection: str, data: Document) -> str:
        doc_id = uuid.uuid4().hex
        await asyncio.to_thread(self._write_sync, collection, doc_id, data, "create")
        await self._publish(collection)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Document, *, merge: bool = False) -> None:
        await asyncio.to_thread(self._write_sync, collection, doc_id, data, "merge" if merge else "replace")
        await self._publish(collection)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return await asyncio.to_thread(self._get_sync, collection, doc_id)

    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        await asyncio.to_thread(self._write_sync, collection, doc_id, fields, "update")
        await self._publish(collection)

    async def delete(self, collection: str, doc_id: str) -> bool:
        deleted = await asyncio.to_thread(self._delete_sync, collection, doc_id)
        if deleted:
            await self._publish(collection)
        return deleted

    async def query(
        self,
        collection: str,
        where: list[Filter] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        return await asyncio.to_thread(
            self._query_sync,
            collection,
            list(where or []),
            order_by,
            descending,
            limit,
        )

    async def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        where: list[Filter] | None = None,
    ) -> Callable[[], None]:
        """
        Register `callback` for snapshots of `collection` matching `where`.

        The current snapshot is delivered before this returns. The returned
        callable cancels the subscription and is safe to call twice.
        """
        listener = _Listener(collection=collection, where=list(where or []), callback=callback)
        listener_id = next(self._listener_ids)
        snapshot = await self.query(collection, listener.where)
        self._listeners[listener_id] = listener
        callback(snapshot)

        def unsubscribe() -> None:
            listener.active = False
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def listener_count(self, collection: str | None = None) -> int:
        return sum(
            1
            for listener in self._listeners.values()
            if collection is None or listener.collection == collection
        )

    async def _publish(self, collection: str) -> None:
        for listener in list(self._listeners.values()):
            if listener.collection != collection or not listener.active:
                continue
            try:
                snapshot = await self.query(collection, listener.where)
            except StoreError:
                logger.warning("Snapshot refresh failed for %s listener", collection, exc_info=True)
                continue
            if not listener.active:
                continue
            try:
                listener.callback(snapshot)
            except Exception:
                logger.exception("Snapshot listener for %s raised", collection)
