"""Hierarchical JSON store on top of a single Postgres table.

Paths are slash separated. The first segment names a collection, the second
a document inside it, and anything deeper addresses a subtree of that
document's JSONB value::

    elections                 -> {key: document, ...}
    elections/<id>            -> document
    elections/<id>/candidates -> subtree

There are no multi-document transactions; writes are last-write-wins except
for ``create``, ``update_if`` and ``increment``, which are single conditional
statements.
"""
import logging
import secrets
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator

from psycopg2.extras import Json

from db import get_connection, release_connection

logger = logging.getLogger(__name__)


def split_path(path: str) -> tuple[str, str | None, list[str]]:
    parts = [part for part in str(path).strip("/").split("/") if part]
    if not parts:
        raise ValueError("Document path must not be empty")
    key = parts[1] if len(parts) > 1 else None
    return parts[0], key, parts[2:]


def new_push_key() -> str:
    # millisecond prefix keeps pushed keys in insertion order
    return f"{time.time_ns() // 1_000_000:013x}{secrets.token_hex(4)}"


def _split_fields(fields: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    patch = {name: value for name, value in fields.items() if value is not None}
    removed = [name for name, value in fields.items() if value is None]
    return patch, removed


def _assign(document: dict[str, Any], path: list[str], value: Any) -> None:
    node = document
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    if value is None:
        node.pop(path[-1], None)
    else:
        node[path[-1]] = value


class DocumentStore:
    def __init__(
        self,
        connect: Callable[[], Any] = get_connection,
        release: Callable[[Any], None] = release_connection,
    ) -> None:
        self._connect = connect
        self._release = release

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        conn = self._connect()
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            self._release(conn)

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value JSONB NOT NULL,
                    updated_at TIMESTAMP DEFAULT NOW(),
                    PRIMARY KEY (collection, key)
                );
                """
            )
        logger.info("Document store schema ready")

    def ping(self) -> bool:
        with self._cursor() as cur:
            cur.execute("SELECT 1")
            return cur.fetchone() is not None

    def read(self, path: str) -> Any:
        collection, key, rest = split_path(path)
        with self._cursor() as cur:
            if key is None:
                cur.execute(
                    "SELECT key, value FROM documents WHERE collection = %s ORDER BY key",
                    (collection,),
                )
                rows = cur.fetchall()
                return {row[0]: row[1] for row in rows} or None
            if rest:
                cur.execute(
                    "SELECT value #> %s::text[] FROM documents WHERE collection = %s AND key = %s",
                    (rest, collection, key),
                )
            else:
                cur.execute(
                    "SELECT value FROM documents WHERE collection = %s AND key = %s",
                    (collection, key),
                )
            row = cur.fetchone()
            return row[0] if row else None

    def write(self, path: str, value: Any) -> None:
        collection, key, rest = split_path(path)
        if key is None:
            raise ValueError("Cannot overwrite a whole collection")
        if rest:
            self._rewrite(collection, key, lambda document: _assign(document, rest, value))
            return
        with self._cursor() as cur:
            if value is None:
                cur.execute(
                    "DELETE FROM documents WHERE collection = %s AND key = %s",
                    (collection, key),
                )
                return
            cur.execute(
                """
                INSERT INTO documents (collection, key, value)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                (collection, key, Json(value)),
            )

    def update(self, path: str, fields: dict[str, Any]) -> None:
        collection, key, rest = split_path(path)
        if key is None:
            raise ValueError("Cannot merge fields into a collection")
        if rest:
            def merge(document: dict[str, Any]) -> None:
                for name, value in fields.items():
                    _assign(document, rest + [name], value)

            self._rewrite(collection, key, merge)
            return
        patch, removed = _split_fields(fields)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO documents (collection, key, value)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, key)
                DO UPDATE SET value = (documents.value || EXCLUDED.value) - %s::text[], updated_at = NOW()
                """,
                (collection, key, Json(patch), removed),
            )

    def push(self, collection: str, value: Any) -> str:
        name, key, _ = split_path(collection)
        if key is not None:
            raise ValueError("push expects a collection path")
        new_key = new_push_key()
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO documents (collection, key, value) VALUES (%s, %s, %s)",
                (name, new_key, Json(value)),
            )
        return new_key

    def create(self, path: str, value: Any) -> bool:
        collection, key, rest = split_path(path)
        if key is None or rest:
            raise ValueError("create expects a document path")
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO documents (collection, key, value)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, key) DO NOTHING
                """,
                (collection, key, Json(value)),
            )
            return cur.rowcount == 1

    def update_if(
        self,
        path: str,
        fields: dict[str, Any],
        absent: Iterable[str] = (),
        expected: dict[str, Any] | None = None,
    ) -> bool:
        """Merge ``fields`` only if the document is still in the given shape.

        Every name in ``absent`` must be missing and every ``expected`` field
        must equal the given JSON value (``None`` meaning missing). Returns
        whether the write happened.
        """
        collection, key, rest = split_path(path)
        if key is None or rest:
            raise ValueError("update_if expects a document path")
        patch, removed = _split_fields(fields)
        conditions = ["collection = %s", "key = %s"]
        params: list[Any] = [Json(patch), removed, collection, key]
        for name in absent:
            conditions.append("NOT (value ? %s)")
            params.append(name)
        for name, value in (expected or {}).items():
            if value is None:
                conditions.append("NOT (value ? %s)")
                params.append(name)
            else:
                conditions.append("value -> %s = %s::jsonb")
                params.extend([name, Json(value)])
        with self._cursor() as cur:
            cur.execute(
                "UPDATE documents SET value = (value || %s) - %s::text[], updated_at = NOW() WHERE "
                + " AND ".join(conditions),
                tuple(params),
            )
            return cur.rowcount == 1

    def increment(self, path: str, field: str, start: int) -> int:
        collection, key, rest = split_path(path)
        if key is None or rest:
            raise ValueError("increment expects a document path")
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO documents (collection, key, value)
                VALUES (%s, %s, jsonb_build_object(%s::text, %s::bigint))
                ON CONFLICT (collection, key)
                DO UPDATE SET value = jsonb_set(
                    documents.value,
                    ARRAY[%s::text],
                    to_jsonb(COALESCE((documents.value ->> %s)::bigint, %s::bigint - 1) + 1)
                ), updated_at = NOW()
                RETURNING (value ->> %s)::bigint
                """,
                (collection, key, field, start, field, field, start, field),
            )
            return int(cur.fetchone()[0])

    def _rewrite(self, collection: str, key: str, change: Callable[[dict[str, Any]], None]) -> None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT value FROM documents WHERE collection = %s AND key = %s FOR UPDATE",
                (collection, key),
            )
            row = cur.fetchone()
            document = row[0] if row and isinstance(row[0], dict) else {}
            change(document)
            cur.execute(
                """
                INSERT INTO documents (collection, key, value)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                (collection, key, Json(document)),
            )
