"""
Async Postgres document store: one JSONB row per (collection, id).
Partial updates use dot paths ("providerInfo.plan.status") and are merged under
SELECT ... FOR UPDATE. Batches commit several documents in one transaction.
"""
import copy
import json
import uuid
from typing import Any

import asyncpg

from marketplace.config import settings
from marketplace.errors import NotFound

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection VARCHAR(64) NOT NULL,
                id VARCHAR(255) NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW(),
                PRIMARY KEY (collection, id)
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_data
            ON documents USING GIN (data jsonb_path_ops);
        """)


def get_path(doc: dict, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _parent(doc: dict, path: str) -> tuple[dict, str]:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    return target, parts[-1]


def apply_updates(doc: dict, updates: dict, appends: dict | None = None) -> dict:
    """
    Return a copy of doc with dot-path updates merged in; untouched fields are kept.
    appends maps a dot-path to one item added to the end of the list stored there.
    """
    merged = copy.deepcopy(doc)
    for path, value in updates.items():
        target, key = _parent(merged, path)
        target[key] = copy.deepcopy(value)
    for path, item in (appends or {}).items():
        target, key = _parent(merged, path)
        if not isinstance(target.get(key), list):
            target[key] = []
        target[key].append(copy.deepcopy(item))
    return merged


def _containment(field: str, value: Any) -> dict:
    nested: Any = value
    for part in reversed(field.split(".")):
        nested = {part: nested}
    return nested


def _with_id(doc_id: str, data: dict) -> dict:
    return {"id": doc_id, **data}


def _strip_id(data: dict) -> dict:
    return {k: v for k, v in data.items() if k != "id"}


async def _update_locked(
    conn: asyncpg.Connection, collection: str, doc_id: str, fields: dict, appends: dict | None = None
) -> dict:
    row = await conn.fetchrow(
        "SELECT data FROM documents WHERE collection = $1 AND id = $2 FOR UPDATE;",
        collection,
        doc_id,
    )
    if row is None:
        raise NotFound(f"{collection}/{doc_id} not found")
    merged = apply_updates(json.loads(row["data"]), fields, appends)
    await conn.execute(
        "UPDATE documents SET data = $3::jsonb, updated_at = NOW() WHERE collection = $1 AND id = $2;",
        collection,
        doc_id,
        json.dumps(merged),
    )
    return _with_id(doc_id, merged)


async def _set(conn: asyncpg.Connection, collection: str, doc_id: str, data: dict) -> None:
    await conn.execute(
        """
        INSERT INTO documents (collection, id, data, updated_at)
        VALUES ($1, $2, $3::jsonb, NOW())
        ON CONFLICT (collection, id) DO UPDATE SET data = EXCLUDED.data, updated_at = NOW();
        """,
        collection,
        doc_id,
        json.dumps(_strip_id(data)),
    )


class WriteBatch:
    """Collects set/update/delete operations and commits them in one transaction on exit."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool
        self._ops: list[tuple[str, str, str, dict | None]] = []

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._ops.append(("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self._ops.append(("update", collection, doc_id, fields))

    def delete(self, collection: str, doc_id: str) -> None:
        self._ops.append(("delete", collection, doc_id, None))

    async def commit(self) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for op, collection, doc_id, data in self._ops:
                    if op == "set":
                        await _set(conn, collection, doc_id, data)
                    elif op == "update":
                        await _update_locked(conn, collection, doc_id, data)
                    else:
                        await conn.execute(
                            "DELETE FROM documents WHERE collection = $1 AND id = $2;",
                            collection,
                            doc_id,
                        )
        self._ops.clear()

    async def __aenter__(self) -> "WriteBatch":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()


class DocumentStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get(self, collection: str, doc_id: str) -> dict | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM documents WHERE collection = $1 AND id = $2;",
                collection,
                doc_id,
            )
        if row is None:
            return None
        return _with_id(doc_id, json.loads(row["data"]))

    async def add(self, collection: str, data: dict) -> str:
        doc_id = uuid.uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict) -> None:
        async with self._pool.acquire() as conn:
            await _set(conn, collection, doc_id, data)

    async def update(self, collection: str, doc_id: str, fields: dict, appends: dict | None = None) -> dict:
        """
        Merge dot-path fields into an existing document, and append to the lists named
        in appends, under one row lock. Raises NotFound if absent.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                return await _update_locked(conn, collection, doc_id, fields, appends)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM documents WHERE collection = $1 AND id = $2;",
                collection,
                doc_id,
            )

    async def query(self, collection: str, field: str | None = None, value: Any = None) -> list[dict]:
        """All documents in collection, or those where field == value (single equality predicate)."""
        async with self._pool.acquire() as conn:
            if field is None:
                rows = await conn.fetch(
                    "SELECT id, data FROM documents WHERE collection = $1;",
                    collection,
                )
            else:
                rows = await conn.fetch(
                    "SELECT id, data FROM documents WHERE collection = $1 AND data @> $2::jsonb;",
                    collection,
                    json.dumps(_containment(field, value)),
                )
        return [_with_id(r["id"], json.loads(r["data"])) for r in rows]

    def batch(self) -> WriteBatch:
        return WriteBatch(self._pool)
