"""Audit logger: SQLite-backed generation log holding counts, never PHI."""

import hashlib
import json
import os
from datetime import datetime, timezone

import aiosqlite

AUDIT_DB = os.environ.get("AUDIT_DB", "/data/audit/notegate.db")
SCHEMA_PATH = os.environ.get(
    "SCHEMA_PATH", os.path.join(os.path.dirname(__file__), "schema.sql")
)

_db: aiosqlite.Connection | None = None


async def init_db(db_path: str | None = None, schema_path: str | None = None) -> None:
    """Initialize the audit database, creating tables from schema.sql."""
    global _db
    path = db_path or AUDIT_DB
    schema = schema_path or SCHEMA_PATH
    _db = await aiosqlite.connect(path)
    _db.row_factory = aiosqlite.Row
    if os.path.exists(schema):
        with open(schema) as f:
            await _db.executescript(f.read())
    await _db.commit()


async def close_db() -> None:
    global _db
    if _db:
        await _db.close()
        _db = None


def _hash_params(params: dict) -> str:
    """SHA-256 hash of params; raw PHI never reaches the audit table."""
    return hashlib.sha256(json.dumps(params, sort_keys=True, default=str).encode()).hexdigest()


async def log_generation(
    tenant_id: str,
    action: str,
    outcome: str,
    user_id: str | None = None,
    params: dict | None = None,
    phi_categories: dict[str, int] | None = None,
    missing_tokens: int = 0,
    provider: str | None = None,
    model: str | None = None,
    latency_ms: int | None = None,
) -> int:
    """Insert a generation log entry. Returns the row id."""
    assert _db is not None, "audit db not initialized"
    now = datetime.now(timezone.utc).isoformat()
    params_hash = _hash_params(params) if params else None
    categories = phi_categories or {}
    cur = await _db.execute(
        """INSERT INTO generation_log
           (tenant_id, timestamp, user_id, action, outcome, params_hash,
            phi_categories, phi_tokens, missing_tokens, provider, model, latency_ms)
           VALUES (?,?,?,?,?,?,?,?,?,?,?,?)""",
        (
            tenant_id, now, user_id, action, outcome, params_hash,
            json.dumps(categories, sort_keys=True), sum(categories.values()),
            missing_tokens, provider, model, latency_ms,
        ),
    )
    await _db.commit()
    return cur.lastrowid


async def recent_generations(tenant_id: str, limit: int = 50) -> list[dict]:
    assert _db is not None, "audit db not initialized"
    async with _db.execute(
        """SELECT * FROM generation_log WHERE tenant_id=?
           ORDER BY id DESC LIMIT ?""",
        (tenant_id, limit),
    ) as cur:
        rows = await cur.fetchall()
    entries = []
    for row in rows:
        entry = dict(row)
        entry["phi_categories"] = json.loads(entry["phi_categories"] or "{}")
        entries.append(entry)
    return entries
