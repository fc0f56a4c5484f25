"""
CheckOnMe SQLite record store

Tables
------
records(pk, sk, status, gsi1pk, gsi1sk, json, updated_at)   PRIMARY KEY (pk, sk)
    escalation_index ON records(gsi1pk, gsi1sk)
trigger_map(checkin_key TEXT PK, trigger_id, fire_at_utc, updated_at)
deliveries(checkin_key, target, channel, address, status, attempts, provider_id, last_error, updated_at)
devices(user_id, device_token, created_at)

Keys follow the single-table convention:
    pk = "user:{user_id}"   sk = "checkin:{id}" | "contact:{id}"
    gsi1pk = record status  gsi1sk = ISO UTC instant escalation becomes due

Key helpers
-----------
get_item(pk, sk) -> dict | None
put_item(item, *, expect_status=None, if_absent=False) -> bool
query_by_prefix(pk, sk_prefix) -> list[dict]
query_by_index(index_name, status, before_iso) -> list[dict]
delete_item(pk, sk, *, expect_status=None) -> bool

save_trigger / get_trigger / delete_trigger / list_triggers / clear_triggers
record_delivery / confirm_delivery / list_deliveries / list_retryable_deliveries
register_device / list_device_tokens

Every sqlite3.Error surfaces as errors.StoreUnavailable.
"""

from __future__ import annotations

import os
import json
import logging
import sqlite3
import datetime as dt
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from config import DB_PATH
from errors import StoreUnavailable

log = logging.getLogger(__name__)

DB_FILE = DB_PATH
ESCALATION_INDEX = "escalation_index"


def user_pk(user_id: str) -> str:
    return f"user:{user_id}"


def checkin_sk(checkin_id: str) -> str:
    return f"checkin:{checkin_id}"


def contact_sk(contact_id: str) -> str:
    return f"contact:{contact_id}"


def checkin_key(user_id: str, checkin_id: str) -> str:
    """Flat key used by the auxiliary tables."""
    return f"{user_pk(user_id)}|{checkin_sk(checkin_id)}"


def get_db() -> sqlite3.Connection:
    db_dir = os.path.dirname(DB_FILE)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    con = sqlite3.connect(DB_FILE, check_same_thread=False, timeout=5.0)
    con.row_factory = sqlite3.Row
    return con


@contextmanager
def _tx() -> Iterator[sqlite3.Connection]:
    try:
        con = get_db()
    except sqlite3.Error as e:
        raise StoreUnavailable(str(e), cause=e) from e
    try:
        with con:
            yield con
    except sqlite3.Error as e:
        log.warning("record store error: %s", e)
        raise StoreUnavailable(str(e), cause=e) from e
    finally:
        con.close()


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def init_db() -> None:
    """Create all required tables if they don't exist."""
    with _tx() as c:
        c.executescript(
            """
            CREATE TABLE IF NOT EXISTS records(
                pk TEXT NOT NULL,
                sk TEXT NOT NULL,
                status TEXT,
                gsi1pk TEXT,
                gsi1sk TEXT,
                json TEXT NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (pk, sk)
            );

            CREATE INDEX IF NOT EXISTS escalation_index ON records(gsi1pk, gsi1sk);

            -- Which platform trigger belongs to which check-in, so re-arming
            -- touches only the affected trigger.
            CREATE TABLE IF NOT EXISTS trigger_map(
                checkin_key TEXT PRIMARY KEY,
                trigger_id TEXT NOT NULL,
                fire_at_utc TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS deliveries(
                checkin_key TEXT NOT NULL,
                target TEXT NOT NULL,
                channel TEXT NOT NULL,
                address TEXT,
                status TEXT,
                attempts INTEGER DEFAULT 0,
                provider_id TEXT,
                last_error TEXT,
                updated_at TEXT,
                PRIMARY KEY (checkin_key, target, channel)
            );

            CREATE TABLE IF NOT EXISTS devices(
                user_id TEXT NOT NULL,
                device_token TEXT NOT NULL,
                created_at TEXT,
                PRIMARY KEY (user_id, device_token)
            );
            """
        )


# -------------------- records --------------------

def _row_to_item(row: sqlite3.Row) -> Dict[str, Any]:
    item = json.loads(row["json"])
    item["pk"] = row["pk"]
    item["sk"] = row["sk"]
    item["gsi1pk"] = row["gsi1pk"]
    item["gsi1sk"] = row["gsi1sk"]
    return item


def get_item(pk: str, sk: str) -> Optional[Dict[str, Any]]:
    with _tx() as c:
        row = c.execute("SELECT * FROM records WHERE pk=? AND sk=?", (pk, sk)).fetchone()
        return _row_to_item(row) if row else None


def put_item(
    item: Dict[str, Any],
    *,
    expect_status: Optional[Sequence[str]] = None,
    if_absent: bool = False,
) -> bool:
    """
    Write one record. Returns False when a condition was not met:
      - expect_status: stored status must be one of these (compare-and-set)
      - if_absent: no record may exist under (pk, sk) yet
    """
    pk = str(item.get("pk") or "")
    sk = str(item.get("sk") or "")
    if not pk or not sk:
        raise ValueError("item needs pk and sk")
    body = {k: v for k, v in item.items() if k not in ("pk", "sk", "gsi1pk", "gsi1sk")}
    payload = json.dumps(body)
    status = item.get("status")
    gsi1pk = item.get("gsi1pk")
    gsi1sk = item.get("gsi1sk")
    now = _now_iso()

    with _tx() as c:
        if expect_status is not None:
            expected = list(expect_status)
            marks = ",".join("?" for _ in expected)
            cur = c.execute(
                f"UPDATE records SET status=?, gsi1pk=?, gsi1sk=?, json=?, updated_at=? "
                f"WHERE pk=? AND sk=? AND status IN ({marks})",
                (status, gsi1pk, gsi1sk, payload, now, pk, sk, *expected),
            )
            return cur.rowcount == 1
        if if_absent:
            cur = c.execute(
                "INSERT INTO records(pk, sk, status, gsi1pk, gsi1sk, json, updated_at) "
                "VALUES(?,?,?,?,?,?,?) ON CONFLICT(pk, sk) DO NOTHING",
                (pk, sk, status, gsi1pk, gsi1sk, payload, now),
            )
            return cur.rowcount == 1
        c.execute(
            "INSERT INTO records(pk, sk, status, gsi1pk, gsi1sk, json, updated_at) "
            "VALUES(?,?,?,?,?,?,?) "
            "ON CONFLICT(pk, sk) DO UPDATE SET status=excluded.status, gsi1pk=excluded.gsi1pk, "
            "gsi1sk=excluded.gsi1sk, json=excluded.json, updated_at=excluded.updated_at",
            (pk, sk, status, gsi1pk, gsi1sk, payload, now),
        )
        return True


def query_by_prefix(pk: str, sk_prefix: str) -> List[Dict[str, Any]]:
    with _tx() as c:
        rows = c.execute(
            "SELECT * FROM records WHERE pk=? AND substr(sk, 1, ?)=? ORDER BY sk",
            (pk, len(sk_prefix), sk_prefix),
        ).fetchall()
        return [_row_to_item(r) for r in rows]


def query_by_index(index_name: str, status: str, before_iso: str) -> List[Dict[str, Any]]:
    """Records whose gsi1pk == status and gsi1sk < before_iso, oldest due first."""
    if index_name != ESCALATION_INDEX:
        raise ValueError(f"unknown index: {index_name}")
    with _tx() as c:
        rows = c.execute(
            "SELECT * FROM records INDEXED BY escalation_index "
            "WHERE gsi1pk=? AND gsi1sk < ? ORDER BY gsi1sk",
            (status, before_iso),
        ).fetchall()
        return [_row_to_item(r) for r in rows]


def delete_item(pk: str, sk: str, *, expect_status: Optional[Sequence[str]] = None) -> bool:
    """Remove one record. With expect_status the stored status must still be one of these."""
    with _tx() as c:
        if expect_status is not None:
            expected = list(expect_status)
            marks = ",".join("?" for _ in expected)
            cur = c.execute(
                f"DELETE FROM records WHERE pk=? AND sk=? AND status IN ({marks})",
                (pk, sk, *expected),
            )
            return cur.rowcount == 1
        cur = c.execute("DELETE FROM records WHERE pk=? AND sk=?", (pk, sk))
        return cur.rowcount == 1


# -------------------- trigger map --------------------

def save_trigger(checkin_key: str, trigger_id: str, fire_at_utc: str) -> None:
    with _tx() as c:
        c.execute(
            "INSERT INTO trigger_map(checkin_key, trigger_id, fire_at_utc, updated_at) VALUES(?,?,?,?) "
            "ON CONFLICT(checkin_key) DO UPDATE SET trigger_id=excluded.trigger_id, "
            "fire_at_utc=excluded.fire_at_utc, updated_at=excluded.updated_at",
            (checkin_key, trigger_id, fire_at_utc, _now_iso()),
        )


def get_trigger(checkin_key: str) -> Optional[Dict[str, Any]]:
    with _tx() as c:
        row = c.execute("SELECT * FROM trigger_map WHERE checkin_key=?", (checkin_key,)).fetchone()
        return dict(row) if row else None


def delete_trigger(checkin_key: str) -> None:
    with _tx() as c:
        c.execute("DELETE FROM trigger_map WHERE checkin_key=?", (checkin_key,))


def list_triggers() -> List[Dict[str, Any]]:
    with _tx() as c:
        rows = c.execute("SELECT * FROM trigger_map ORDER BY fire_at_utc").fetchall()
        return [dict(r) for r in rows]


def clear_triggers() -> None:
    with _tx() as c:
        c.execute("DELETE FROM trigger_map")


# -------------------- deliveries --------------------

def record_delivery(
    checkin_key: str,
    target: str,
    channel: str,
    address: str,
    status: str,
    *,
    provider_id: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Upsert one target/channel outcome and bump its attempt counter."""
    with _tx() as c:
        c.execute(
            "INSERT INTO deliveries(checkin_key, target, channel, address, status, attempts, provider_id, last_error, updated_at) "
            "VALUES(?,?,?,?,?,1,?,?,?) "
            "ON CONFLICT(checkin_key, target, channel) DO UPDATE SET address=excluded.address, "
            "status=excluded.status, attempts=deliveries.attempts + 1, provider_id=excluded.provider_id, "
            "last_error=excluded.last_error, updated_at=excluded.updated_at",
            (checkin_key, target, channel, address, status, provider_id, error, _now_iso()),
        )


def confirm_delivery(checkin_key: str, target: str, channel: str) -> bool:
    """Recipient acknowledged receipt (e.g. pressed 1 on the alert call)."""
    with _tx() as c:
        cur = c.execute(
            "UPDATE deliveries SET status='confirmed', updated_at=? "
            "WHERE checkin_key=? AND target=? AND channel=?",
            (_now_iso(), checkin_key, target, channel),
        )
        return cur.rowcount == 1


def list_deliveries(checkin_key: str) -> List[Dict[str, Any]]:
    with _tx() as c:
        rows = c.execute(
            "SELECT * FROM deliveries WHERE checkin_key=? ORDER BY target, channel", (checkin_key,)
        ).fetchall()
        return [dict(r) for r in rows]


def list_retryable_deliveries(max_attempts: int) -> List[Dict[str, Any]]:
    with _tx() as c:
        rows = c.execute(
            "SELECT * FROM deliveries WHERE status='failed' AND attempts < ? ORDER BY updated_at",
            (max_attempts,),
        ).fetchall()
        return [dict(r) for r in rows]


# -------------------- devices --------------------

def register_device(user_id: str, device_token: str) -> None:
    with _tx() as c:
        c.execute(
            "INSERT INTO devices(user_id, device_token, created_at) VALUES(?,?,?) "
            "ON CONFLICT(user_id, device_token) DO NOTHING",
            (user_id, device_token, _now_iso()),
        )


def list_device_tokens(user_id: str) -> List[str]:
    with _tx() as c:
        rows = c.execute("SELECT device_token FROM devices WHERE user_id=?", (user_id,)).fetchall()
        return [r["device_token"] for r in rows]
