import sqlite3, time
from contextlib import contextmanager
from typing import List, Optional, Iterator
from core.state import AppState
from core.util_norm import normalize_expansion, normalize_card_number, blank_to_none

def conn(path: str) -> sqlite3.Connection:
    c = sqlite3.connect(path, timeout=5.0)
    c.execute("PRAGMA foreign_keys = ON;")
    return c

@contextmanager
def db_tx(state: AppState) -> Iterator[sqlite3.Connection]:
    """
    One write transaction taken with BEGIN IMMEDIATE, so the read-check-write
    inside it cannot interleave with another writer on the same file.
    Commits on normal exit, rolls back on any exception.
    """
    c = conn(state.db_path)
    try:
        c.execute("BEGIN IMMEDIATE")
        yield c
        c.commit()
    except BaseException:
        c.rollback()
        raise
    finally:
        c.close()

def _query_all(c: sqlite3.Connection, sql: str, params=()) -> List[dict]:
    cur = c.execute(sql, params)
    cols = [d[0] for d in cur.description] if cur.description else []
    return [dict(zip(cols, row)) for row in cur.fetchall()]

def _query_one(c: sqlite3.Connection, sql: str, params=()) -> Optional[dict]:
    cur = c.execute(sql, params)
    cols = [d[0] for d in cur.description] if cur.description else []
    row = cur.fetchone()
    return dict(zip(cols, row)) if row else None

def db_init(state: AppState):
    with sqlite3.connect(state.db_path) as c, c:
        c.execute("""
        CREATE TABLE IF NOT EXISTS users (
            user_id    TEXT NOT NULL PRIMARY KEY,
            username   TEXT,
            in_trade   INTEGER NOT NULL DEFAULT 0,
            lock_ts    INTEGER,
            created_ts INTEGER NOT NULL DEFAULT (strftime('%s','now'))
        );
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS expansions (
            name        TEXT NOT NULL PRIMARY KEY,
            total_cards INTEGER NOT NULL
        );
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS missing_cards (
            user_id     TEXT NOT NULL,
            expansion   TEXT NOT NULL,
            card_number TEXT NOT NULL,
            added_ts    INTEGER NOT NULL DEFAULT (strftime('%s','now')),
            PRIMARY KEY (user_id, expansion, card_number)
        );
        """)

# --- Trades: table + migration ---
def db_init_trades(state: AppState):
    with sqlite3.connect(state.db_path) as c, c:
        c.execute("""
        CREATE TABLE IF NOT EXISTS trades (
            trade_id         INTEGER PRIMARY KEY AUTOINCREMENT,
            proposer_id      TEXT NOT NULL,
            acceptor_id      TEXT,
            req_expansion    TEXT NOT NULL,
            req_card         TEXT NOT NULL,
            off_expansion    TEXT,
            off_card         TEXT,
            status           TEXT NOT NULL,
            confirm_proposer INTEGER NOT NULL DEFAULT 0,
            confirm_acceptor INTEGER NOT NULL DEFAULT 0,
            created_ts       INTEGER NOT NULL,
            updated_ts       INTEGER NOT NULL,
            cancelled_by     TEXT,
            cancel_reason    TEXT,
            public_handle    TEXT,
            prop_handle      TEXT,
            acc_handle       TEXT
        );
        """)
        for col, ddl in [
            ("cancelled_by",  "ALTER TABLE trades ADD COLUMN cancelled_by TEXT"),
            ("cancel_reason", "ALTER TABLE trades ADD COLUMN cancel_reason TEXT"),
            ("public_handle", "ALTER TABLE trades ADD COLUMN public_handle TEXT"),
        ]:
            try:
                c.execute(f"SELECT {col} FROM trades LIMIT 1")
            except sqlite3.OperationalError:
                c.execute(ddl)
        c.execute("CREATE INDEX IF NOT EXISTS idx_trades_open ON trades (status, proposer_id);")

# ---- Users ------------------------------------------------------------------

def _user_ensure_with_conn(c: sqlite3.Connection, user_id, username: str | None = None):
    c.execute("""
        INSERT INTO users (user_id, username) VALUES (?, ?)
        ON CONFLICT(user_id) DO UPDATE SET username = COALESCE(excluded.username, users.username);
    """, (str(user_id), username))

def db_user_ensure(state: AppState, user_id, username: str | None = None):
    with sqlite3.connect(state.db_path) as c, c:
        _user_ensure_with_conn(c, user_id, username)

def db_user_get(state: AppState, user_id) -> dict | None:
    with sqlite3.connect(state.db_path) as c:
        row = _query_one(c, "SELECT user_id, username, in_trade, lock_ts FROM users WHERE user_id=?", (str(user_id),))
    if row:
        row["in_trade"] = int(row["in_trade"]) == 1
    return row

# ---- Trade-lock registry -----------------------------------------------------
# The in_trade flag is flipped with a conditional UPDATE, never read-then-write.

def _lock_try_acquire_with_conn(c: sqlite3.Connection, user_id) -> bool:
    _user_ensure_with_conn(c, user_id)
    cur = c.execute(
        "UPDATE users SET in_trade=1, lock_ts=? WHERE user_id=? AND in_trade=0",
        (int(time.time()), str(user_id)),
    )
    return cur.rowcount == 1

def _lock_release_with_conn(c: sqlite3.Connection, user_id):
    if user_id is None:
        return
    c.execute("UPDATE users SET in_trade=0, lock_ts=NULL WHERE user_id=?", (str(user_id),))

def db_lock_try_acquire(state: AppState, user_id) -> bool:
    with db_tx(state) as c:
        return _lock_try_acquire_with_conn(c, user_id)

def db_lock_release(state: AppState, user_id):
    with db_tx(state) as c:
        _lock_release_with_conn(c, user_id)

def db_user_in_trade(state: AppState, user_id) -> bool:
    with sqlite3.connect(state.db_path) as c:
        row = c.execute("SELECT in_trade FROM users WHERE user_id=?", (str(user_id),)).fetchone()
    return bool(row and int(row[0]) == 1)

def db_locked_users(state: AppState) -> List[str]:
    with sqlite3.connect(state.db_path) as c:
        rows = c.execute("SELECT user_id FROM users WHERE in_trade=1 ORDER BY user_id").fetchall()
    return [r[0] for r in rows]

# ---- Expansions --------------------------------------------------------------

def db_expansion_upsert(state: AppState, name: str, total_cards: int) -> dict:
    name = normalize_expansion(name)
    with sqlite3.connect(state.db_path) as c, c:
        c.execute("""
            INSERT INTO expansions (name, total_cards) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET total_cards = excluded.total_cards;
        """, (name, int(total_cards)))
    return {"name": name, "total_cards": int(total_cards)}

def db_expansion_get(state: AppState, name: str) -> dict | None:
    with sqlite3.connect(state.db_path) as c:
        return _query_one(c, "SELECT name, total_cards FROM expansions WHERE name=?", (normalize_expansion(name),))

def db_expansion_list(state: AppState) -> List[dict]:
    with sqlite3.connect(state.db_path) as c:
        return _query_all(c, "SELECT name, total_cards FROM expansions ORDER BY name COLLATE NOCASE")

# ---- Card ledger (missing entries) ------------------------------------------
# Presence of a row = the user lacks the card. Absence = presumed owned.

def _is_missing_with_conn(c: sqlite3.Connection, user_id, expansion: str, card_number: str) -> bool:
    row = c.execute(
        "SELECT 1 FROM missing_cards WHERE user_id=? AND expansion=? AND card_number=?",
        (str(user_id), expansion, card_number),
    ).fetchone()
    return row is not None

def _remove_missing_with_conn(c: sqlite3.Connection, user_id, expansion: str, card_number: str) -> int:
    cur = c.execute(
        "DELETE FROM missing_cards WHERE user_id=? AND expansion=? AND card_number=?",
        (str(user_id), expansion, card_number),
    )
    return cur.rowcount

def db_missing_add(state: AppState, user_id, expansion: str, card_number: str) -> bool:
    """Record a missing card. Returns False if it was already recorded."""
    expansion = normalize_expansion(expansion)
    card_number = normalize_card_number(card_number)
    with sqlite3.connect(state.db_path) as c, c:
        _user_ensure_with_conn(c, user_id)
        cur = c.execute("""
            INSERT INTO missing_cards (user_id, expansion, card_number, added_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, expansion, card_number) DO NOTHING;
        """, (str(user_id), expansion, card_number, int(time.time())))
        return cur.rowcount > 0

def db_missing_remove(state: AppState, user_id, expansion: str, card_number: str) -> bool:
    with sqlite3.connect(state.db_path) as c, c:
        n = _remove_missing_with_conn(c, user_id, normalize_expansion(expansion), normalize_card_number(card_number))
    return n > 0

def db_is_missing(state: AppState, user_id, expansion: str, card_number: str) -> bool:
    with sqlite3.connect(state.db_path) as c:
        return _is_missing_with_conn(c, user_id, normalize_expansion(expansion), normalize_card_number(card_number))

def db_missing_list(state: AppState, user_id, expansion: str | None = None) -> List[dict]:
    sql = "SELECT expansion, card_number FROM missing_cards WHERE user_id=?"
    params: list = [str(user_id)]
    if expansion:
        sql += " AND expansion=?"
        params.append(normalize_expansion(expansion))
    # numeric card numbers sort by value, "007" before "010"
    sql += " ORDER BY expansion COLLATE NOCASE, CAST(card_number AS INTEGER), card_number"
    with sqlite3.connect(state.db_path) as c:
        return _query_all(c, sql, params)

# ---- Trade records -----------------------------------------------------------

_TRADE_COLS = """
    trade_id, proposer_id, acceptor_id, req_expansion, req_card, off_expansion, off_card,
    status, confirm_proposer, confirm_acceptor, created_ts, updated_ts,
    cancelled_by, cancel_reason, public_handle, prop_handle, acc_handle
"""

def _trade_get_with_conn(c: sqlite3.Connection, trade_id: int) -> dict | None:
    return _query_one(c, f"SELECT {_TRADE_COLS} FROM trades WHERE trade_id=?", (int(trade_id),))

def _trade_insert_with_conn(c: sqlite3.Connection, proposer_id, expansion: str, card_number: str) -> int:
    now = int(time.time())
    cur = c.execute("""
        INSERT INTO trades (proposer_id, req_expansion, req_card, status, created_ts, updated_ts,
                            confirm_proposer, confirm_acceptor)
        VALUES (?, ?, ?, 'pending', ?, ?, 0, 0)
    """, (str(proposer_id), expansion, card_number, now, now))
    return cur.lastrowid

def _trade_pending_for_proposer_with_conn(c: sqlite3.Connection, proposer_id) -> dict | None:
    return _query_one(c, f"""
        SELECT {_TRADE_COLS} FROM trades
         WHERE proposer_id=? AND status='pending'
         ORDER BY trade_id DESC LIMIT 1
    """, (str(proposer_id),))

def _trade_set_match_with_conn(c: sqlite3.Connection, trade_id: int, acceptor_id, expansion: str, card_number: str) -> bool:
    cur = c.execute("""
        UPDATE trades
           SET acceptor_id=?, off_expansion=?, off_card=?, status='active',
               confirm_proposer=0, confirm_acceptor=0, updated_ts=?
         WHERE trade_id=? AND status='pending'
    """, (str(acceptor_id), expansion, card_number, int(time.time()), int(trade_id)))
    return cur.rowcount == 1

def _trade_set_confirm_with_conn(c: sqlite3.Connection, trade_id: int, column: str) -> bool:
    """Set one party's confirm flag. Returns False if it was already set."""
    if column not in ("confirm_proposer", "confirm_acceptor"):
        raise ValueError(f"unknown confirm column {column!r}")
    cur = c.execute(
        f"UPDATE trades SET {column}=1, updated_ts=? WHERE trade_id=? AND status='active' AND {column}=0",
        (int(time.time()), int(trade_id)),
    )
    return cur.rowcount == 1

def _trade_set_status_with_conn(c: sqlite3.Connection, trade_id: int, status: str, *,
                                cancelled_by=None, cancel_reason: str | None = None) -> bool:
    cur = c.execute("""
        UPDATE trades
           SET status=?, updated_ts=?,
               cancelled_by=COALESCE(?, cancelled_by),
               cancel_reason=COALESCE(?, cancel_reason)
         WHERE trade_id=? AND status IN ('pending','active')
    """, (status, int(time.time()), None if cancelled_by is None else str(cancelled_by),
          cancel_reason, int(trade_id)))
    return cur.rowcount == 1

def _trade_list_stale_with_conn(c: sqlite3.Connection, cutoff_ts: int) -> List[dict]:
    return _query_all(c, f"""
        SELECT {_TRADE_COLS} FROM trades
         WHERE status IN ('pending','active') AND updated_ts < ?
         ORDER BY trade_id
    """, (int(cutoff_ts),))

def db_trade_get(state: AppState, trade_id: int) -> dict | None:
    with sqlite3.connect(state.db_path) as c:
        return _trade_get_with_conn(c, trade_id)

def db_trade_get_open_for_user(state: AppState, user_id) -> dict | None:
    with sqlite3.connect(state.db_path) as c:
        return _query_one(c, f"""
            SELECT {_TRADE_COLS} FROM trades
             WHERE status IN ('pending','active')
               AND (proposer_id=? OR acceptor_id=?)
             ORDER BY trade_id DESC
             LIMIT 1
        """, (str(user_id), str(user_id)))

def db_trade_list_open(state: AppState) -> List[dict]:
    with sqlite3.connect(state.db_path) as c:
        return _query_all(c, f"""
            SELECT {_TRADE_COLS} FROM trades
             WHERE status IN ('pending','active') ORDER BY trade_id
        """)

def db_trade_store_handles(state: AppState, trade_id: int, *, public: str | None = None,
                           proposer: str | None = None, acceptor: str | None = None):
    """Store notification handles; None leaves the existing value in place."""
    with sqlite3.connect(state.db_path) as c, c:
        c.execute("""
            UPDATE trades
               SET public_handle=COALESCE(?, public_handle),
                   prop_handle=COALESCE(?, prop_handle),
                   acc_handle=COALESCE(?, acc_handle)
             WHERE trade_id=?
        """, (blank_to_none(public), blank_to_none(proposer), blank_to_none(acceptor), int(trade_id)))
