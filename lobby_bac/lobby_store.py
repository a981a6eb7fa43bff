"""SQLite-backed users, lobbies, drinks, BAC parameters and member BAC state."""

from __future__ import annotations

import logging
import secrets
import sqlite3
import string
from datetime import datetime, timedelta, timezone
from typing import Any

from werkzeug.security import check_password_hash, generate_password_hash

from lobby_bac.drinks import DrinkEvent, format_timestamp, parse_timestamp
from lobby_bac.params import FALLBACK_PARAMETERS, KineticParameters, Person, parameters_for_person
from lobby_bac.snapshot import Member

logger = logging.getLogger(__name__)

LOBBY_TTL_HOURS = 24
INVITE_CODE_LENGTH = 6
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits

BAC_COLUMN = "bac_estimate"
LEGACY_BAC_COLUMN = "bac_etimate"


class LobbyError(Exception):
    status = 400
    message = "Lobby request failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class LobbyNotFound(LobbyError):
    status = 404
    message = "Lobby not found."


class NotLobbyCreator(LobbyError):
    status = 403
    message = "Only the lobby creator can perform this action."


class LobbyClosed(LobbyError):
    status = 409
    message = "Lobby is closed. Drinks can no longer be added."


class InviteCodeNotFound(LobbyError):
    status = 404
    message = "No active lobby found for that invite code."


class DuplicateInviteCode(LobbyError):
    status = 409
    message = "Multiple lobbies share that invite code. Ask the host to create a new unique code."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def init_db(db_path: str) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                display_name TEXT NOT NULL,
                weight_lb REAL,
                age INTEGER,
                gender TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lobbies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                invite_code TEXT NOT NULL,
                created_by INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY(created_by) REFERENCES users(id)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_lobbies_invite_code ON lobbies(invite_code)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lobby_members (
                lobby_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                nickname TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'guest',
                PRIMARY KEY (lobby_id, user_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS drinks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                lobby_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                volume_ml REAL NOT NULL,
                abv REAL NOT NULL,
                consumed_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_drinks_lobby_time ON drinks(lobby_id, consumed_at)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lobby_member_bac_params (
                lobby_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                tbw REAL,
                elim_rate REAL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (lobby_id, user_id)
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS member_state (
                lobby_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                {BAC_COLUMN} REAL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (lobby_id, user_id)
            )
            """
        )
        conn.commit()


# Users / profiles


def _user_from_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "email": row["email"],
        "display_name": row["display_name"],
        "weight_lb": row["weight_lb"],
        "age": row["age"],
        "gender": row["gender"],
    }


def create_user(
    db_path: str,
    *,
    email: str,
    password: str,
    display_name: str,
    weight_lb: float | None = None,
    age: int | None = None,
    gender: str | None = None,
) -> dict[str, Any] | None:
    password_hash = generate_password_hash(password)
    try:
        with sqlite3.connect(db_path) as conn:
            cur = conn.execute(
                """
                INSERT INTO users (email, password_hash, display_name, weight_lb, age, gender)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (email.lower().strip(), password_hash, display_name.strip(), weight_lb, age, gender),
            )
            conn.commit()
            user_id = int(cur.lastrowid)
    except sqlite3.IntegrityError:
        return None
    return get_user_by_id(db_path, user_id)


def authenticate_user(db_path: str, *, email: str, password: str) -> dict[str, Any] | None:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT id, email, display_name, weight_lb, age, gender, password_hash FROM users WHERE email = ?",
            (email.lower().strip(),),
        ).fetchone()

    if row is None:
        return None
    try:
        ok = check_password_hash(row["password_hash"], password)
    except ValueError:
        return None
    if not ok:
        return None
    return _user_from_row(row)


def get_user_by_id(db_path: str, user_id: int) -> dict[str, Any] | None:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT id, email, display_name, weight_lb, age, gender FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
    if row is None:
        return None
    return _user_from_row(row)


def update_profile(
    db_path: str,
    *,
    user_id: int,
    weight_lb: float,
    age: int,
    gender: str,
) -> dict[str, Any] | None:
    """Profile edits only affect lobbies joined afterwards; existing params stay cached."""
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "UPDATE users SET weight_lb = ?, age = ?, gender = ? WHERE id = ?",
            (float(weight_lb), int(age), gender, user_id),
        )
        conn.commit()
    return get_user_by_id(db_path, user_id)


# Lobbies


def _new_invite_code(conn: sqlite3.Connection) -> str:
    while True:
        code = "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))
        taken = conn.execute(
            "SELECT 1 FROM lobbies WHERE invite_code = ? AND is_active = 1",
            (code,),
        ).fetchone()
        if taken is None:
            return code


def create_lobby(
    db_path: str,
    *,
    user_id: int,
    name: str,
    nickname: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    created_at = now or _now()
    with sqlite3.connect(db_path) as conn:
        invite_code = _new_invite_code(conn)
        cur = conn.execute(
            "INSERT INTO lobbies (name, invite_code, created_by, created_at, is_active) VALUES (?, ?, ?, ?, 1)",
            (name.strip(), invite_code, user_id, format_timestamp(created_at)),
        )
        lobby_id = int(cur.lastrowid)
        conn.commit()
    _add_member(db_path, lobby_id=lobby_id, user_id=user_id, nickname=nickname, role="host", now=created_at)
    return {"id": lobby_id, "name": name.strip(), "invite_code": invite_code}


def _add_member(
    db_path: str,
    *,
    lobby_id: int,
    user_id: int,
    nickname: str,
    role: str,
    now: datetime,
) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO lobby_members (lobby_id, user_id, nickname, role)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(lobby_id, user_id) DO UPDATE SET nickname = excluded.nickname
            """,
            (lobby_id, user_id, nickname.strip(), role),
        )
        conn.execute(
            """
            INSERT INTO member_state (lobby_id, user_id, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(lobby_id, user_id) DO NOTHING
            """,
            (lobby_id, user_id, format_timestamp(now)),
        )
        conn.commit()
    ensure_bac_params(db_path, lobby_id=lobby_id, user_id=user_id, now=now)


def join_lobby(
    db_path: str,
    *,
    user_id: int,
    invite_code: str,
    nickname: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT id, name FROM lobbies WHERE invite_code = ? AND is_active = 1 LIMIT 2",
            (invite_code.strip().upper(),),
        ).fetchall()

    if not rows:
        raise InviteCodeNotFound()
    if len(rows) > 1:
        raise DuplicateInviteCode()

    lobby_id = rows[0]["id"]
    _add_member(db_path, lobby_id=lobby_id, user_id=user_id, nickname=nickname, role="guest", now=now or _now())
    return {"id": lobby_id, "name": rows[0]["name"]}


def get_lobby_meta(db_path: str, *, lobby_id: int, now: datetime | None = None) -> dict[str, Any]:
    """Load lobby metadata, closing the lobby if it has been open for LOBBY_TTL_HOURS."""
    now = now or _now()
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT id, name, invite_code, created_by, created_at, is_active FROM lobbies WHERE id = ?",
            (lobby_id,),
        ).fetchone()
        if row is None:
            raise LobbyNotFound()

        created_at = parse_timestamp(row["created_at"])
        is_active = bool(row["is_active"])
        if is_active and created_at is not None and now - created_at >= timedelta(hours=LOBBY_TTL_HOURS):
            conn.execute("UPDATE lobbies SET is_active = 0 WHERE id = ?", (lobby_id,))
            conn.commit()
            is_active = False
            logger.info("Lobby %s expired after %sh and was closed", lobby_id, LOBBY_TTL_HOURS)

    return {
        "id": row["id"],
        "name": row["name"],
        "invite_code": row["invite_code"],
        "created_by": row["created_by"],
        "created_at": created_at,
        "is_active": is_active,
    }


def is_lobby_member(db_path: str, *, lobby_id: int, user_id: int) -> bool:
    with sqlite3.connect(db_path) as conn:
        row = conn.execute(
            "SELECT 1 FROM lobby_members WHERE lobby_id = ? AND user_id = ?",
            (lobby_id, user_id),
        ).fetchone()
    return row is not None


def list_user_lobbies(db_path: str, *, user_id: int) -> list[dict[str, Any]]:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            """
            SELECT l.id, l.name, l.is_active, m.role
            FROM lobby_members m
            JOIN lobbies l ON l.id = m.lobby_id
            WHERE m.user_id = ?
            ORDER BY l.id DESC
            """,
            (user_id,),
        ).fetchall()
    return [
        {"id": row["id"], "name": row["name"], "is_active": bool(row["is_active"]), "role": row["role"]}
        for row in rows
    ]


def _require_creator(conn: sqlite3.Connection, lobby_id: int, user_id: int) -> None:
    row = conn.execute("SELECT created_by FROM lobbies WHERE id = ?", (lobby_id,)).fetchone()
    if row is None:
        raise LobbyNotFound()
    if row[0] != user_id:
        raise NotLobbyCreator()


def close_lobby(db_path: str, *, lobby_id: int, user_id: int) -> None:
    with sqlite3.connect(db_path) as conn:
        _require_creator(conn, lobby_id, user_id)
        conn.execute("UPDATE lobbies SET is_active = 0 WHERE id = ?", (lobby_id,))
        conn.commit()


def leave_lobby(db_path: str, *, lobby_id: int, user_id: int) -> None:
    """Remove the member and every lobby-specific row they own."""
    with sqlite3.connect(db_path) as conn:
        if conn.execute("SELECT 1 FROM lobbies WHERE id = ?", (lobby_id,)).fetchone() is None:
            raise LobbyNotFound()
        for table in ("drinks", "member_state", "lobby_member_bac_params", "lobby_members"):
            conn.execute(f"DELETE FROM {table} WHERE lobby_id = ? AND user_id = ?", (lobby_id, user_id))
        conn.commit()


def delete_lobby(db_path: str, *, lobby_id: int, user_id: int) -> None:
    with sqlite3.connect(db_path) as conn:
        _require_creator(conn, lobby_id, user_id)
        for table in ("drinks", "member_state", "lobby_member_bac_params", "lobby_members"):
            conn.execute(f"DELETE FROM {table} WHERE lobby_id = ?", (lobby_id,))
        conn.execute("DELETE FROM lobbies WHERE id = ?", (lobby_id,))
        conn.commit()


def list_members(db_path: str, *, lobby_id: int) -> list[Member]:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT user_id, nickname FROM lobby_members WHERE lobby_id = ? ORDER BY rowid",
            (lobby_id,),
        ).fetchall()
    return [Member(user_id=row["user_id"], nickname=row["nickname"]) for row in rows]


# Drinks


def insert_drink(
    db_path: str,
    *,
    lobby_id: int,
    user_id: int,
    name: str,
    volume_ml: float,
    abv: float,
    now: datetime | None = None,
) -> DrinkEvent:
    now = now or _now()
    meta = get_lobby_meta(db_path, lobby_id=lobby_id, now=now)
    if not meta["is_active"]:
        raise LobbyClosed()

    drink = DrinkEvent(user_id=user_id, name=name.strip(), volume_ml=float(volume_ml), abv=float(abv), consumed_at=now)
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO drinks (lobby_id, user_id, name, volume_ml, abv, consumed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (lobby_id, user_id, drink.name, drink.volume_ml, drink.abv, format_timestamp(now)),
        )
        conn.commit()
    return drink


def _drinks_from_rows(rows) -> list[DrinkEvent]:
    out = []
    for row in rows:
        consumed_at = parse_timestamp(row["consumed_at"])
        if consumed_at is None:
            logger.warning("Skipping drink row with unparseable consumed_at %r", row["consumed_at"])
            continue
        out.append(
            DrinkEvent(
                user_id=row["user_id"],
                name=row["name"],
                volume_ml=row["volume_ml"],
                abv=row["abv"],
                consumed_at=consumed_at,
            )
        )
    return out


def list_drinks(db_path: str, *, lobby_id: int) -> list[DrinkEvent]:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            """
            SELECT user_id, name, volume_ml, abv, consumed_at
            FROM drinks
            WHERE lobby_id = ?
            ORDER BY consumed_at ASC, id ASC
            """,
            (lobby_id,),
        ).fetchall()
    return _drinks_from_rows(rows)


def list_drinks_after(db_path: str, *, lobby_id: int, after: datetime) -> list[DrinkEvent]:
    """Only drinks strictly newer than `after`, for cheap live updates."""
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            """
            SELECT user_id, name, volume_ml, abv, consumed_at
            FROM drinks
            WHERE lobby_id = ? AND consumed_at > ?
            ORDER BY consumed_at ASC, id ASC
            """,
            (lobby_id, format_timestamp(after)),
        ).fetchall()
    return _drinks_from_rows(rows)


# BAC parameters


def ensure_bac_params(
    db_path: str,
    *,
    lobby_id: int,
    user_id: int,
    now: datetime | None = None,
) -> KineticParameters:
    """Derive and cache parameters once per (user, lobby); later profile edits do not change them."""
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        existing = conn.execute(
            "SELECT tbw, elim_rate FROM lobby_member_bac_params WHERE lobby_id = ? AND user_id = ?",
            (lobby_id, user_id),
        ).fetchone()
    if existing is not None and existing["tbw"] is not None and existing["elim_rate"] is not None:
        return KineticParameters(tbw=existing["tbw"], elimination_rate=existing["elim_rate"])

    user = get_user_by_id(db_path, user_id)
    if user is None or user["weight_lb"] is None or user["age"] is None or user["gender"] is None:
        logger.info("No usable profile for user %s, storing fallback BAC parameters", user_id)
        derived = FALLBACK_PARAMETERS
    else:
        person = Person(user_id=user_id, weight=user["weight_lb"], age=user["age"], sex=user["gender"])
        derived = parameters_for_person(person)

    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO lobby_member_bac_params (lobby_id, user_id, tbw, elim_rate, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(lobby_id, user_id) DO UPDATE SET
                tbw = excluded.tbw,
                elim_rate = excluded.elim_rate,
                updated_at = excluded.updated_at
            """,
            (lobby_id, user_id, derived.tbw, derived.elimination_rate, format_timestamp(now or _now())),
        )
        conn.commit()
    return derived


def list_bac_params(db_path: str, *, lobby_id: int) -> dict[int, KineticParameters]:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT user_id, tbw, elim_rate FROM lobby_member_bac_params WHERE lobby_id = ?",
            (lobby_id,),
        ).fetchall()
    out: dict[int, KineticParameters] = {}
    for row in rows:
        if row["tbw"] is None or row["elim_rate"] is None:
            continue
        out[row["user_id"]] = KineticParameters(tbw=row["tbw"], elimination_rate=row["elim_rate"])
    return out


# Member BAC state


def _bac_column(conn: sqlite3.Connection, *, create: bool = True) -> str | None:
    cols = {row[1] for row in conn.execute("PRAGMA table_info(member_state)").fetchall()}
    if BAC_COLUMN in cols:
        return BAC_COLUMN
    if LEGACY_BAC_COLUMN in cols:
        logger.warning("member_state has no %s column, using legacy %s", BAC_COLUMN, LEGACY_BAC_COLUMN)
        return LEGACY_BAC_COLUMN
    if not create:
        return None
    conn.execute(f"ALTER TABLE member_state ADD COLUMN {BAC_COLUMN} REAL")
    return BAC_COLUMN


def upsert_member_bac(
    db_path: str,
    *,
    lobby_id: int,
    user_id: int,
    bac: float,
    timestamp: datetime,
) -> None:
    """Idempotent write keyed by (lobby_id, user_id); retries never add rows."""
    with sqlite3.connect(db_path) as conn:
        column = _bac_column(conn)
        conn.execute(
            f"""
            INSERT INTO member_state (lobby_id, user_id, {column}, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(lobby_id, user_id) DO UPDATE SET
                {column} = excluded.{column},
                updated_at = excluded.updated_at
            """,
            (lobby_id, user_id, float(bac), format_timestamp(timestamp)),
        )
        conn.commit()


def get_member_bac(db_path: str, *, lobby_id: int, user_id: int) -> dict[str, Any] | None:
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        column = _bac_column(conn, create=False)
        bac_expr = column if column is not None else "NULL"
        row = conn.execute(
            f"SELECT {bac_expr} AS bac, updated_at FROM member_state WHERE lobby_id = ? AND user_id = ?",
            (lobby_id, user_id),
        ).fetchone()
    if row is None:
        return None
    return {"bac": row["bac"], "updated_at": parse_timestamp(row["updated_at"])}


def load_lobby_analytics(db_path: str, *, lobby_id: int) -> dict[str, Any]:
    """Members, drinks and cached BAC parameters needed to build a lobby snapshot."""
    return {
        "members": list_members(db_path, lobby_id=lobby_id),
        "drinks": list_drinks(db_path, lobby_id=lobby_id),
        "params": list_bac_params(db_path, lobby_id=lobby_id),
    }
