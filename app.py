"""Lobby BAC Flask app.

Run from project root:
    python app.py
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request, session as flask_session

from lobby_bac.calculations import DEFAULT_STEP_MINUTES, step_delta
from lobby_bac.drinks import DRINK_PRESETS, format_timestamp, list_drink_presets, parse_timestamp
from lobby_bac.graph import chart_series
from lobby_bac.lobby_store import (
    LobbyError,
    authenticate_user,
    close_lobby,
    create_lobby,
    create_user,
    delete_lobby,
    get_lobby_meta,
    get_user_by_id,
    init_db,
    insert_drink,
    is_lobby_member,
    join_lobby,
    leave_lobby,
    list_drinks,
    list_drinks_after,
    list_user_lobbies,
    load_lobby_analytics,
    update_profile,
    upsert_member_bac,
)
from lobby_bac.snapshot import build_snapshot, group_drinks_by_member
from lobby_bac.sync import SyncState

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("APP_SECRET_KEY", "dev-only-change-me")
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SECURE"] = os.environ.get("SESSION_COOKIE_SECURE", "0") == "1"
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)

MIN_WEIGHT_LB = 80.0
MAX_WEIGHT_LB = 400.0
MIN_AGE = 18
MAX_AGE = 120
MIN_VOLUME_ML = 10.0
MAX_VOLUME_ML = 2000.0
MAX_ABV = 100.0
AUTH_USER_KEY = "auth_user_id"
SYNC_STATE_KEY = "bac_sync"

DEFAULT_DB_PATH = str(Path("instance") / "app.db")


def _db_path() -> str:
    return os.environ.get("APP_DB_PATH", DEFAULT_DB_PATH)


def _step_minutes() -> float:
    try:
        step = float(os.environ.get("BAC_STEP_MINUTES", DEFAULT_STEP_MINUTES))
        step_delta(step)
    except ValueError:
        app.logger.warning("Ignoring unusable BAC_STEP_MINUTES=%r", os.environ.get("BAC_STEP_MINUTES"))
        return DEFAULT_STEP_MINUTES
    return step


def _ensure_db() -> None:
    db_path = Path(_db_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    init_db(str(db_path))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "y"}:
            return True
        if lowered in {"false", "0", "no", "n"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def _clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    return max(min_value, min(max_value, parsed))


def _require_user_id() -> int | None:
    user_id = flask_session.get(AUTH_USER_KEY)
    return user_id if isinstance(user_id, int) else None


def _get_current_user() -> dict[str, Any] | None:
    user_id = _require_user_id()
    if user_id is None:
        return None
    _ensure_db()
    return get_user_by_id(_db_path(), user_id)


def _auth_required_error():
    return jsonify({"error": "Authentication required"}), 401


def _lobby_error(exc: LobbyError):
    return jsonify({"error": str(exc)}), exc.status


def _public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {k: user[k] for k in ("id", "email", "display_name", "weight_lb", "age", "gender")}


def _parse_profile(data: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    """Validate weight/age/gender from a request body. Returns (profile, error)."""
    gender = str(data.get("gender", "")).strip().lower()
    if not gender:
        return None, "Gender is required"
    try:
        weight_lb = float(data.get("weight_lb"))
    except (TypeError, ValueError):
        return None, "Weight is required"
    try:
        age = int(data.get("age"))
    except (TypeError, ValueError):
        return None, "Age is required"
    if weight_lb < MIN_WEIGHT_LB or weight_lb > MAX_WEIGHT_LB:
        return None, "Weight must be between 80 and 400 lb"
    if age < MIN_AGE or age > MAX_AGE:
        return None, "Age must be between 18 and 120"
    return {"weight_lb": weight_lb, "age": age, "gender": gender[:40]}, None


def _sync_key(lobby_id: int, user_id: int) -> str:
    return f"{lobby_id}:{user_id}"


def _get_sync_state(lobby_id: int, user_id: int) -> SyncState:
    states = flask_session.get(SYNC_STATE_KEY) or {}
    return SyncState.from_dict(states.get(_sync_key(lobby_id, user_id)))


def _set_sync_state(lobby_id: int, user_id: int, state: SyncState) -> None:
    states = dict(flask_session.get(SYNC_STATE_KEY) or {})
    states[_sync_key(lobby_id, user_id)] = state.to_dict()
    flask_session[SYNC_STATE_KEY] = states


def _mark_force_sync(lobby_id: int, user_id: int) -> None:
    # Forget the last sync so the next state poll writes immediately.
    _set_sync_state(lobby_id, user_id, SyncState())


def _member_lobby_guard(lobby_id: int):
    user_id = _require_user_id()
    if user_id is None:
        return None, _auth_required_error()
    _ensure_db()
    if not is_lobby_member(_db_path(), lobby_id=lobby_id, user_id=user_id):
        return None, (jsonify({"error": "Not a lobby member"}), 403)
    return user_id, None


@app.route("/healthz")
def healthz():
    return jsonify({"ok": True})


@app.route("/api/auth/me")
def api_auth_me():
    user = _get_current_user()
    if user is None:
        return jsonify({"authenticated": False, "user": None})
    return jsonify({"authenticated": True, "user": _public_user(user)})


@app.route("/api/auth/register", methods=["POST"])
def api_auth_register():
    _ensure_db()
    data = request.get_json() or {}
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", "")).strip()
    display_name = str(data.get("display_name", "")).strip() or email.split("@")[0]

    if "@" not in email or len(email) < 5:
        return jsonify({"error": "Valid email is required"}), 400
    if len(password) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400
    if len(display_name) > 40:
        return jsonify({"error": "Display name must be 40 characters or fewer"}), 400
    profile, error = _parse_profile(data)
    if error:
        return jsonify({"error": error}), 400

    user = create_user(_db_path(), email=email, password=password, display_name=display_name, **profile)
    if user is None:
        return jsonify({"error": "Email already registered"}), 409

    flask_session.permanent = True
    flask_session[AUTH_USER_KEY] = user["id"]
    return jsonify({"ok": True, "user": _public_user(user)})


@app.route("/api/auth/login", methods=["POST"])
def api_auth_login():
    _ensure_db()
    data = request.get_json() or {}
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", "")).strip()

    user = authenticate_user(_db_path(), email=email, password=password)
    if user is None:
        return jsonify({"error": "Invalid credentials"}), 401

    flask_session.permanent = True
    flask_session[AUTH_USER_KEY] = user["id"]
    return jsonify({"ok": True, "user": _public_user(user)})


@app.route("/api/auth/logout", methods=["POST"])
def api_auth_logout():
    flask_session.pop(AUTH_USER_KEY, None)
    flask_session.pop(SYNC_STATE_KEY, None)
    return jsonify({"ok": True})


@app.route("/api/profile", methods=["POST"])
def api_profile():
    user_id = _require_user_id()
    if user_id is None:
        return _auth_required_error()
    profile, error = _parse_profile(request.get_json() or {})
    if error:
        return jsonify({"error": error}), 400
    _ensure_db()
    user = update_profile(_db_path(), user_id=user_id, **profile)
    if user is None:
        return _auth_required_error()
    return jsonify({"ok": True, "user": _public_user(user)})


@app.route("/api/drink-types")
def api_drink_types():
    return jsonify({"drink_types": list_drink_presets()})


@app.route("/api/lobbies")
def api_lobbies():
    user_id = _require_user_id()
    if user_id is None:
        return _auth_required_error()
    _ensure_db()
    return jsonify({"items": list_user_lobbies(_db_path(), user_id=user_id)})


@app.route("/api/lobbies", methods=["POST"])
def api_lobby_create():
    user = _get_current_user()
    if user is None:
        return _auth_required_error()
    data = request.get_json() or {}
    name = str(data.get("name", "")).strip()
    if len(name) < 3:
        return jsonify({"error": "Lobby name must be at least 3 characters"}), 400
    nickname = str(data.get("nickname", "")).strip() or user["display_name"]
    lobby = create_lobby(_db_path(), user_id=user["id"], name=name[:60], nickname=nickname[:40])
    return jsonify({"ok": True, "lobby": lobby})


@app.route("/api/lobbies/join", methods=["POST"])
def api_lobby_join():
    user = _get_current_user()
    if user is None:
        return _auth_required_error()
    data = request.get_json() or {}
    code = str(data.get("invite_code", "")).strip().upper()
    if len(code) < 4:
        return jsonify({"error": "Invite code is required"}), 400
    nickname = str(data.get("nickname", "")).strip() or user["display_name"]
    try:
        lobby = join_lobby(_db_path(), user_id=user["id"], invite_code=code, nickname=nickname[:40])
    except LobbyError as exc:
        return _lobby_error(exc)
    return jsonify({"ok": True, "lobby": lobby})


@app.route("/api/lobbies/<int:lobby_id>")
def api_lobby_state(lobby_id: int):
    user_id, error = _member_lobby_guard(lobby_id)
    if error:
        return error

    now = _now()
    try:
        meta = get_lobby_meta(_db_path(), lobby_id=lobby_id, now=now)
    except LobbyError as exc:
        return _lobby_error(exc)

    analytics = load_lobby_analytics(_db_path(), lobby_id=lobby_id)
    snapshot = build_snapshot(
        analytics["members"],
        group_drinks_by_member(analytics["drinks"]),
        analytics["params"],
        now,
        step_minutes=_step_minutes(),
    )

    bac_now = next((m.bac for m in snapshot.ranked if m.user_id == user_id), 0.0)
    force = _parse_bool(request.args.get("force"), default=False)
    state = _get_sync_state(lobby_id, user_id)
    synced = False
    if meta["is_active"] and state.allows(now, bac_now, force=force):
        upsert_member_bac(_db_path(), lobby_id=lobby_id, user_id=user_id, bac=bac_now, timestamp=now)
        _set_sync_state(lobby_id, user_id, state.recorded(now, bac_now))
        synced = True
        app.logger.debug("Synced BAC %.4f for user %s in lobby %s", bac_now, user_id, lobby_id)

    return jsonify({
        "lobby": {
            "id": meta["id"],
            "name": meta["name"],
            "is_active": meta["is_active"],
            "is_creator": meta["created_by"] == user_id,
            "created_at": format_timestamp(meta["created_at"]) if meta["created_at"] else None,
        },
        "bac_now": round(bac_now, 4),
        "ranked": [
            {"user_id": m.user_id, "nickname": m.nickname, "bac": round(m.bac, 4)}
            for m in snapshot.ranked
        ],
        "chart": chart_series(snapshot),
        "max_display_y": round(snapshot.max_display_y, 4),
        "drink_count": len(analytics["drinks"]),
        "synced": synced,
    })


@app.route("/api/lobbies/<int:lobby_id>/drinks", methods=["POST"])
def api_lobby_drink_add(lobby_id: int):
    user_id, error = _member_lobby_guard(lobby_id)
    if error:
        return error

    data = request.get_json() or {}
    preset = DRINK_PRESETS.get(str(data.get("preset", "")))
    if preset is not None:
        name, volume_ml, abv = preset.name, preset.volume_ml, preset.abv
    else:
        name = str(data.get("name", "")).strip()[:60] or "Drink"
        try:
            volume_ml = float(data.get("volume_ml"))
            abv = float(data.get("abv"))
        except (TypeError, ValueError):
            return jsonify({"error": "volume_ml and abv are required"}), 400
        if volume_ml <= 0 or abv < 0 or abv > MAX_ABV:
            return jsonify({"error": "volume_ml must be positive and abv between 0 and 100"}), 400
        volume_ml = _clamp_float(volume_ml, volume_ml, MIN_VOLUME_ML, MAX_VOLUME_ML)

    try:
        drink = insert_drink(_db_path(), lobby_id=lobby_id, user_id=user_id, name=name, volume_ml=volume_ml, abv=abv)
    except LobbyError as exc:
        return _lobby_error(exc)

    _mark_force_sync(lobby_id, user_id)
    return jsonify({
        "ok": True,
        "drink": {
            "name": drink.name,
            "volume_ml": drink.volume_ml,
            "abv": drink.abv,
            "grams": round(drink.alcohol_grams, 2),
            "consumed_at": format_timestamp(drink.consumed_at),
        },
    })


@app.route("/api/lobbies/<int:lobby_id>/drinks")
def api_lobby_drinks(lobby_id: int):
    _, error = _member_lobby_guard(lobby_id)
    if error:
        return error

    after_raw = request.args.get("after", type=str)
    if after_raw:
        after = parse_timestamp(after_raw)
        if after is None:
            return jsonify({"error": "after must be an ISO-8601 timestamp"}), 400
        drinks = list_drinks_after(_db_path(), lobby_id=lobby_id, after=after)
    else:
        drinks = list_drinks(_db_path(), lobby_id=lobby_id)

    return jsonify({
        "items": [
            {
                "user_id": d.user_id,
                "name": d.name,
                "volume_ml": d.volume_ml,
                "abv": d.abv,
                "consumed_at": format_timestamp(d.consumed_at),
            }
            for d in drinks
        ],
    })


@app.route("/api/lobbies/<int:lobby_id>/close", methods=["POST"])
def api_lobby_close(lobby_id: int):
    user_id = _require_user_id()
    if user_id is None:
        return _auth_required_error()
    _ensure_db()
    try:
        close_lobby(_db_path(), lobby_id=lobby_id, user_id=user_id)
    except LobbyError as exc:
        return _lobby_error(exc)
    return jsonify({"ok": True})


@app.route("/api/lobbies/<int:lobby_id>/leave", methods=["POST"])
def api_lobby_leave(lobby_id: int):
    user_id = _require_user_id()
    if user_id is None:
        return _auth_required_error()
    _ensure_db()
    try:
        leave_lobby(_db_path(), lobby_id=lobby_id, user_id=user_id)
    except LobbyError as exc:
        return _lobby_error(exc)
    states = dict(flask_session.get(SYNC_STATE_KEY) or {})
    states.pop(_sync_key(lobby_id, user_id), None)
    flask_session[SYNC_STATE_KEY] = states
    return jsonify({"ok": True})


@app.route("/api/lobbies/<int:lobby_id>", methods=["DELETE"])
def api_lobby_delete(lobby_id: int):
    user_id = _require_user_id()
    if user_id is None:
        return _auth_required_error()
    _ensure_db()
    try:
        delete_lobby(_db_path(), lobby_id=lobby_id, user_id=user_id)
    except LobbyError as exc:
        return _lobby_error(exc)
    return jsonify({"ok": True})


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=os.environ.get("FLASK_DEBUG", "0") == "1")
