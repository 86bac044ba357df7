"""Route handlers for the todosync server.

Handlers reach their collaborators through ``request.app.state.todosync_server``
and the session resolved by the auth middleware through ``request.state.auth``.
Every 4xx body has the shape ``{"error": CODE, "details": {...}?}``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .. import __version__
from ..state.document import coerce_version, now_ms
from .auth import (
    MIN_PASSWORD_LENGTH,
    Session,
    hash_password,
    normalize_email,
    validate_credentials,
    verify_password,
)
from .store import VersionConflictError

if TYPE_CHECKING:
    from .server import TodoSyncServer

logger = logging.getLogger("todosync.api.routes")


def error_response(code: str, status_code: int, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": code}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


def _server(request: Request) -> "TodoSyncServer":
    return request.app.state.todosync_server


def _session(request: Request) -> Optional[Session]:
    return getattr(request.state, "auth", None)


async def _read_json(request: Request, max_bytes: int) -> Tuple[Any, Optional[JSONResponse]]:
    raw = await request.body()
    if max_bytes and len(raw) > max_bytes:
        return None, error_response("PAYLOAD_TOO_LARGE", 413, {"maxBytes": max_bytes})
    if not raw:
        return {}, None
    try:
        return json.loads(raw), None
    except ValueError:
        return None, error_response("INVALID_JSON", 400)


def _attach_session_cookie(response: Response, server: "TodoSyncServer", token: str) -> None:
    ttl_ms = server.session_ttl_ms
    response.set_cookie(
        server.session_cookie,
        token,
        max_age=ttl_ms // 1000 if ttl_ms and ttl_ms > 0 else None,
        httponly=True,
        secure=server.secure_cookies,
        samesite="none" if server.secure_cookies else "lax",
    )


async def health_handler(request: Request) -> JSONResponse:
    server = _server(request)
    return JSONResponse({
        "ok": True,
        "version": __version__,
        "timestamp": now_ms(),
        "storage": server.storage.name,
    })


async def get_state_handler(request: Request) -> JSONResponse:
    server = _server(request)
    session = _session(request)
    document = server.states.get(session.email)
    if document is None:
        return error_response("NOT_FOUND", 404)
    return JSONResponse(document)


async def put_state_handler(request: Request) -> JSONResponse:
    server = _server(request)
    session = _session(request)

    body, failure = await _read_json(request, server.max_body_bytes)
    if failure is not None:
        return failure

    state = body.get("state") if isinstance(body, dict) else None
    if not isinstance(state, dict):
        logger.info("Rejected invalid state from %s", session.email)
        return error_response("INVALID_STATE", 400)

    raw_expected = body.get("expectedVersion")
    if raw_expected is None:
        expected_version = None
    elif isinstance(raw_expected, bool) or not isinstance(raw_expected, (int, float, str)):
        return error_response("INVALID_STATE", 400, {"expectedVersion": "must be an integer or null"})
    else:
        expected_version = coerce_version(raw_expected)

    try:
        meta = server.states.put(session.email, state, expected_version)
    except VersionConflictError as e:
        logger.info(
            "Version conflict for %s: %s",
            session.email,
            e,
            extra={
                "operation": "store",
                "user": session.email,
                "version": e.incoming_version,
                "expected_version": e.expected_version,
                "status_code": 409,
            },
        )
        return error_response("VERSION_CONFLICT", 409, e.to_dict())

    return JSONResponse({"ok": True, "meta": meta})


async def register_handler(request: Request) -> JSONResponse:
    server = _server(request)
    body, failure = await _read_json(request, server.max_body_bytes)
    if failure is not None:
        return failure

    email, password, errors = validate_credentials(body)
    if errors:
        return error_response("VALIDATION_FAILED", 400, errors)
    if server.users.find(email) is not None:
        return error_response("EMAIL_EXISTS", 409)

    salt, password_hash = hash_password(password)
    server.users.create(email, salt, password_hash)
    session = server.sessions.issue(email)
    logger.info("Registered %s", email)

    response = JSONResponse({"ok": True, "token": session.token, "user": {"email": email}}, status_code=201)
    _attach_session_cookie(response, server, session.token)
    return response


async def login_handler(request: Request) -> JSONResponse:
    server = _server(request)
    body, failure = await _read_json(request, server.max_body_bytes)
    if failure is not None:
        return failure
    body = body if isinstance(body, dict) else {}

    email = normalize_email(body.get("email"))
    password = body.get("password") if isinstance(body.get("password"), str) else ""
    user = server.users.find(email)
    if user is None or not verify_password(password, user.get("salt"), user.get("hash")):
        logger.info("Failed login for %s", email or "<empty>")
        return error_response("INVALID_CREDENTIALS", 401)

    session = server.sessions.issue(email)
    response = JSONResponse({"ok": True, "token": session.token, "user": {"email": email}})
    _attach_session_cookie(response, server, session.token)
    return response


async def logout_handler(request: Request) -> JSONResponse:
    server = _server(request)
    session = _session(request)
    if session is not None:
        server.sessions.revoke(session.token)

    response = JSONResponse({"ok": True})
    response.delete_cookie(
        server.session_cookie,
        httponly=True,
        secure=server.secure_cookies,
        samesite="none" if server.secure_cookies else "lax",
    )
    return response


async def me_handler(request: Request) -> JSONResponse:
    session = _session(request)
    if session is None:
        return JSONResponse({"authenticated": False})
    return JSONResponse({"authenticated": True, "user": {"email": session.email}})


async def change_password_handler(request: Request) -> JSONResponse:
    server = _server(request)
    session = _session(request)
    body, failure = await _read_json(request, server.max_body_bytes)
    if failure is not None:
        return failure
    body = body if isinstance(body, dict) else {}

    old_password = body.get("oldPassword") or body.get("currentPassword")
    new_password = body.get("newPassword") or body.get("password")
    if not isinstance(old_password, str) or not isinstance(new_password, str):
        return error_response("MISSING_FIELDS", 400)
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return error_response("INVALID_PASSWORD", 400, {"minLength": MIN_PASSWORD_LENGTH})

    user = server.users.find(session.email)
    if user is None:
        return error_response("USER_NOT_FOUND", 404)
    if not verify_password(old_password, user.get("salt"), user.get("hash")):
        return error_response("INVALID_PASSWORD", 401)

    salt, password_hash = hash_password(new_password)
    server.users.update_password(session.email, salt, password_hash)
    logger.info("Password changed for %s", session.email)
    return JSONResponse({"ok": True})


__all__ = [
    "change_password_handler",
    "error_response",
    "get_state_handler",
    "health_handler",
    "login_handler",
    "logout_handler",
    "me_handler",
    "put_state_handler",
    "register_handler",
]
