"""WebSocket login handshake and per-connection message loop."""

from __future__ import annotations

import logging

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .errors import ProtocolError
from .models import ClientMessage, LoginPayload
from .session import ClientConnection, Session, SessionRegistry

logger = logging.getLogger(__name__)


class LoginError(Exception):
    """Raised when a login request is refused."""


def parse_login(raw: str) -> LoginPayload:
    """Decode the first frame of a connection into a login request."""

    try:
        message = ClientMessage.model_validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError("Malformed message", raw) from exc
    if message.type != "login":
        raise ProtocolError(f"Expected login, got {message.type}", raw)
    try:
        return LoginPayload.model_validate(message.payload or {})
    except ValidationError as exc:
        raise ProtocolError("Login requires a name and a room code", raw) from exc


async def authenticate(registry: SessionRegistry, login: LoginPayload) -> Session:
    """Check the access password, name uniqueness and library readiness."""

    settings = registry.context.settings
    if settings.access_password and login.access_password != settings.access_password:
        raise LoginError("Incorrect access password")

    existing = registry.get(login.room_code)
    if existing is not None and existing.is_active(login.name):
        raise LoginError(f"{login.name} is already connected to this room")

    if not await registry.ensure_ready(settings.login_ready_timeout_seconds):
        raise LoginError("The movie library is still loading, try again shortly")

    session = registry.get_or_create(login.room_code)
    if session.is_active(login.name):
        raise LoginError(f"{login.name} is already connected to this room")
    return session


async def serve_websocket(websocket: WebSocket, registry: SessionRegistry) -> None:
    """Run one client connection from login until disconnect."""

    await websocket.accept()
    connection = ClientConnection(websocket.send_text)
    try:
        raw = await websocket.receive_text()
    except WebSocketDisconnect:
        return

    try:
        login = parse_login(raw)
        session = await authenticate(registry, login)
    except ProtocolError as exc:
        logger.warning("Rejected handshake %s: %s", exc.raw, exc)
        await connection.send("loginResponse", {"success": False, "message": str(exc)})
        await websocket.close()
        return
    except LoginError as exc:
        logger.info("Login refused: %s", exc)
        await connection.send("loginResponse", {"success": False, "message": str(exc)})
        await websocket.close()
        return

    await session.add(login.name, connection)
    try:
        payload = await session.login_payload(login.name)
        await connection.send("loginResponse", {"success": True, **payload})
        while True:
            message = await websocket.receive_text()
            await session.handle_message(login.name, message)
    except WebSocketDisconnect:
        logger.debug("%s disconnected from room %s", login.name, session.code)
    finally:
        connection.closed = True
        session.remove(login.name, connection)
        await registry.release(session)
