"""todosync HTTP server built on Starlette and served by uvicorn."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route

from ..configuration import DEFAULT_SESSION_TTL_MS
from ..state.storage import KeyValueStorage, open_storage
from .auth import SessionService, extract_token
from .routes import (
    change_password_handler,
    error_response,
    get_state_handler,
    health_handler,
    login_handler,
    logout_handler,
    me_handler,
    put_state_handler,
    register_handler,
)
from .store import StateStore, UserStore

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("todosync.api.server")

PROTECTED_PATHS = frozenset({"/state", "/api/auth/password"})


class ServerState(str, Enum):
    """Server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class TodoSyncServer:
    """Remote state store: per-user documents behind bearer sessions."""

    config_bundle: "ConfigurationBundle"
    storage: Optional[KeyValueStorage] = None

    _state: ServerState = field(default=ServerState.STOPPED, init=False)
    _server: Optional[Any] = field(default=None, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.storage is None:
            self.storage = open_storage(self.config_bundle, namespace="server")
        self.users = UserStore(self.storage)
        self.states = StateStore(self.storage)
        self.sessions = SessionService(self.storage, self.session_ttl_ms)

    @property
    def state(self) -> ServerState:
        return self._state

    def _get_server_config(self) -> Dict[str, Any]:
        return self.config_bundle.section("server")

    @property
    def host(self) -> str:
        return self._get_server_config().get("host", "127.0.0.1")

    @property
    def port(self) -> int:
        return int(self._get_server_config().get("port", 8787))

    @property
    def session_cookie(self) -> str:
        return self._get_server_config().get("session_cookie", "todo_token")

    @property
    def session_ttl_ms(self) -> int:
        return int(self._get_server_config().get("session_ttl_ms", DEFAULT_SESSION_TTL_MS))

    @property
    def secure_cookies(self) -> bool:
        return bool(self._get_server_config().get("secure_cookies", False))

    @property
    def max_body_bytes(self) -> int:
        return int(self._get_server_config().get("max_body_bytes", 1024 * 1024))

    def create_app(self) -> Starlette:
        middleware = []
        cors_origins = self._get_server_config().get("cors_origins", [])
        if cors_origins:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=cors_origins,
                    allow_credentials=True,
                    allow_methods=["*"],
                    allow_headers=["*"],
                )
            )
        middleware.append(Middleware(self._auth_middleware_class()))

        routes = [
            Route("/health", health_handler, methods=["GET"]),
            Route("/state", get_state_handler, methods=["GET"]),
            Route("/state", put_state_handler, methods=["PUT"]),
            Route("/api/auth/register", register_handler, methods=["POST"]),
            Route("/api/auth/login", login_handler, methods=["POST"]),
            Route("/api/auth/logout", logout_handler, methods=["POST"]),
            Route("/api/auth/me", me_handler, methods=["GET"]),
            Route("/api/auth/password", change_password_handler, methods=["POST"]),
        ]

        app = Starlette(routes=routes, middleware=middleware, lifespan=self._lifespan)
        app.state.todosync_server = self
        return app

    def _auth_middleware_class(self) -> type:
        """Resolve the caller's session and guard the protected paths."""
        server = self

        class AuthMiddleware(BaseHTTPMiddleware):
            async def dispatch(self, request, call_next):
                if request.url.path == "/health":
                    return await call_next(request)

                token = extract_token(request, server.session_cookie)
                session = server.sessions.find_valid(token)
                request.state.auth = session

                protected = request.url.path in PROTECTED_PATHS
                if protected and session is None:
                    return error_response("UNAUTHORIZED", 401)

                response = await call_next(request)
                if protected:
                    response.headers["Cache-Control"] = "no-store"
                return response

        return AuthMiddleware

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        logger.info("Server starting on %s:%s", self.host, self.port)
        removed = self.sessions.cleanup_expired()
        if removed:
            logger.info("Removed %d expired sessions", removed)
        self._state = ServerState.RUNNING
        try:
            yield
        finally:
            logger.info("Server shutting down")
            self._state = ServerState.STOPPED

    def start(self, blocking: bool = False) -> bool:
        """Start serving.

        Args:
            blocking: If True, block until the server stops. If False, run in a
                background thread.

        Returns:
            True if the server is running (or ran, when blocking).
        """
        if self._state == ServerState.RUNNING:
            logger.warning("Server is already running")
            return False

        import uvicorn

        self._state = ServerState.STARTING
        config = uvicorn.Config(
            self.create_app(),
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        if blocking:
            try:
                asyncio.run(self._server.serve())
            except Exception as e:
                logger.exception("Server error: %s", e)
                self._state = ServerState.ERROR
                return False
            return True

        self._thread = threading.Thread(
            target=self._run_in_thread,
            daemon=True,
            name="todosync-server",
        )
        self._thread.start()

        for _ in range(50):  # up to 5 seconds
            time.sleep(0.1)
            if self._state in (ServerState.RUNNING, ServerState.ERROR):
                break

        return self._state == ServerState.RUNNING

    def _run_in_thread(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._server.serve())
        except Exception as e:
            logger.exception("Server thread error: %s", e)
            self._state = ServerState.ERROR
        finally:
            loop.close()
            if self._state != ServerState.ERROR:
                self._state = ServerState.STOPPED

    def stop(self) -> bool:
        if self._state != ServerState.RUNNING:
            logger.warning("Server is not running")
            return False

        self._state = ServerState.STOPPING
        if self._server:
            self._server.should_exit = True
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._state = ServerState.STOPPED
        self._server = None
        self._thread = None
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "host": self.host,
            "port": self.port,
            "url": f"http://{self.host}:{self.port}" if self._state == ServerState.RUNNING else None,
            "storage": self.storage.name,
            "users": self.users.count(),
            "documents": self.states.count(),
        }


def create_app(config_bundle: "ConfigurationBundle", storage: Optional[KeyValueStorage] = None) -> Starlette:
    """Build the ASGI app without the uvicorn lifecycle around it."""
    return TodoSyncServer(config_bundle, storage=storage).create_app()


__all__ = ["ServerState", "TodoSyncServer", "create_app"]
