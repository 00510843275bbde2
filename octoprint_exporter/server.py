"""Metrics endpoint using FastAPI."""
import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn
from uvicorn.protocols.http.h11_impl import H11Protocol

from octoprint_exporter.config import ServerConfig
from octoprint_exporter.registry import MetricRegistry

logger = logging.getLogger(__name__)

# Routed so that the handler, not the framework, rejects them
ROUTED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class UnsupportedRequest(Exception):
    """A scrape used a method other than GET."""

    def __init__(self, method: str):
        super().__init__(f"Method {method} not allowed")
        self.method = method


class MetricsServer:
    """Serves the registry's exposition on a single GET-only path."""

    def __init__(self, registry: MetricRegistry, config: ServerConfig):
        """
        Initialize the metrics server.

        Args:
            registry: Registry rendered on every scrape
            config: Listen address, port and path
        """
        self.registry = registry
        self.config = config
        self.app = FastAPI(
            title="OctoPrint Exporter",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup the metrics route and plain-text error responses."""

        @self.app.exception_handler(UnsupportedRequest)
        async def unsupported(request: Request, exc: UnsupportedRequest):
            return PlainTextResponse("Support GET only", status_code=405, headers={"Allow": "GET"})

        @self.app.exception_handler(StarletteHTTPException)
        async def plain_http_error(request: Request, exc: StarletteHTTPException):
            return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

        # sync handler: rendering waits on the registry lock, keep it off the event loop
        @self.app.api_route(self.config.path, methods=ROUTED_METHODS)
        def metrics(request: Request):
            """Current exposition of every declared gauge."""
            if request.method != "GET":
                raise UnsupportedRequest(request.method)
            logger.debug("GET request received")
            return Response(content=self.registry.render(), media_type=self.registry.content_type)

    def uvicorn_config(self) -> uvicorn.Config:
        return uvicorn.Config(
            self.app,
            host=self.config.bind_address,
            port=self.config.port,
            http=idle_timeout_protocol(self.config.idle_timeout_s),
            log_level="warning",
            timeout_keep_alive=self.config.timeout_keep_alive_s,
            limit_concurrency=self.config.limit_concurrency,
        )

    def run(self):
        """Run the HTTP server (blocking)."""
        logger.info(
            f"OctoPrint exporter listening on "
            f"{self.config.bind_address}:{self.config.port}{self.config.path}"
        )
        uvicorn.Server(self.uvicorn_config()).run()


class IdleTimeoutH11Protocol(H11Protocol):
    """
    h11 protocol that closes a connection after ``idle_timeout`` seconds
    without incoming data.

    uvicorn's keep-alive timer only runs between completed requests, so a
    client that never finishes its request head would otherwise hold the
    connection forever.
    """

    idle_timeout = 20.0
    _idle_handle: Optional[asyncio.TimerHandle] = None

    def connection_made(self, transport):
        super().connection_made(transport)
        self._reset_idle_timer()

    def data_received(self, data: bytes) -> None:
        self._reset_idle_timer()
        super().data_received(data)

    def connection_lost(self, exc):
        self._cancel_idle_timer()
        super().connection_lost(exc)

    def _reset_idle_timer(self):
        self._cancel_idle_timer()
        self._idle_handle = self.loop.call_later(self.idle_timeout, self._idle_timeout_handler)

    def _cancel_idle_timer(self):
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _idle_timeout_handler(self):
        self._idle_handle = None
        if self.cycle is not None and not self.cycle.response_complete:
            # response still being written
            self._reset_idle_timer()
            return
        if not self.transport.is_closing():
            logger.debug(f"Closing connection idle for {self.idle_timeout}s")
            self.transport.close()


def idle_timeout_protocol(idle_timeout: float) -> type:
    """IdleTimeoutH11Protocol bound to a timeout, for uvicorn's ``http`` option."""
    return type("IdleTimeoutH11Protocol", (IdleTimeoutH11Protocol,), {"idle_timeout": idle_timeout})
