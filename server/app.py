"""
FastAPI server for the multilingual phone agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml, /incoming-call: TwiML for the Twilio voice webhook
- WS /ws: Twilio Media Streams, one CallSession per connection
"""

import asyncio
import sys

# uvloop is optional and not available on Windows
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
import structlog
import uvicorn

from src.callcore.config import ConfigError, get_config, init_config
from src.callcore.twilio_protocol import create_connect_twiml


def configure_logging(log_level: str = "INFO") -> None:
    """Structured logging: console output at DEBUG, JSON lines otherwise."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_level == "DEBUG"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Process-wide counters exposed on /metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    total_turns: int = 0
    total_interruptions: int = 0
    errors: int = 0

    def call_opened(self) -> None:
        self.total_connections += 1
        self.active_connections += 1
        self.total_calls += 1
        self.active_calls += 1

    def call_closed(self, session: Any = None) -> None:
        self.active_connections -= 1
        self.active_calls -= 1
        if session is not None:
            self.total_turns += session.turn_count
            self.total_interruptions += session.interruptions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "total_turns": self.total_turns,
            "total_interruptions": self.total_interruptions,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config and build the shared AI gateway; exit on failure."""
    logger.info("Starting phone agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.callcore.gateway import create_gateway, load_knowledge

        knowledge = load_knowledge(config.knowledge_path)
        # One gateway (and one HTTP connection pool) for every call.
        app.state.gateway = create_gateway(config, knowledge=knowledge)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except Exception as e:
        logger.error("Startup failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    logger.info(
        "Server ready",
        port=config.port,
        public_host=config.public_host,
        ws_url=config.ws_url,
        knowledge_chars=len(knowledge),
    )

    yield

    logger.info("Shutting down server...")
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.close()


app = FastAPI(
    title="Polyglot Call Agent",
    description="Multilingual voice agent for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    return JSONResponse(content=metrics.to_dict())


@app.api_route("/twiml", methods=["GET", "POST"])
@app.api_route("/incoming-call", methods=["GET", "POST"])
async def generate_twiml(request: Request) -> Response:
    """Voice webhook: connect the call audio to our media stream socket."""
    ws_url = get_config().ws_url
    logger.info("Generated TwiML", ws_url=ws_url, path=request.url.path)
    return Response(content=create_connect_twiml(ws_url), media_type="application/xml")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams endpoint.

    Messages are handled strictly in arrival order. A failure on one message
    is logged and counted; the call keeps going. The session is always
    stopped when the socket goes away.
    """
    await websocket.accept()
    metrics.call_opened()

    call_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(call_id=call_id)
    logger.info("WebSocket connected", active_calls=metrics.active_calls)

    # Imported here to keep server startup light
    from src.callcore.session import create_session

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    def is_open() -> bool:
        return websocket.client_state == WebSocketState.CONNECTED

    session = None
    try:
        session = create_session(
            send_message,
            gateway=getattr(websocket.app.state, "gateway", None),
            is_open=is_open,
        )

        async for message in websocket.iter_text():
            try:
                await session.handle_message(message)
            except Exception as e:
                metrics.errors += 1
                logger.error(
                    "Error handling WebSocket message",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if session.is_stopped:
                break

    except Exception as e:
        metrics.errors += 1
        logger.error("WebSocket handler error", error=str(e), error_type=type(e).__name__)

    finally:
        if session is not None:
            try:
                await session.stop()
            except Exception as e:
                logger.error("Error stopping session", error=str(e))
        metrics.call_closed(session)
        logger.info("WebSocket closed", active_calls=metrics.active_calls)
        structlog.contextvars.unbind_contextvars("call_id")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    metrics.errors += 1
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
    """Run the server with uvicorn."""
    config = get_config()
    configure_logging(config.log_level)
    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
