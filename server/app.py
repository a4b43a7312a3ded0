"""
FastAPI server for the call-center conversation pipeline.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Call-start webhook; registers the call and returns TwiML
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from urllib.parse import parse_qs
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

# Configure logging before imports
from src.callcore.config import get_config, init_config, ConfigError
from src.callcore.errors import CapacityExceededError, SessionNotFoundError


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    rejected_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "rejected_calls": self.rejected_calls,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

# Set during startup; None when the app runs without its lifespan (e.g. bare TestClient)
pipeline = None


def get_pipeline():
    return pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global pipeline

    logger.info("Starting call pipeline server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        from src.callcore.engine import create_pipeline
        pipeline = create_pipeline(config)
        await pipeline.start()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            max_concurrent_calls=config.max_concurrent_calls,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")
    if pipeline is not None:
        await pipeline.stop()
        pipeline = None


# Create FastAPI app
app = FastAPI(
    title="Call Center Conversation Pipeline",
    description="Real-time bilingual (English/Hindi) phone conversation pipeline for Twilio",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    current = get_pipeline()
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(current.sessions.list_active()) if current else 0,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    current = get_pipeline()
    if current is not None:
        content["pipeline"] = current.stats()
    return JSONResponse(content=content)


async def _webhook_params(request: Request) -> Dict[str, str]:
    """Twilio webhook parameters from the query string or a form-encoded body."""
    params = dict(request.query_params)
    if request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
        for key, values in parse_qs(body).items():
            if values:
                params[key] = values[0]
    return params


def _busy_twiml() -> str:
    return """<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say>All of our agents are busy right now. Please call again later.</Say>
    <Hangup/>
</Response>"""


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def generate_twiml(request: Request) -> Response:
    """
    Call-start webhook.

    Registers the call (refusing it when at capacity) and returns TwiML that
    connects the call audio to our WebSocket endpoint.
    """
    config = get_config()
    params = await _webhook_params(request)
    call_sid = params.get("CallSid", "")

    current = get_pipeline()
    if current is not None and call_sid:
        try:
            await current.start_call(call_sid, metadata={"from": params.get("From", ""), "to": params.get("To", "")})
        except (CapacityExceededError, SessionNotFoundError):
            metrics.rejected_calls += 1
            return Response(content=_busy_twiml(), media_type="application/xml")

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.ws_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", call_sid=call_sid, ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Feeds inbound audio to the pipeline and writes replies back to the stream.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    current = get_pipeline()
    if current is None:
        logger.error("WebSocket connected before pipeline startup")
        await websocket.close()
        metrics.active_connections -= 1
        return

    from src.callcore.twilio_protocol import TwilioCallControl, TwilioStreamHandler

    config = get_config()
    handler = TwilioStreamHandler(
        current,
        websocket.send_text,
        inbound_chunk_ms=config.inbound_chunk_ms,
        call_control=TwilioCallControl(
            config.twilio_account_sid,
            config.twilio_auth_token,
            transfer_number=config.transfer_number,
        ),
    )

    try:
        while True:
            try:
                message = await websocket.receive_text()
                await handler.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_sid=handler.call_sid)
                break
            except (CapacityExceededError, SessionNotFoundError) as e:
                logger.warning("Call refused", call_sid=handler.call_sid, error=str(e))
                metrics.rejected_calls += 1
                await websocket.close()
                break
            except ValueError as e:
                logger.warning("Ignoring malformed Twilio message", call_sid=handler.call_sid, error=str(e))
                continue
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_sid=handler.call_sid,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    finally:
        try:
            await handler.stop()
        except Exception as e:
            logger.error("Error ending call", call_sid=handler.call_sid, error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Stream closed",
            call_sid=handler.call_sid,
            active_connections=metrics.active_connections,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config: Optional[Any]
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = None

    log_level = getattr(config, "log_level", "INFO")
    port = getattr(config, "port", 7860)
    configure_logging(log_level)

    logger.info("Starting server", port=port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=port,
        log_level=log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
