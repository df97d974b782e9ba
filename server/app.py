"""
FastAPI server for the lead bridging service.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /outbound-call: Dial a lead and a sales agent
- GET|POST /twiml/contact: Initial TwiML for the contact leg
- GET|POST /twiml/agent: Initial TwiML for the sales agent leg
- POST /webhooks/status: Twilio call status callbacks
- POST /webhooks/amd: Twilio async AMD callbacks
- POST /webhooks/conference: Twilio conference participant callbacks
- GET /leads/{call_id}: Live snapshot of a lead
- WS /media-stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from twilio.request_validator import RequestValidator
import structlog
import uvicorn

from src.leadbridge.config import get_config, init_config, ConfigError
from src.leadbridge.events import (
    EventValidationError,
    parse_amd_event,
    parse_conference_event,
    parse_status_event,
)
from src.leadbridge.records import LeadInfo
from src.leadbridge.telephony import TelephonyError
from src.leadbridge import prompts, twiml


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
    total_streams: int = 0
    active_streams: int = 0
    webhooks_received: int = 0
    webhooks_rejected: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_streams": self.total_streams,
            "active_streams": self.active_streams,
            "webhooks_received": self.webhooks_received,
            "webhooks_rejected": self.webhooks_rejected,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

# Lazily built so tests can swap in a coordinator with fake telephony.
_coordinator = None


def get_coordinator():
    global _coordinator
    if _coordinator is None:
        from src.leadbridge.coordinator import LeadCoordinator
        _coordinator = LeadCoordinator()
    return _coordinator


class OutboundCallRequest(BaseModel):
    """Body of POST /outbound-call."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: str = Field(min_length=1)
    lead_info: Dict[str, Any] = Field(default_factory=dict, alias="leadInfo")
    agent_number: Optional[str] = Field(default=None, alias="agentNumber")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting lead bridging server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        coordinator = get_coordinator()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            media_stream_url=config.media_stream_url,
            min_contact_turns=coordinator.config.min_contact_turns,
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
    if _coordinator is not None:
        await _coordinator.close()


# Create FastAPI app
app = FastAPI(
    title="Lead Bridge",
    description="Dials a lead and a sales agent and bridges them when the conversation is ready",
    version="1.0.0",
    lifespan=lifespan,
)


async def _twilio_form(request: Request) -> Dict[str, str]:
    """Read a Twilio form body, checking the request signature when enabled."""
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    metrics.webhooks_received += 1

    config = get_config()
    if config.validate_twilio_signature:
        validator = RequestValidator(config.twilio_auth_token)
        url = f"{config.base_url}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        signature = request.headers.get("X-Twilio-Signature", "")
        if not validator.validate(url, params, signature):
            metrics.webhooks_rejected += 1
            logger.warning("Rejected webhook with bad signature", path=request.url.path)
            raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    return params


def _xml(document: str) -> Response:
    return Response(content=document, media_type="application/xml")


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    coordinator = get_coordinator()
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_legs": len(coordinator.store),
            "active_streams": metrics.active_streams,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    content.update(get_coordinator().stats.to_dict())
    return JSONResponse(content=content)


@app.post("/outbound-call")
async def outbound_call(body: OutboundCallRequest) -> JSONResponse:
    """Dial the contact and a sales agent for one lead."""
    coordinator = get_coordinator()
    lead_info = LeadInfo.from_mapping(body.lead_info)

    try:
        contact, agent = await coordinator.start_lead(
            body.number,
            lead_info,
            agent_number=body.agent_number,
        )
    except TelephonyError as e:
        logger.error("Failed to start lead", error=str(e), operation=e.operation)
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": str(e)},
        )

    return JSONResponse(
        content={
            "success": True,
            "contactCallSid": contact.call_id,
            "agentCallSid": agent.call_id,
        }
    )


@app.post("/twiml/contact")
@app.get("/twiml/contact")
async def contact_twiml(request: Request) -> Response:
    """
    Initial TwiML for the contact leg.

    Connects the answered call to our media stream so the conversational
    agent can talk while the sales agent is on the way.
    """
    params = await _twilio_form(request) if request.method == "POST" else dict(request.query_params)
    call_id = params.get("CallSid", "")
    config = get_config()

    if call_id and get_coordinator().store.get(call_id) is None:
        logger.warning("TwiML requested for unknown contact leg", call_id=call_id)
        return _xml(twiml.hangup_twiml())

    logger.info("Generated contact TwiML", call_id=call_id, media_stream_url=config.media_stream_url)
    return _xml(twiml.contact_stream_twiml(config.media_stream_url, call_id=call_id))


@app.post("/twiml/agent")
@app.get("/twiml/agent")
async def agent_twiml(request: Request) -> Response:
    """Initial TwiML for the sales agent leg: hold until the bridge command arrives."""
    params = await _twilio_form(request) if request.method == "POST" else dict(request.query_params)
    logger.info("Generated agent TwiML", call_id=params.get("CallSid", ""))
    config = get_config()
    return _xml(
        twiml.agent_hold_twiml(
            prompts.AGENT_HOLD_MESSAGE,
            hold_seconds=config.agent_hold_seconds,
            audio_url=config.agent_hold_audio_url,
            audio_loops=config.agent_hold_audio_loops,
        )
    )


@app.post("/webhooks/status")
async def status_webhook(request: Request) -> JSONResponse:
    event = parse_status_event(await _twilio_form(request))
    await get_coordinator().handle_leg_status(event)
    return JSONResponse(content={"status": "ok"})


@app.post("/webhooks/amd")
async def amd_webhook(request: Request) -> JSONResponse:
    event = parse_amd_event(await _twilio_form(request))
    await get_coordinator().handle_amd(event)
    return JSONResponse(content={"status": "ok"})


@app.post("/webhooks/conference")
async def conference_webhook(request: Request) -> JSONResponse:
    event = parse_conference_event(await _twilio_form(request))
    if event is not None:
        await get_coordinator().handle_event(event)
    return JSONResponse(content={"status": "ok"})


@app.get("/leads/{call_id}")
async def get_lead(call_id: str) -> JSONResponse:
    snapshot = get_coordinator().lead_snapshot(call_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return JSONResponse(content=snapshot.to_dict())


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Relays the contact leg's audio to the conversational agent and back.
    """
    await websocket.accept()

    metrics.total_streams += 1
    metrics.active_streams += 1

    logger.info("Media stream connected", active_streams=metrics.active_streams)

    # Import here to avoid circular imports and speed up startup
    from src.leadbridge.agent_bridge import AgentStreamBridge

    bridge = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    try:
        bridge = AgentStreamBridge(send_message, get_coordinator())
        await bridge.start()

        # Handle incoming messages
        while True:
            try:
                message = await websocket.receive_text()
                await bridge.handle_message(message)

            except WebSocketDisconnect:
                logger.info("Media stream disconnected", call_sid=bridge.call_sid or None)
                break
            except Exception as e:
                logger.error(
                    "Error handling media stream message",
                    call_sid=bridge.call_sid or None,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error("Media stream handler error", error=str(e))
        metrics.errors += 1

    finally:
        # Cleanup
        if bridge:
            try:
                await bridge.stop()
            except Exception as e:
                logger.error("Error stopping agent bridge", error=str(e))

        metrics.active_streams -= 1

        logger.info(
            "Media stream ended",
            call_sid=bridge.call_sid if bridge else None,
            active_streams=metrics.active_streams,
        )


@app.exception_handler(EventValidationError)
async def event_validation_handler(request: Request, exc: EventValidationError) -> JSONResponse:
    """Malformed webhook bodies are rejected before touching any state."""
    logger.warning("Invalid webhook payload", path=request.url.path, error=str(exc))
    metrics.webhooks_rejected += 1
    return JSONResponse(status_code=400, content={"error": str(exc)})


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
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
