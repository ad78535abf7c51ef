"""
HTTP and WebSocket front door for the support line.

Twilio calls /voice (or /incoming-call) when a call arrives; the TwiML we
return greets the caller and opens a Media Stream to /media-stream, where
each connection gets its own RealtimeCallPipeline.
"""

import asyncio
import sys

try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.supportline.config import ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """JSON log lines in production, coloured console output at DEBUG."""
    debug = log_level.upper() == "DEBUG"
    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()

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
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    tickets_filed: int = 0
    transfers: int = 0
    errors: int = 0

    def call_started(self) -> None:
        self.total_connections += 1
        self.active_connections += 1
        self.total_calls += 1
        self.active_calls += 1

    def call_ended(self) -> None:
        self.active_connections -= 1
        self.active_calls -= 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["uptime_seconds"] = round(time.time() - data.pop("start_time"), 2)
        return data


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to take calls with missing credentials or an unknown chat model.
    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.supportline.llm import initialize_llm
        from src.supportline.prompt_utils import load_knowledge_base

        await initialize_llm()
        knowledge_base = load_knowledge_base(config.knowledge_base_path)
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)
    except Exception as e:
        logger.error("Startup checks failed", error=str(e))
        sys.exit(1)

    logger.info(
        "Support line ready",
        port=config.port,
        ws_url=config.ws_url,
        kb_articles=len(knowledge_base.get("articles", [])),
        call_forwarding=config.forwarding_active,
    )
    yield
    logger.info("Support line stopping", active_calls=metrics.active_calls)


app = FastAPI(
    title="Support Line Voice Bridge",
    description="Twilio phone support backed by OpenAI Realtime",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={"status": "healthy", "timestamp": time.time(), "active_calls": metrics.active_calls}
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    return JSONResponse(content=metrics.to_dict())


def build_voice_twiml(ws_url: str, company_name: str, caller: str = "") -> str:
    """Greeting followed by a bidirectional stream; the caller number rides along as a stream parameter."""
    response = VoiceResponse()
    response.say(f"Welcome to {company_name} support. How can I assist you today?")
    connect = Connect()
    stream = connect.stream(url=ws_url)
    if caller:
        stream.parameter(name="caller", value=caller)
    response.append(connect)
    return str(response)


async def _caller_number(request: Request) -> str:
    caller = request.query_params.get("From", "")
    if request.method != "POST":
        return caller
    try:
        form = await request.form()
    except Exception as e:
        logger.debug("Unreadable webhook body", error=str(e))
        return caller
    return str(form.get("From") or caller)


@app.api_route("/voice", methods=["GET", "POST"])
@app.api_route("/incoming-call", methods=["GET", "POST"])
async def voice_webhook(request: Request) -> Response:
    config = get_config()
    caller = await _caller_number(request)

    logger.info("Answering call", caller=caller or None, ws_url=config.ws_url)
    return Response(
        content=build_voice_twiml(config.ws_url, config.company_name, caller),
        media_type="application/xml",
    )


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    # Resolved at call time so tests can patch the factories.
    from src.supportline.llm import get_llm
    from src.supportline.realtime_pipeline import create_pipeline
    from src.supportline.ticketing import SubmissionStatus
    from src.supportline.transfer import TransferStatus

    await websocket.accept()
    metrics.call_started()
    log = logger.bind(connection=f"ws_{int(time.time() * 1000)}")
    log.info("Media stream opened", active_calls=metrics.active_calls)

    async def send_message(message: str) -> None:
        try:
            await websocket.send_text(message)
        except Exception as e:
            log.warning("Media stream send failed", error=str(e))

    pipeline = None
    try:
        pipeline = await create_pipeline(send_message, llm=get_llm())
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                log.info("Media stream closed by Twilio")
                break
            try:
                await pipeline.handle_message(message)
            except Exception as e:
                # One bad frame must not drop the call.
                log.error("Media stream message failed", error=str(e))
                metrics.errors += 1
    except Exception as e:
        log.error("Media stream failed", error=str(e))
        metrics.errors += 1
    finally:
        if pipeline is not None:
            try:
                await pipeline.stop()
            except Exception as e:
                log.error("Pipeline shutdown failed", error=str(e))
            else:
                if pipeline.submission and pipeline.submission.status == SubmissionStatus.CREATED:
                    metrics.tickets_filed += 1
                if pipeline.transfer_result and pipeline.transfer_result.status == TransferStatus.TRANSFERRED:
                    metrics.transfers += 1
        metrics.call_ended()
        log.info("Call finished", active_calls=metrics.active_calls)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled request error", path=request.url.path, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
    config = get_config()
    configure_logging(config.log_level)
    logger.info("Starting server", port=config.port)
    uvicorn.run("server.app:app", host="0.0.0.0", port=config.port, log_level=config.log_level.lower(), reload=False)


if __name__ == "__main__":
    main()
