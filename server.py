"""
server.py — Cogniflux · FastAPI Chat Service
============================================
HTTP front door for the Cogniflux chat client.  Every chat message carries
the interaction signals the browser observed; the server turns them into a
cognitive state (live_memory.py), asks the LLM for an adapted reply and
ships the exchange to Datadog and Confluent in the background.

Endpoints
---------
  POST /api/chat      message + signals → adapted reply + cognitive state
  POST /api/speak     reply text + state → base64 MPEG audio
  POST /api/report    chat history → Markdown "Cognitive Journey Report"
  GET  /health        Service liveness + configured integrations
  GET  /config        Current runtime config
  PUT  /config        Deep-merge a partial config patch
  WS   /ws/logs       Real-time server log stream

Failure policy
--------------
/api/chat never surfaces an error to the user: a malformed body or an LLM
failure returns a generic reply and a neutral cognitive state with HTTP 200.
Telemetry and event publishing run after the response is sent and swallow
their own errors.

Vendor clients are built once per app in `create_app()` and reached through
`app.state.services`; run with `uvicorn server:app`.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Set

from dotenv import load_dotenv
from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from config import DEFAULT_CONFIG_PATH, CognifluxConfig, Credentials
from events import CognitiveEventPublisher
from live_memory import CognitiveState, compute_live_memory, fallback_state
from llm import CompletionClient, CompletionError
from prompts import resolve_persona
from telemetry import DatadogTelemetry
from voice import MissingCredentialsError, SpeechClient, SpeechSynthesisError

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket log broadcaster (defined early — referenced by logging handler)
# ---------------------------------------------------------------------------

LOG_HISTORY_SIZE = 500


class LogBroadcaster:
    """Fan-out hub for real-time log events to all connected WebSocket clients."""
    def __init__(self, history_size: int = LOG_HISTORY_SIZE) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners
        self._history_size = history_size

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > self._history_size:
            self._history = self._history[-self._history_size:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every server log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "source": "server",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
            loop.call_soon_threadsafe(self._schedule, loop, event)
        except RuntimeError:
            pass  # no event loop yet during startup

    @staticmethod
    def _schedule(loop: asyncio.AbstractEventLoop, event: dict) -> None:
        task = loop.create_task(broadcaster.broadcast(event))
        _pending_broadcasts.add(task)
        task.add_done_callback(_pending_broadcasts.discard)


# Strong refs so in-flight broadcast tasks are not garbage-collected
_pending_broadcasts: Set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT  = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"
LOG_DATEFMT = "%H:%M:%S"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("COGNIFLUX_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
)
log = logging.getLogger("cogniflux.server")

# Attach WS broadcast handler AFTER basicConfig has run
_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
logging.root.addHandler(_ws_handler)

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("COGNIFLUX_CONFIG", DEFAULT_CONFIG_PATH)

FALLBACK_REPLY = "I'm having trouble responding right now, but I'm still adapting to your needs."


# ---------------------------------------------------------------------------
# Vendor clients
# ---------------------------------------------------------------------------

@dataclass
class ChatServices:
    llm:       CompletionClient
    speech:    SpeechClient
    telemetry: DatadogTelemetry
    events:    CognitiveEventPublisher

    @classmethod
    def build(cls, config: CognifluxConfig, credentials: Credentials) -> "ChatServices":
        return cls(
            llm=CompletionClient(credentials.groq_api_key, config.groq),
            speech=SpeechClient(credentials.elevenlabs_api_key, config.elevenlabs),
            telemetry=DatadogTelemetry(
                credentials.datadog_api_key,
                config.datadog,
                site=credentials.datadog_site,
            ),
            events=CognitiveEventPublisher(
                config.confluent,
                rest_endpoint=credentials.confluent_rest_endpoint,
                cluster_id=credentials.confluent_cluster_id,
                api_key=credentials.confluent_api_key,
                api_secret=credentials.confluent_api_secret,
            ),
        )

    def apply_config(self, config: CognifluxConfig) -> None:
        """Point every client at its section of a freshly validated config."""
        self.llm.config = config.groq
        self.speech.config = config.elevenlabs
        self.telemetry.config = config.datadog
        self.events.config = config.confluent

    def integrations(self) -> dict[str, bool]:
        return {
            "groq":       self.llm.configured,
            "elevenlabs": self.speech.configured,
            "datadog":    self.telemetry.configured,
            "confluent":  self.events.configured,
        }

    async def aclose(self) -> None:
        results = await asyncio.gather(
            self.llm.close(),
            self.speech.close(),
            self.telemetry.close(),
            self.events.close(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                log.warning("event=client_close_error error=%s", result)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message:  str
    signals:  Optional[list[str]] = None
    image:    Optional[str] = None     # base64 JPEG, no data: prefix
    persona:  Optional[str] = None


class SpeakRequest(BaseModel):
    text:     Optional[str] = None
    memory:   Optional[CognitiveState] = None
    persona:  Optional[str] = None


class ReportMessage(BaseModel):
    role: str
    text: str


class ReportRequest(BaseModel):
    messages: Optional[list[ReportMessage]] = None


def _chat_fallback() -> JSONResponse:
    return JSONResponse({"reply": FALLBACK_REPLY, "memory": fallback_state().to_wire()})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

router = APIRouter()


@router.post("/api/chat")
async def chat(request: Request, background: BackgroundTasks) -> JSONResponse:
    """
    Adaptive chat turn.

    Request:
        { "message": "...", "signals": ["rephrase", ...],
          "image": "<base64 jpeg>", "persona": "atlas" | "sage" | "cipher" }

    Response:
        { "reply": "...",
          "memory": { "confusionScore": ..., "userLevel": ..., "detectedSignals": [...] } }
    """
    started  = time.perf_counter()
    services: ChatServices = request.app.state.services
    config:   CognifluxConfig = request.app.state.config

    try:
        body = ChatRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        log.warning("event=chat_bad_request error=%s", exc)
        background.add_task(services.telemetry.send_failure, "bad_request")
        return _chat_fallback()

    state = compute_live_memory(body.signals or [])
    log.info(
        "event=live_memory confusion=%s level=%s signals=%d",
        state.confusion_score, state.user_level, len(state.detected_signals),
    )
    background.add_task(services.events.publish, state, body.message)

    persona = resolve_persona(body.persona, config.default_persona)
    try:
        reply = await services.llm.generate_reply(body.message, state, persona, body.image)
    except CompletionError as exc:
        log.error("event=chat_completion_failed persona=%s error=%s", persona.key, exc)
        background.add_task(services.telemetry.send_failure, "completion")
        return _chat_fallback()
    except Exception as exc:
        log.error("event=chat_failed persona=%s error=%s", persona.key, exc, exc_info=True)
        background.add_task(services.telemetry.send_failure, "internal")
        return _chat_fallback()

    elapsed_ms = (time.perf_counter() - started) * 1000.0
    model = config.groq.vision_model if body.image else config.groq.model
    background.add_task(services.telemetry.send, state, body.message, elapsed_ms, model)

    log.info("event=chat_reply persona=%s len=%d duration_ms=%.0f", persona.key, len(reply), elapsed_ms)
    return JSONResponse({"reply": reply, "memory": state.to_wire()})


@router.post("/api/speak")
async def speak(request: Request) -> JSONResponse:
    """
    Text-to-speech for a chat reply.  Voice follows the persona; voice
    settings follow the cognitive state in `memory`.

        { "text": "...", "memory": {...}, "persona": "sage" }  →  { "audio": "<base64>" }
    """
    services: ChatServices = request.app.state.services

    try:
        body = SpeakRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        log.warning("event=speak_bad_request error=%s", exc)
        return JSONResponse({"error": "Invalid request body"}, status_code=status.HTTP_400_BAD_REQUEST)

    if not body.text:
        return JSONResponse({"error": "Text is required"}, status_code=status.HTTP_400_BAD_REQUEST)

    try:
        audio = await services.speech.synthesize(body.text, body.memory, body.persona)
    except MissingCredentialsError:
        return JSONResponse({"error": "API Key missing"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    except SpeechSynthesisError as exc:
        return JSONResponse({"error": "Failed to generate speech"}, status_code=exc.status_code)
    except Exception as exc:
        log.error("event=speak_failed error=%s", exc, exc_info=True)
        return JSONResponse({"error": "Internal Server Error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return JSONResponse({"audio": base64.b64encode(audio).decode("ascii")})


@router.post("/api/report")
async def report(request: Request) -> JSONResponse:
    """Generate a Markdown "Cognitive Journey Report" from the chat history."""
    services: ChatServices = request.app.state.services

    try:
        body = ReportRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        log.warning("event=report_bad_request error=%s", exc)
        return JSONResponse({"error": "Invalid request body"}, status_code=status.HTTP_400_BAD_REQUEST)

    if not body.messages:
        return JSONResponse(
            {"report": "No conversation history to analyze."},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    try:
        text = await services.llm.generate_session_report([m.model_dump() for m in body.messages])
    except Exception as exc:
        log.error("event=report_failed messages=%d error=%s", len(body.messages), exc)
        return JSONResponse({"error": "Failed to generate report"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    log.info("event=report_generated messages=%d len=%d", len(body.messages), len(text))
    return JSONResponse({"report": text})


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Liveness probe."""
    services: ChatServices = request.app.state.services
    return JSONResponse({
        "status":       "ok",
        "integrations": services.integrations(),
    })


@router.get("/config")
async def get_config(request: Request) -> JSONResponse:
    config: CognifluxConfig = request.app.state.config
    return JSONResponse(config.model_dump())


@router.put("/config")
async def put_config(request: Request) -> JSONResponse:
    """
    Deep-merge a partial config and apply it to the live clients.

        { "groq": { "temperature": 0.4 } }
    """
    try:
        patch = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")

    current: CognifluxConfig = request.app.state.config
    try:
        updated = current.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=json.loads(exc.json()),
        ) from exc

    try:
        updated.save(request.app.state.config_path)
    except OSError as exc:
        log.error("event=config_save_failed path=%s error=%s", request.app.state.config_path, exc)
        raise HTTPException(status_code=500, detail="Failed to persist config.") from exc

    request.app.state.config = updated
    request.app.state.services.apply_config(updated)
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return JSONResponse(updated.model_dump())


@router.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Real-time log stream.  Sends every server log event as a JSON object:
    {
      "source": "server",
      "level":  "INFO" | "WARNING" | "ERROR" | ...,
      "logger": "<logger name>",
      "msg":    "<formatted line>",
      "ts":     <unix float>
    }
    """
    await broadcaster.connect(ws)
    log.info("event=ws_log_client_connected remote=%s", ws.client)
    try:
        while True:
            # Keep the connection alive; we only send, never receive
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)
        log.info("event=ws_log_client_disconnected remote=%s", ws.client)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[CognifluxConfig] = None,
    services: Optional[ChatServices] = None,
    config_path: str = CONFIG_PATH,
) -> FastAPI:
    """Build the app with its config and vendor clients attached to `app.state`."""
    config = config or CognifluxConfig.load(config_path)
    services = services or ChatServices.build(config, Credentials.from_env())

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info(
            "event=server_start integrations=%s",
            ",".join(k for k, v in services.integrations().items() if v) or "none",
        )
        yield
        log.info("event=server_shutdown")
        await services.aclose()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Cogniflux",
        version="1.0.0",
        description="Adaptive chat backed by a live cognitive memory",
        lifespan=_lifespan,
    )
    app.state.config = config
    app.state.config_path = config_path
    app.state.services = services

    # Browser client is served from a different origin in development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()
