import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from fastapi import FastAPI, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import Settings
from db import create_tables, make_engine, make_session_factory
from errors import ChatError
from generation import GeminiGenerator, Generator, make_client
from log import configure_logging, get_logger
from orchestrator import ChatOrchestrator
from prompts import SYSTEM_INSTRUCTION
from ratelimit import RateLimiter, build_rate_limiter, client_identity
from store import SessionStore

logger = get_logger(__name__)

ANONYMOUS_OWNER = "anonymous"


# Services
@dataclass
class Services:
    limiter: RateLimiter
    generator: Generator
    store: SessionStore
    orchestrator: ChatOrchestrator


def build_services(settings: Settings) -> Services:
    client = make_client(settings.require_api_key(), settings.generation_timeout_seconds)
    generator = GeminiGenerator(
        client,
        settings.gemini_model,
        timeout_seconds=settings.generation_timeout_seconds,
        system_instruction=SYSTEM_INSTRUCTION if settings.native_system_instruction else None,
    )

    engine = make_engine(settings.database_url)
    create_tables(engine)
    store = SessionStore(make_session_factory(engine))

    limiter = build_rate_limiter(
        settings.redis_url,
        settings.rate_limit_requests,
        settings.rate_limit_window_seconds,
    )
    orchestrator = ChatOrchestrator(
        limiter,
        generator,
        store,
        inject_system_instruction=not settings.native_system_instruction,
        expose_error_details=settings.expose_error_details,
    )
    return Services(limiter, generator, store, orchestrator)


# Models
class HistoryItem(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    message: str = ""
    history: list[HistoryItem] = Field(default_factory=list)
    sessionId: str | None = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def _error_body(message: str, details: str | None = None) -> dict:
    body = {"error": message}
    if details:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def handle_chat_error(request: Request, exc: ChatError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn("chat_error", status_code=exc.status_code, error_type=type(exc).__name__, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        logger.warning("malformed_request", errors=exc.errors())
        return JSONResponse(status_code=400, content=_error_body("Malformed request body."))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_error", error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content=_error_body("Internal error."))


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = build_services(settings)
        svc = app.state.services
        logger.info("startup", model=svc.generator.model, rate_limiter=svc.limiter.mode)
        yield
        await svc.limiter.close()

    app = FastAPI(lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request.headers.get("x-request-id") or uuid.uuid4().hex,
            path=request.url.path,
        )
        return await call_next(request)

    register_exception_handlers(app)

    # Routes
    @app.post("/api/chat")
    async def chat(
        body: ChatRequest,
        svc: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
        x_forwarded_for: str | None = Header(default=None),
        x_real_ip: str | None = Header(default=None),
    ):
        reply = await svc.orchestrator.handle(
            body.message,
            [item.model_dump() for item in body.history],
            session_id=body.sessionId,
            identity=client_identity(x_forwarded_for, x_real_ip),
            owner_id=x_user_id or ANONYMOUS_OWNER,
        )
        return {"result": reply.text, "sessionId": reply.session_id}

    @app.get("/api/history")
    def list_sessions(
        svc: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
    ):
        if not x_user_id:
            return []
        return [
            {"id": s.id, "title": s.title, "createdAt": s.created_at.isoformat()}
            for s in svc.store.list_sessions(x_user_id)
        ]

    @app.get("/api/history/{session_id}")
    def list_messages(session_id: str, svc: Services = Depends(get_services)):
        return [
            {"role": m.role, "content": m.content, "createdAt": m.created_at.isoformat()}
            for m in svc.store.list_messages(session_id)
        ]

    @app.get("/health")
    def health(svc: Services = Depends(get_services)):
        return {"status": "ok", "model": svc.generator.model, "rateLimiter": svc.limiter.mode}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
