import logging
import math
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .capability import Role, derive_role
from .channels import ChannelKind, channel_name
from .context import AppContext, raise_for, get_context
from .db import Settings, get_settings
from .errors import PermissionDenied, QuizLiveError, RateLimitExceeded, ValidationError
from .limits import get_realtime_limits
from .models import CapabilityToken, LiveSession, RealtimeLimits
from .schemas import (
    AnswerIn,
    CreateSessionIn,
    JoinIn,
    NextIn,
    PublicSessionOut,
    QuestionSummaryOut,
    SessionSummaryOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def require_teacher(x_role: Optional[str] = Header(default=None)):
    if derive_role(x_role) != Role.TEACHER:
        raise PermissionDenied("Only the teacher can do this")


def client_key(request: Request, client_id: Optional[str]) -> str:
    if client_id:
        return f"user:{client_id}"
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "unknown")
    return f"ip:{ip}"


def _public(s: LiveSession, ctx: AppContext) -> PublicSessionOut:
    monitor = ctx.monitors.get(s.id)
    if monitor is not None:
        state = monitor.state.label
    else:
        state = "ended" if s.status == "ended" else "idle"
    return PublicSessionOut(
        id=s.id,
        quiz_id=s.quiz_id,
        status=s.status,
        state=state,
        questions=s.questions,
        participant_count=len(s.participants),
    )


@router.get("/token-endpoint", response_model=CapabilityToken)
@router.get("/api/realtime/token", response_model=CapabilityToken)
async def issue_token(
    request: Request,
    session_id: str = Query(default="*", alias="sessionId"),
    x_role: Optional[str] = Header(default=None),
    x_client_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    ctx.token_limiter.hit(client_key(request, x_client_id))
    role = derive_role(x_role)
    return ctx.transport.create_token(role, client_id=x_client_id, session_id=session_id or "*")


@router.get("/api/limits/{plan}", response_model=RealtimeLimits)
async def realtime_limits(plan: str):
    return get_realtime_limits(plan)


@router.post("/api/session", response_model=PublicSessionOut, dependencies=[Depends(require_teacher)])
async def create_session(payload: CreateSessionIn, ctx: AppContext = Depends(get_context)):
    s = await ctx.sessions.create(
        payload.teacher_id, payload.quiz_id, payload.questions, plan=payload.plan, session_id=payload.session_id
    )
    try:
        await ctx.open_monitor(s)
    except QuizLiveError:
        await ctx.sessions.discard(s.id)
        raise
    return _public(s, ctx)


@router.get("/api/session/{session_id}", response_model=PublicSessionOut)
async def get_session(session_id: str, ctx: AppContext = Depends(get_context)):
    s = await ctx.sessions.require(session_id)
    return _public(s, ctx)


@router.post("/api/session/{session_id}/join")
async def join(session_id: str, payload: JoinIn, ctx: AppContext = Depends(get_context)):
    client_id = payload.client_id or f"{Role.STUDENT.value}-{uuid.uuid4().hex[:12]}"
    s = await ctx.sessions.join(session_id, client_id)
    token = ctx.transport.create_token(Role.STUDENT, client_id=client_id, session_id=session_id)
    return {"token": token.wire(), "session": _public(s, ctx).wire()}


@router.post("/api/session/{session_id}/start", dependencies=[Depends(require_teacher)])
async def start(session_id: str, ctx: AppContext = Depends(get_context)):
    await ctx.sessions.touch(session_id)
    monitor = ctx.monitor(session_id)
    raise_for(await monitor.start())
    return {"ok": True, "state": monitor.state.label}


@router.post("/api/session/{session_id}/next", dependencies=[Depends(require_teacher)])
async def next_question(session_id: str, payload: NextIn, ctx: AppContext = Depends(get_context)):
    await ctx.sessions.touch(session_id)
    monitor = ctx.monitor(session_id)
    raise_for(await monitor.next_question(payload.question_id))
    return {"ok": True, "state": monitor.state.label}


@router.post("/api/session/{session_id}/end", dependencies=[Depends(require_teacher)])
async def end(session_id: str, ctx: AppContext = Depends(get_context)):
    monitor = ctx.monitor(session_id)
    raise_for(await monitor.end())
    state = monitor.state.label
    await ctx.sessions.end(session_id)
    return {"ok": True, "state": state}


@router.post("/api/session/{session_id}/answer")
async def answer(session_id: str, payload: AnswerIn, request: Request, ctx: AppContext = Depends(get_context)):
    ctx.answer_limiter.hit(client_key(request, payload.client_id))
    s = await ctx.sessions.touch(session_id)
    if s.status != "active":
        raise ValidationError("Session is not accepting answers")
    if payload.client_id not in s.participants:
        raise PermissionDenied("Only participants of this session can answer")
    message = await ctx.publish_answer(session_id, payload.client_id, payload.question_id, payload.answer)
    return {"accepted": True, "seq": message.seq, "counted": payload.question_id in s.question_ids}


@router.get("/api/session/{session_id}/events")
async def list_events(
    session_id: str,
    channel: ChannelKind = ChannelKind.CONTROL,
    after: int | None = None,
    limit: int | None = None,
    ctx: AppContext = Depends(get_context),
):
    await ctx.sessions.require(session_id)
    name = channel_name(session_id, channel)
    events = await ctx.history.list(name, after=after, limit=limit or ctx.settings.HISTORY_LIMIT)
    latest_seq = events[-1]["seq"] if events else after
    return {"channel": name, "events": events, "latest_seq": latest_seq}


@router.get("/api/session/{session_id}/summary", response_model=SessionSummaryOut)
async def summary(session_id: str, ctx: AppContext = Depends(get_context)):
    await ctx.sessions.require(session_id)
    monitor = ctx.monitor(session_id)
    agg = monitor.aggregator
    return SessionSummaryOut(
        session_id=session_id,
        state=monitor.state.label,
        total_answers=agg.total,
        questions=[
            QuestionSummaryOut(
                question_id=qid,
                count=agg.count_for(qid),
                respondents=agg.respondents_for(qid),
                distribution=agg.distribution(qid),
            )
            for qid in monitor.state_machine.question_ids
        ],
        participants=monitor.participants,
    )


@router.get("/api/health")
async def health(ctx: AppContext = Depends(get_context)):
    return {
        "status": "ok",
        "realtime": "configured" if ctx.settings.API_KEY else "missing API_KEY",
        "live_sessions": len(ctx.monitors),
    }


async def handle_quizlive_error(request: Request, exc: QuizLiveError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    body = {"error": exc.message}
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        body["retryAfterMs"] = exc.retry_after_ms
        headers["Retry-After"] = str(math.ceil(exc.retry_after_ms / 1000))
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    context = AppContext(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.API_KEY:
            logger.warning("API_KEY is not set; token requests will fail until it is configured")
        yield
        await context.shutdown()

    app = FastAPI(title="QuizLive API", lifespan=lifespan)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(QuizLiveError, handle_quizlive_error)
    app.include_router(router)
    return app


app = create_app()
