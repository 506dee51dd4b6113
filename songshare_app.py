from __future__ import annotations
import asyncio
import hashlib
import hmac
import logging
import os
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request as FastAPIRequest
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy import (
    Column, DateTime, Index, Integer, String, Text, UniqueConstraint, create_engine,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from bot.link_bot import (
    FallbackResolver,
    LinkBot,
    LinkResolver,
    SharedSongIn,
    SlackClient,
)

# =====================================
# Config
# =====================================
DB_URL = os.getenv("SONGSHARE_DB_URL", "sqlite:///./songshare.db")

SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET", "")
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")

# Token for the reporting endpoints.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

# Slack rejects anything older than five minutes; mirror that window.
SLACK_SIGNATURE_MAX_AGE_SECONDS = 300
SLACK_SIGNATURE_VERSION = "v0"

API_VERSION = "0.1.0"

logger = logging.getLogger(__name__)

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =====================================
# Models
# =====================================
class SharedSong(Base):
    __tablename__ = "shared_songs"
    id = Column(Integer, primary_key=True)
    original_url = Column(Text, nullable=False)
    songlink_url = Column(Text)
    youtube_url = Column(Text)
    title = Column(String)
    shared_by = Column(String, nullable=False)  # Slack user ID
    channel = Column(String, nullable=False)  # Slack channel ID
    message_ts = Column(String, nullable=False)
    shared_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("channel", "message_ts", "original_url", name="uq_shared_song_message_url"),
        Index("idx_shared_songs_shared_at", "shared_at"),
        Index("idx_shared_songs_channel", "channel"),
        Index("idx_shared_songs_shared_by", "shared_by"),
    )

# =====================================
# DB bootstrap
# =====================================
Base.metadata.create_all(bind=engine)


class SqlShareStore:
    """Persist shares with insert-if-absent semantics on the natural key."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def record(self, song: SharedSongIn, *, shared_at: Optional[datetime] = None) -> None:
        """Insert one share; duplicates and database errors never propagate.

        Dependencies: Opens a short-lived SQLAlchemy ``Session`` from the
        configured factory and relies on the ``uq_shared_song_message_url``
        constraint to reject replays.
        Code customers: ``LinkBot`` after every successful or fallback
        resolution, and the history backfill script.
        Used variables/origin: ``song`` carries the Slack channel, message ts
        and original URL that form the natural key; ``shared_at`` defaults to
        the current UTC time.
        """

        db = self._session_factory()
        try:
            row = SharedSong(
                original_url=song.original_url,
                songlink_url=song.songlink_url,
                youtube_url=song.youtube_url,
                title=song.title,
                shared_by=song.shared_by,
                channel=song.channel,
                message_ts=song.message_ts,
            )
            if shared_at is not None:
                row.shared_at = shared_at
            db.add(row)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug(
                "Share already recorded for %s/%s %s", song.channel, song.message_ts, song.original_url
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to record share %s in %s", song.original_url, song.channel)
        finally:
            db.close()


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =====================================
# Slack request verification
# =====================================
def verify_slack_signature(
    secret: str,
    timestamp: str,
    body: bytes,
    provided: str,
    *,
    now: Optional[float] = None,
) -> bool:
    """Validate the ``X-Slack-Signature`` header for a raw request body.

    Dependencies: Uses the standard library ``hmac`` and ``hashlib`` modules to
    recompute Slack's v0 signature.
    Code customers: ``slack_events`` calls this before reading the payload.
    Used variables/origin: ``timestamp`` comes from
    ``X-Slack-Request-Timestamp``; requests further than
    ``SLACK_SIGNATURE_MAX_AGE_SECONDS`` from ``now`` are rejected even when the
    digest matches.
    """

    if not secret or not timestamp or not provided:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > SLACK_SIGNATURE_MAX_AGE_SECONDS:
        return False
    basestring = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), msg=basestring, digestmod=hashlib.sha256)
    expected = f"{SLACK_SIGNATURE_VERSION}={digest.hexdigest()}"
    return hmac.compare_digest(expected, provided)


# =====================================
# Schemas
# =====================================
class SlackMessageEvent(BaseModel):
    type: str
    channel: Optional[str] = None
    user: Optional[str] = None
    text: Optional[str] = None
    ts: Optional[str] = None
    thread_ts: Optional[str] = None
    bot_id: Optional[str] = None
    subtype: Optional[str] = None


class SlackEventEnvelope(BaseModel):
    type: str
    challenge: Optional[str] = None
    # Other event types carry objects where messages carry ids; only messages are validated.
    event: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = None


class SharedSongOut(BaseModel):
    id: int
    original_url: str
    songlink_url: Optional[str] = None
    youtube_url: Optional[str] = None
    title: Optional[str] = None
    shared_by: str
    channel: str
    message_ts: str
    shared_at: datetime

    class Config:
        from_attributes = True


def message_event(raw: Optional[Dict[str, Any]]) -> Optional[SlackMessageEvent]:
    if not raw or raw.get("type") != "message":
        return None
    try:
        return SlackMessageEvent.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring message event with unexpected shape (subtype %s)", raw.get("subtype"))
        return None


def is_user_message(event: Optional[SlackMessageEvent]) -> bool:
    if event is None or event.type != "message":
        return False
    if event.bot_id is not None or event.subtype == "bot_message":
        return False
    return event.channel is not None and event.ts is not None


# =====================================
# Background dispatch
# =====================================
TaskFactory = Callable[[Awaitable[Any]], "asyncio.Task[Any]"]

_background_tasks: set[asyncio.Task[Any]] = set()
_dispatch_task_factory: TaskFactory = asyncio.create_task


def _on_dispatch_done(task: "asyncio.Task[Any]") -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("Link dispatch task was cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Link dispatch task failed", exc_info=exc)


async def run_link_bot(event: SlackMessageEvent) -> int:
    """Run the link pipeline for one message with a fresh HTTP session."""

    async with aiohttp.ClientSession() as session:
        bot = LinkBot(
            resolver=LinkResolver(session),
            fallback=FallbackResolver(session),
            slack=SlackClient(session, SLACK_BOT_TOKEN),
            store=SqlShareStore(),
        )
        handled = await bot.handle_message(event)
    logger.info("Handled %s music link(s) from %s in %s", handled, event.user, event.channel)
    return handled


def schedule_dispatch(event: SlackMessageEvent) -> None:
    task = _dispatch_task_factory(run_link_bot(event))
    _background_tasks.add(task)
    task.add_done_callback(_on_dispatch_done)


# =====================================
# FastAPI app and deps
# =====================================
app = FastAPI(title="Song Share Slack Responder", version=API_VERSION)


def require_token(x_admin_token: Optional[str] = Header(None)) -> None:
    if not x_admin_token or not secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="invalid admin token")


# =====================================
# Routes: Slack
# =====================================
@app.post("/slack/events", name="slack_events")
async def slack_events(request: FastAPIRequest):
    """Handle Slack Events API URL verification and message callbacks.

    Dependencies: Validates the v0 HMAC signature via
    ``verify_slack_signature`` before touching the payload and hands matching
    messages to ``schedule_dispatch``.
    Code customers: Slack's Events API delivery, which expects an answer well
    within three seconds and retries otherwise.
    Used variables/origin: Reads ``X-Slack-Request-Timestamp``,
    ``X-Slack-Signature`` and ``X-Slack-Retry-Reason`` headers plus the raw
    JSON body.
    """

    body = await request.body()
    headers = request.headers
    timestamp = headers.get("X-Slack-Request-Timestamp") or ""
    signature = headers.get("X-Slack-Signature") or ""

    if not SLACK_SIGNING_SECRET:
        logger.error("SLACK_SIGNING_SECRET is not configured; rejecting Slack event")
    if not verify_slack_signature(SLACK_SIGNING_SECRET, timestamp, body, signature):
        logger.warning("Slack signature verification failed")
        return PlainTextResponse("Invalid signature", status_code=401)

    try:
        envelope = SlackEventEnvelope.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="invalid event payload")

    if envelope.type == "url_verification":
        return JSONResponse({"challenge": envelope.challenge})

    if envelope.type != "event_callback":
        return PlainTextResponse("OK")
    event = message_event(envelope.event)
    if not is_user_message(event):
        return PlainTextResponse("OK")

    retry_reason = headers.get("X-Slack-Retry-Reason")
    if retry_reason == "http_timeout":
        logger.info(
            "Skipping Slack retry %s (%s) for %s",
            headers.get("X-Slack-Retry-Num"),
            retry_reason,
            envelope.event_id,
        )
        return PlainTextResponse("OK")

    schedule_dispatch(event)
    return PlainTextResponse("OK")


# =====================================
# Routes: Shares
# =====================================
@app.get("/shares", response_model=List[SharedSongOut], dependencies=[Depends(require_token)])
def list_shares(
    channel: Optional[str] = None,
    shared_by: Optional[str] = None,
    since: Optional[str] = None,
    with_video: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    q = db.query(SharedSong)
    if channel:
        q = q.filter(SharedSong.channel == channel)
    if shared_by:
        q = q.filter(SharedSong.shared_by == shared_by)
    if since:
        try:
            dt = datetime.fromisoformat(since)
        except ValueError:
            raise HTTPException(400, detail="invalid since timestamp")
        q = q.filter(SharedSong.shared_at >= dt)
    if with_video:
        q = q.filter(SharedSong.youtube_url.is_not(None))
    return q.order_by(SharedSong.shared_at.desc(), SharedSong.id.desc()).limit(limit).all()


def recent_videos(db: Session, days: int = 7) -> List[Dict[str, Optional[str]]]:
    """Return recent shares that carry a YouTube link, oldest first."""

    cutoff = _utcnow() - timedelta(days=days)
    rows = (
        db.query(SharedSong)
        .filter(SharedSong.shared_at > cutoff, SharedSong.youtube_url.is_not(None))
        .order_by(SharedSong.shared_at.asc(), SharedSong.id.asc())
        .all()
    )
    return [{"youtube_url": row.youtube_url, "title": row.title} for row in rows]


# =====================================
# Routes: System
# =====================================
@app.get("/system/health")
def system_health():
    return {"status": "ok", "version": API_VERSION}


# ---- entry ----
def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "7070")))


if __name__ == "__main__":
    main()
