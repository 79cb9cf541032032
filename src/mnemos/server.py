import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mnemos.application.study_service import StudyService
from mnemos.consts import VERSION
from mnemos.domain.errors import MnemosError
from mnemos.domain.models import DeckSelector
from mnemos.domain.stats.models import AnalyticsWindow, Classification

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("mnemos.server")

ERROR_STATUS = {
    "invalid_rating": 422,
    "unknown_card": 404,
    "unknown_learner": 404,
    "unknown_subject": 404,
    "unknown_deck": 404,
    "session_not_found": 404,
    "card_not_in_session": 409,
    "duplicate_rating": 409,
    "invalid_subject_path": 422,
    "concurrent_rating_conflict": 503,
    "duplicate_flag": 409,
    "invalid_flag": 422,
}

_service: StudyService | None = None


def get_service() -> StudyService:
    """Lazily wire the study service from the resolved configuration."""
    global _service
    if _service is None:
        from mnemos.application.config import resolve_config
        from mnemos.application.factory import build_study_service

        _service = build_study_service(resolve_config())
    return _service


def set_service(service: StudyService | None) -> None:
    global _service
    _service = service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"mnemos server v{VERSION} starting up...")
    yield
    # Shutdown
    logger.info("mnemos server shutting down...")


app = FastAPI(
    title="mnemos",
    description="Spaced-repetition study core: sessions, ratings, deck membership, analytics.",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(MnemosError)
async def mnemos_error_handler(request: Request, exc: MnemosError):
    status = ERROR_STATUS.get(exc.code, 400)
    if status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=status, content={"error": exc.code, "message": exc.message})


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


start_time = time.time()


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Simple health check to verify server is reachable.
    """
    return HealthResponse(status="ok", version=VERSION, uptime_seconds=time.time() - start_time)


@app.get("/version")
async def get_version():
    return {"version": VERSION}


class CardViewResponse(BaseModel):
    card_id: str
    front: str
    back: str
    subject_label: str | None
    state: str
    due_at: datetime | None
    presented_version: int


class NextCardsResponse(BaseModel):
    session_token: str
    cards: list[CardViewResponse]
    limit_reached: bool


@app.get("/learners/{learner_id}/next-cards", response_model=NextCardsResponse)
async def next_cards(
    learner_id: str,
    deck: list[str] = Query(default=[]),
    subject: list[str] = Query(default=[]),
    service: StudyService = Depends(get_service),
):
    """
    Build a session for the learner. Repeat deck/subject to select several.
    """
    result = await service.next_cards(learner_id, DeckSelector.of(deck, subject))
    return NextCardsResponse(
        session_token=result.session_token,
        cards=[
            CardViewResponse(
                card_id=v.card_id,
                front=v.front,
                back=v.back,
                subject_label=v.subject_label,
                state=v.state.value,
                due_at=v.due_at,
                presented_version=v.presented_version,
            )
            for v in result.cards
        ],
        limit_reached=result.limit_reached,
    )


class RatingRequest(BaseModel):
    learner_id: str
    card_id: str
    # Validated by the service so the error body matches every other failure.
    rating: str | int
    session_token: str
    presented_version: int | None = None


class RatingReceiptResponse(BaseModel):
    card_id: str
    new_due_at: datetime | None
    state: str | None
    session_continues: bool
    limit_reached: bool
    accepted: bool
    streak_milestones: list[int] = []


@app.post("/ratings", response_model=RatingReceiptResponse)
async def submit_rating(req: RatingRequest, service: StudyService = Depends(get_service)):
    receipt = await service.submit_rating(
        req.learner_id,
        req.card_id,
        req.rating,
        req.session_token,
        presented_version=req.presented_version,
    )
    return RatingReceiptResponse(
        card_id=receipt.card_id,
        new_due_at=receipt.new_due_at,
        state=receipt.state.value if receipt.state else None,
        session_continues=receipt.session_continues,
        limit_reached=receipt.limit_reached,
        accepted=receipt.accepted,
        streak_milestones=list(receipt.streak_milestones),
    )


@app.delete("/sessions/{session_token}", status_code=204)
async def end_session(session_token: str, service: StudyService = Depends(get_service)):
    """Retire a session so its token can no longer take ratings."""
    service.end_session(session_token)
    return Response(status_code=204)


class FlagRequest(BaseModel):
    learner_id: str
    # Unrecognised reasons are filed as "other"
    reason: str = "other"
    comment: str | None = None


class FlagReceiptResponse(BaseModel):
    flag_id: str
    card_id: str
    flag_count: int
    held: bool


@app.post("/cards/{card_id}/flags", response_model=FlagReceiptResponse, status_code=201)
async def flag_card(card_id: str, req: FlagRequest, service: StudyService = Depends(get_service)):
    receipt = await service.flag_card(req.learner_id, card_id, req.reason, req.comment)
    return FlagReceiptResponse(
        flag_id=receipt.flag_id,
        card_id=receipt.card_id,
        flag_count=receipt.flag_count,
        held=receipt.held,
    )


class StreakResponse(BaseModel):
    learner_id: str
    current: int
    longest: int
    last_active_day: date | None
    active: bool
    next_milestone: int | None
    milestones: list[int]


@app.get("/learners/{learner_id}/streak", response_model=StreakResponse)
async def learner_streak(learner_id: str, service: StudyService = Depends(get_service)):
    s = await service.streak(learner_id)
    return StreakResponse(
        learner_id=s.learner_id,
        current=s.current,
        longest=s.longest,
        last_active_day=s.last_active_day,
        active=s.active,
        next_milestone=s.next_milestone,
        milestones=list(s.milestones),
    )


@app.post("/subjects/{subject_id}/resolve")
async def resolve_subject(subject_id: str, service: StudyService = Depends(get_service)):
    """Force a recompute of one subject's deck membership."""
    cards = service.resolve_deck(subject_id)
    return {"subject_id": subject_id, "card_ids": sorted(cards)}


@app.get("/analytics/problem-scores")
async def problem_scores(
    start: datetime | None = None,
    end: datetime | None = None,
    classification: Classification | None = None,
    limit: int | None = Query(default=None, ge=1),
    service: StudyService = Depends(get_service),
):
    scores = await service.problem_scores(AnalyticsWindow(start, end), classification, limit)
    return {
        s.card_id: {
            "lapse_rate": s.lapse_rate,
            "avg_ease_drift": s.avg_ease_drift,
            "success_rate_stddev": s.success_rate_stddev,
            "classification": s.classification.value,
            "severity": s.severity.value,
            "problem_score": s.problem_score,
            "total_ratings": s.total_ratings,
        }
        for s in scores
    }
