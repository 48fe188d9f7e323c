import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .config import Settings, configure_logging, load_settings
from .audit import AuditAction
from .database import create_db_engine, create_session_factory, init_db
from .errors import (
    DuplicateSubmissionError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PointAdjustmentOutOfBoundsError,
    PointsEngineError,
    QuotaExceededError,
    ValidationError,
)
from .ingest import EventIngestor, verify_signature
from .models import (
    AuditEntry,
    BulkReviewRequest,
    BulkReviewResult,
    CorrectionRequest,
    CreateSubmissionRequest,
    EnsureUserRequest,
    EventStatus,
    ExternalEvent,
    IngestResult,
    LeaderboardRow,
    LedgerEntry,
    LedgerHistoryResponse,
    ReviewRequest,
    ReviewResult,
    Submission,
    SubmissionListResponse,
    SubmissionStatus,
    UpdateUserRequest,
    User,
    UserPoints,
)
from .service import PointsService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-kajabi-signature"
REPLAY_HEADER = "x-admin-replay"


def http_error(e: PointsEngineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, (DuplicateSubmissionError, InvalidStateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, QuotaExceededError):
        return HTTPException(
            status_code=422,
            detail={
                "message": str(e),
                "dimension": e.dimension,
                "attempted": e.attempted,
                "ceiling": e.ceiling,
            },
        )
    if isinstance(e, PointAdjustmentOutOfBoundsError):
        return HTTPException(
            status_code=422,
            detail={
                "message": str(e),
                "base_points": e.base_points,
                "point_override": e.point_override,
                "min_points": e.base_points - e.max_adjustment,
                "max_points": e.base_points + e.max_adjustment,
            },
        )
    if isinstance(e, ValidationError) and e.details:
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "errors": e.details},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def create_app(
    service: Optional[PointsService] = None,
    ingestor: Optional[EventIngestor] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or load_settings()
    engine = None
    if service is None or ingestor is None:
        engine = create_db_engine(settings.database_url)
        session_factory = create_session_factory(engine)
        service = service or PointsService(session_factory, settings=settings)
        ingestor = ingestor or EventIngestor(session_factory, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        if engine is not None:
            init_db(engine)
        yield

    app = FastAPI(
        title="LEAPS Points API",
        description="Submission review and append-only points ledger for the LEAPS programme",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"message": "Invalid request", "errors": jsonable_encoder(exc.errors())}},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "leaps-points"}

    # Users

    @app.post("/users", response_model=User, tags=["Users"])
    def ensure_user(request: EnsureUserRequest) -> User:
        try:
            return service.ensure_user(request.user_id, email=request.email, name=request.name)
        except PointsEngineError as e:
            raise http_error(e)

    @app.get("/users/{user_id}", response_model=User, tags=["Users"])
    def get_user(user_id: str) -> User:
        try:
            return service.get_user(user_id)
        except PointsEngineError as e:
            raise http_error(e)

    @app.patch("/users/{user_id}", response_model=User, tags=["Users"])
    def update_user(user_id: str, request: UpdateUserRequest) -> User:
        if request.role is None and request.is_ineligible is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
        try:
            user = None
            if request.role is not None:
                user = service.set_user_role(user_id, request.role, request.actor_id)
            if request.is_ineligible is not None:
                user = service.set_user_ineligible(user_id, request.is_ineligible, request.actor_id)
            return user
        except PointsEngineError as e:
            raise http_error(e)

    @app.get("/users/{user_id}/points", response_model=UserPoints, tags=["Users"])
    def get_user_points(user_id: str) -> UserPoints:
        return service.get_points(user_id)

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return service.get_ledger_history(user_id, limit, offset)

    @app.get("/leaderboard", response_model=list[LeaderboardRow], tags=["Users"])
    def get_leaderboard(limit: int = 20) -> list[LeaderboardRow]:
        return service.leaderboard(limit)

    # Submissions

    @app.post(
        "/submissions",
        response_model=Submission,
        status_code=status.HTTP_201_CREATED,
        tags=["Submissions"],
    )
    def create_submission(request: CreateSubmissionRequest) -> Submission:
        try:
            return service.create_submission(
                request.user_id,
                request.activity_code,
                request.payload,
                visibility=request.visibility,
                attachments=request.attachments,
            )
        except PointsEngineError as e:
            raise http_error(e)

    @app.get("/submissions", response_model=SubmissionListResponse, tags=["Submissions"])
    def list_submissions(
        status_filter: Optional[SubmissionStatus] = None,
        activity_code: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> SubmissionListResponse:
        try:
            return service.list_submissions(
                status=status_filter,
                activity_code=activity_code,
                user_id=user_id,
                limit=limit,
                offset=offset,
            )
        except PointsEngineError as e:
            raise http_error(e)

    @app.post("/submissions/bulk-review", response_model=BulkReviewResult, tags=["Review"])
    def bulk_review(request: BulkReviewRequest) -> BulkReviewResult:
        try:
            return service.bulk_review(
                request.submission_ids, request.reviewer_id, request.decision, note=request.note
            )
        except PointsEngineError as e:
            raise http_error(e)

    @app.get("/submissions/{submission_id}", response_model=Submission, tags=["Submissions"])
    def get_submission(submission_id: str) -> Submission:
        try:
            return service.get_submission(submission_id)
        except PointsEngineError as e:
            raise http_error(e)

    @app.post("/submissions/{submission_id}/review", response_model=ReviewResult, tags=["Review"])
    def review_submission(submission_id: str, request: ReviewRequest) -> ReviewResult:
        try:
            return service.review(
                submission_id,
                request.reviewer_id,
                request.decision,
                note=request.note,
                point_override=request.point_override,
            )
        except PointsEngineError as e:
            raise http_error(e)

    # Points

    @app.post(
        "/points/corrections",
        response_model=LedgerEntry,
        status_code=status.HTTP_201_CREATED,
        tags=["Points"],
    )
    def record_correction(request: CorrectionRequest) -> LedgerEntry:
        try:
            return service.record_correction(
                request.user_id, request.activity_code, request.delta, request.actor_id, request.reason
            )
        except PointsEngineError as e:
            raise http_error(e)

    @app.get("/audit/{target_id}", response_model=list[AuditEntry], tags=["Audit"])
    def get_audit_trail(target_id: str, action: Optional[AuditAction] = None) -> list[AuditEntry]:
        return service.get_audit_trail(target_id, action)

    # External events

    @app.post("/webhooks/kajabi", response_model=IngestResult, tags=["Webhooks"])
    async def kajabi_webhook(request: Request) -> IngestResult:
        body = await request.body()
        secret = settings.kajabi_webhook_secret
        if secret:
            if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
                logger.warning("Rejected Kajabi webhook: invalid signature")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
        elif not settings.allow_unsigned_webhooks:
            logger.warning("Rejected Kajabi webhook: no secret configured")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook secret not configured")

        try:
            payload = json.loads(body or b"null")
        except ValueError:
            logger.warning("Rejected Kajabi webhook: body is not JSON")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

        replay = request.headers.get(REPLAY_HEADER, "").strip().lower() == "true"
        max_skew = None if replay else settings.webhook_max_skew_seconds
        try:
            return await run_in_threadpool(ingestor.ingest, payload, max_skew)
        except ValidationError as e:
            logger.warning("Rejected Kajabi webhook: %s", e)
            raise http_error(e)
        except PointsEngineError as e:
            raise http_error(e)
        except Exception:
            logger.exception("Kajabi webhook processing failed")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Processing failed")

    @app.get("/events", response_model=list[ExternalEvent], tags=["Webhooks"])
    def list_events(status_filter: Optional[EventStatus] = None, limit: int = 50) -> list[ExternalEvent]:
        return ingestor.list_events(status=status_filter, limit=limit)

    @app.get("/events/{record_id}", response_model=ExternalEvent, tags=["Webhooks"])
    def get_event(record_id: str) -> ExternalEvent:
        try:
            return ingestor.get_event(record_id)
        except PointsEngineError as e:
            raise http_error(e)

    @app.post("/events/{record_id}/reprocess", response_model=IngestResult, tags=["Webhooks"])
    def reprocess_event(record_id: str, actor_id: Optional[str] = None) -> IngestResult:
        try:
            return ingestor.reprocess(record_id, actor_id=actor_id)
        except PointsEngineError as e:
            raise http_error(e)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
