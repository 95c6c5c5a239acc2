import json
import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy import func, or_, text
from sqlalchemy.orm import Session

from quizdesk.config import get_settings
from quizdesk.context import RequestContext, get_request_context
from quizdesk.database import Base, engine, get_db
from quizdesk.errors import (
    GenerationError,
    NotFoundFailure,
    QuizDeskError,
    RateLimitFailure,
    StateFailure,
    ValidationFailure,
)
from quizdesk.models import (
    SESSION_SUBMITTED,
    Answer,
    Bookmark,
    Question,
    QuestionExplanation,
    Quiz,
    QuizQuestion,
    QuizSession,
    SuggestionCache,
    SuggestionRegeneration,
    User,
    utcnow,
)
from quizdesk.schemas import (
    AdminQuizListResponse,
    AdminQuizOut,
    BookmarkRequest,
    BookmarkResponse,
    BulkInsertRequest,
    BulkInsertResponse,
    DetectDuplicatesRequest,
    DetectDuplicatesResponse,
    ExplanationRequest,
    ExplanationResponse,
    PracticeSuggestionsResponse,
    QuestionIn,
    QuestionListResponse,
    QuestionOut,
    QuestionRowIn,
    QuestionUpdateIn,
    QuizIn,
    QuizListResponse,
    ResultsResponse,
    RoleUpdateRequest,
    SaveAnswerRequest,
    SaveAnswerResponse,
    SaveStateRequest,
    SaveStateResponse,
    SessionDetailResponse,
    SessionListResponse,
    SessionRef,
    SessionStateOut,
    StartQuizRequest,
    SubmitResponse,
    SuggestionsResponse,
    SuspendRequest,
    UploadReport,
    UserListResponse,
    UserOut,
)
from quizdesk.services import (
    SuggestionService,
    compute_performance,
    default_recommendations,
    performance_hash,
    practice_suggestions,
)
from quizdesk.sessions import QuizSessionManager
from quizdesk.uploads import UploadPipeline, build_template, normalize_question_text, normalize_row, validate_row

settings = get_settings()
app = FastAPI(title="QuizDesk")
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)
service = SuggestionService()

Base.metadata.create_all(bind=engine)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@app.exception_handler(QuizDeskError)
def handle_quizdesk_error(request: Request, exc: QuizDeskError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": jsonable_encoder(exc.to_dict())})


@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "validation_error",
                "message": "Request failed validation",
                "details": jsonable_encoder(exc.errors()),
            }
        },
    )


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


# Quiz catalogue and sessions


@app.get("/api/quiz/list", response_model=QuizListResponse)
def list_quizzes(
    category: Optional[str] = None,
    difficulty: Optional[str] = None,
    search: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    criteria = [Quiz.is_active.is_(True)]
    if category:
        criteria.append(func.lower(Quiz.category) == category.strip().lower())
    if difficulty and difficulty != "mixed":
        criteria.append(Quiz.difficulty == difficulty)
    if search:
        pattern = f"%{search.strip()}%"
        criteria.append(or_(Quiz.title.ilike(pattern), Quiz.description.ilike(pattern)))
    quizzes = ctx.repo.find(Quiz, *criteria, order_by=Quiz.created_at.desc())

    counts = dict(
        ctx.repo.read(
            lambda db: db.query(QuizQuestion.quiz_id, func.count(QuizQuestion.id)).group_by(QuizQuestion.quiz_id).all()
        )
    )
    return {
        "quizzes": [
            {
                "id": quiz.id,
                "title": quiz.title,
                "description": quiz.description,
                "category": quiz.category,
                "difficulty": quiz.difficulty,
                "time_limit_minutes": quiz.time_limit_minutes,
                "question_count": counts.get(quiz.id, 0),
            }
            for quiz in quizzes
        ]
    }


@app.post("/api/quiz/start", response_model=SessionDetailResponse)
def start_quiz(payload: StartQuizRequest, ctx: RequestContext = Depends(get_request_context)):
    logger.info(
        "Start quiz request (user=%s, quiz_id=%s, category=%r, difficulty=%s)",
        ctx.identity.user_id,
        payload.quiz_id,
        payload.category,
        payload.difficulty,
    )
    return QuizSessionManager(ctx).start(
        quiz_id=payload.quiz_id,
        question_ids=payload.question_ids,
        category=payload.category,
        difficulty=payload.difficulty,
        question_count=payload.question_count,
    )


@app.get("/api/quiz/sessions", response_model=SessionListResponse)
def list_sessions(status: Optional[str] = None, ctx: RequestContext = Depends(get_request_context)):
    return {"sessions": QuizSessionManager(ctx).list_for_user(status)}


@app.get("/api/quiz/session/{session_id}", response_model=SessionDetailResponse)
def get_session(session_id: str, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).get(session_id)


@app.post("/api/quiz/save-answer", response_model=SaveAnswerResponse)
def save_answer(payload: SaveAnswerRequest, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).save_answer(
        payload.session_id,
        payload.selected_option,
        question_index=payload.question_index,
        question_id=payload.question_id,
        sequence=payload.sequence,
    )


@app.post("/api/quiz/save-state", response_model=SaveStateResponse)
def save_state(payload: SaveStateRequest, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).save_state(
        payload.session_id,
        current_index=payload.current_index,
        elapsed_seconds=payload.elapsed_seconds,
        sequence=payload.sequence,
        client_timestamp=payload.client_timestamp,
    )


@app.post("/api/quiz/pause", response_model=SessionStateOut)
def pause_quiz(payload: SessionRef, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).pause(payload.session_id)


@app.post("/api/quiz/resume", response_model=SessionStateOut)
def resume_quiz(payload: SessionRef, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).resume(payload.session_id)


@app.post("/api/quiz/bookmark", response_model=BookmarkResponse)
def bookmark_question(payload: BookmarkRequest, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).toggle_bookmark(
        payload.session_id,
        question_id=payload.question_id,
        question_index=payload.question_index,
        bookmarked=payload.bookmarked,
    )


@app.post("/api/quiz/submit", response_model=SubmitResponse)
def submit_quiz(payload: SessionRef, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).submit(payload.session_id)


@app.get("/api/quiz/results/{session_id}", response_model=ResultsResponse)
def get_results(session_id: str, ctx: RequestContext = Depends(get_request_context)):
    return QuizSessionManager(ctx).results(session_id)


@app.post("/api/quiz/results/{session_id}/explanation", response_model=ExplanationResponse)
def explain_question(session_id: str, payload: ExplanationRequest, ctx: RequestContext = Depends(get_request_context)):
    manager = QuizSessionManager(ctx)
    session = manager.load(session_id)
    if session.status != SESSION_SUBMITTED:
        raise StateFailure("Quiz not completed yet")
    if payload.question_id not in manager.question_ids(session):
        raise ValidationFailure("Question is not part of this session", details={"field": "question_id"})
    question = ctx.repo.get(Question, payload.question_id)
    if question is None:
        raise NotFoundFailure("Question not found")

    cached = ctx.repo.find_one(QuestionExplanation, QuestionExplanation.question_id == question.id)
    if cached:
        return {"question_id": question.id, "explanation": cached.explanation_text, "cached": True, "source": "cached"}

    try:
        explanation = service.explain_question(
            {
                "question_text": question.question_text,
                "options": question.options,
                "correct_option": question.correct_option,
                "category": question.category,
                "explanation": question.explanation,
            }
        )
    except GenerationError as exc:
        logger.warning("Explanation generation degraded for question %s: %s", question.id, exc)
        if question.explanation:
            return {"question_id": question.id, "explanation": question.explanation, "cached": False, "source": "stored"}
        return {
            "question_id": question.id,
            "explanation": f"The correct answer is option {question.correct_option}.",
            "cached": False,
            "source": "default",
        }

    ctx.repo.insert(QuestionExplanation(question_id=question.id, explanation_text=explanation))
    ctx.repo.commit()
    return {"question_id": question.id, "explanation": explanation, "cached": False, "source": "generated"}


# Suggestions


def _load_performance(ctx: RequestContext) -> dict:
    sessions = ctx.repo.list_by_user(
        QuizSession,
        ctx.identity.user_id,
        QuizSession.status == SESSION_SUBMITTED,
        order_by=QuizSession.submitted_at.asc(),
    )
    session_ids = [s.id for s in sessions]
    answers = ctx.repo.find(Answer, Answer.session_id.in_(session_ids)) if session_ids else []
    question_ids = {qid for s in sessions for qid in json.loads(s.question_ids_json)}
    questions = ctx.repo.find(Question, Question.id.in_(question_ids)) if question_ids else []
    return compute_performance(sessions, answers, questions)


@app.get("/api/suggestions", response_model=SuggestionsResponse)
def get_suggestions(refresh: bool = False, ctx: RequestContext = Depends(get_request_context)):
    user_id = ctx.identity.user_id
    performance = _load_performance(ctx)
    phash = performance_hash(performance)
    cache = ctx.repo.find_one(SuggestionCache, SuggestionCache.user_id == user_id)

    remaining = None
    if refresh:
        used = ctx.repo.count(
            SuggestionRegeneration,
            SuggestionRegeneration.user_id == user_id,
            SuggestionRegeneration.created_at >= utcnow() - timedelta(days=1),
        )
        remaining = max(ctx.settings.max_regenerations_per_day - used, 0)
        if remaining == 0:
            raise RateLimitFailure(
                "Daily suggestion regeneration limit reached",
                details={"limit": ctx.settings.max_regenerations_per_day, "regenerations_remaining": 0},
            )

    def _from_cache():
        return {
            "performance": performance,
            "recommendations": json.loads(cache.payload_json),
            "source": "cached",
            "generated_at": cache.generated_at,
            "regenerations_remaining": remaining,
        }

    if cache and cache.performance_hash == phash and not refresh:
        return _from_cache()

    try:
        recommendations = service.generate_recommendations(performance)
    except GenerationError as exc:
        logger.warning("Suggestion generation degraded for user %s: %s", user_id, exc)
        if cache:
            return _from_cache()
        return {
            "performance": performance,
            "recommendations": default_recommendations(performance),
            "source": "default",
            "generated_at": utcnow(),
            "regenerations_remaining": remaining,
        }

    now = utcnow()
    if cache:
        ctx.repo.update(cache, performance_hash=phash, payload_json=json.dumps(recommendations), generated_at=now)
    else:
        ctx.repo.insert(
            SuggestionCache(
                user_id=user_id, performance_hash=phash, payload_json=json.dumps(recommendations), generated_at=now
            )
        )
    # Only a regeneration that reached the model counts against the daily allowance.
    if refresh:
        ctx.repo.insert(SuggestionRegeneration(user_id=user_id, created_at=now))
        remaining -= 1
    ctx.repo.commit()
    return {
        "performance": performance,
        "recommendations": recommendations,
        "source": "generated",
        "generated_at": now,
        "regenerations_remaining": remaining,
    }


@app.get("/api/suggestions/practice", response_model=PracticeSuggestionsResponse)
def get_practice_suggestions(
    per_topic: int = Query(default=5, ge=1, le=50),
    ctx: RequestContext = Depends(get_request_context),
):
    performance = _load_performance(ctx)
    topics = [t["topic"] for t in performance["weak_topics"]]
    if not topics:
        return {"suggestions": [], "count": 0}

    criteria = [Question.category.in_(topics)]
    if "uncategorized" in topics:
        criteria.append(Question.category.is_(None))
    questions = ctx.repo.find(Question, or_(*criteria), order_by=Question.id.asc())
    mastered = ctx.repo.read(
        lambda db: db.query(Answer.question_id)
        .join(QuizSession, Answer.session_id == QuizSession.id)
        .filter(QuizSession.user_id == ctx.identity.user_id, Answer.is_correct.is_(True))
        .distinct()
        .all()
    )
    suggestions = practice_suggestions(performance, questions, {qid for (qid,) in mastered}, per_topic=per_topic)
    return {"suggestions": suggestions, "count": len(suggestions)}


# Admin: quizzes


def _admin_quiz(quiz: Quiz, question_count: int) -> dict:
    return {
        "id": quiz.id,
        "title": quiz.title,
        "description": quiz.description,
        "category": quiz.category,
        "difficulty": quiz.difficulty,
        "time_limit_minutes": quiz.time_limit_minutes,
        "is_active": quiz.is_active,
        "question_count": question_count,
        "created_by": quiz.created_by,
        "created_at": quiz.created_at,
    }


@app.get("/api/admin/quizzes", response_model=AdminQuizListResponse)
def admin_list_quizzes(ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    quizzes = ctx.repo.find(Quiz, order_by=Quiz.created_at.desc())
    counts = dict(
        ctx.repo.read(
            lambda db: db.query(QuizQuestion.quiz_id, func.count(QuizQuestion.id)).group_by(QuizQuestion.quiz_id).all()
        )
    )
    return {"quizzes": [_admin_quiz(quiz, counts.get(quiz.id, 0)) for quiz in quizzes]}


@app.post("/api/admin/quizzes", response_model=AdminQuizOut, status_code=201)
def admin_create_quiz(payload: QuizIn, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    question_ids = list(dict.fromkeys(payload.question_ids))
    if question_ids:
        found = {q.id for q in ctx.repo.find(Question, Question.id.in_(question_ids))}
        missing = [qid for qid in question_ids if qid not in found]
        if missing:
            raise ValidationFailure("Unknown question ids", details={"field": "question_ids", "missing": missing})

    quiz = ctx.repo.insert(
        Quiz(
            title=payload.title,
            description=payload.description,
            category=payload.category.strip() if payload.category and payload.category.strip() else None,
            difficulty=None if payload.difficulty in (None, "mixed") else payload.difficulty,
            time_limit_minutes=payload.time_limit_minutes or ctx.settings.default_time_limit_minutes,
            is_active=payload.is_active,
            created_by=ctx.identity.user_id,
        )
    )
    ctx.repo.insert_all(
        [QuizQuestion(quiz_id=quiz.id, question_id=qid, position=pos) for pos, qid in enumerate(question_ids)]
    )
    ctx.repo.commit()
    logger.info("Admin %s created quiz %s with %s questions", ctx.identity.user_id, quiz.id, len(question_ids))
    return _admin_quiz(ctx.repo.refresh(quiz), len(question_ids))


# Admin: bulk upload


@app.post("/api/admin/upload/validate", response_model=UploadReport)
def validate_upload(file: UploadFile = File(...), ctx: RequestContext = Depends(get_request_context)):
    pipeline = UploadPipeline(ctx)
    content = file.file.read(ctx.settings.max_upload_bytes + 1)
    return pipeline.validate_upload(file.filename or "", content)


@app.post("/api/admin/upload/bulk-insert", response_model=BulkInsertResponse)
def bulk_insert(payload: BulkInsertRequest, ctx: RequestContext = Depends(get_request_context)):
    return UploadPipeline(ctx).bulk_insert(payload.file_name, payload.rows)


@app.post("/api/admin/upload/detect-duplicates", response_model=DetectDuplicatesResponse)
def detect_duplicates(payload: DetectDuplicatesRequest, ctx: RequestContext = Depends(get_request_context)):
    return {"duplicates": UploadPipeline(ctx).detect_duplicates(payload.question_texts)}


@app.get("/api/admin/upload/template")
def download_template(ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    return Response(
        content=build_template(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="question_template.xlsx"'},
    )


# Admin: questions


def _question_locked(ctx: RequestContext, question_id: int) -> bool:
    return (
        ctx.repo.read(
            lambda db: db.query(Answer.id)
            .join(QuizSession, Answer.session_id == QuizSession.id)
            .filter(Answer.question_id == question_id, QuizSession.status == SESSION_SUBMITTED)
            .first()
        )
        is not None
    )


def _validated_question(ctx: RequestContext, fields: dict, exclude_id: int | None = None) -> dict:
    row = QuestionRowIn(**fields)
    issues = validate_row(row)
    if issues:
        raise ValidationFailure("Question failed validation", details=[issue.model_dump() for issue in issues])
    normalized = normalize_row(row)

    mode = ctx.settings.duplicate_normalization
    key = normalize_question_text(normalized.question_text, mode)
    criteria = [Question.id != exclude_id] if exclude_id is not None else []
    others = ctx.repo.read(lambda db: db.query(Question.question_text).filter(*criteria).all())
    if any(normalize_question_text(other, mode) == key for (other,) in others):
        raise ValidationFailure(
            "A question with the same text already exists", details=[{"field": "question_text", "code": "duplicate"}]
        )
    return normalized.model_dump()


def _get_question(ctx: RequestContext, question_id: int) -> Question:
    question = ctx.repo.get(Question, question_id)
    if question is None:
        raise NotFoundFailure("Question not found")
    return question


@app.get("/api/admin/questions", response_model=QuestionListResponse)
def list_questions(
    category: Optional[str] = None,
    difficulty: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
):
    ctx.require_admin()
    criteria = []
    if category:
        criteria.append(func.lower(Question.category) == category.strip().lower())
    if difficulty:
        criteria.append(Question.difficulty == difficulty)
    if search:
        criteria.append(Question.question_text.ilike(f"%{search.strip()}%"))
    questions = ctx.repo.find(Question, *criteria, order_by=Question.id.asc(), limit=limit, offset=offset)
    return {"questions": questions, "total": ctx.repo.count(Question, *criteria)}


@app.post("/api/admin/questions", response_model=QuestionOut, status_code=201)
def create_question(payload: QuestionIn, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    fields = _validated_question(ctx, payload.model_dump())
    question = ctx.repo.insert(Question(**fields, created_by=ctx.identity.user_id))
    ctx.repo.commit()
    logger.info("Admin %s created question %s", ctx.identity.user_id, question.id)
    return ctx.repo.refresh(question)


@app.get("/api/admin/questions/{question_id}", response_model=QuestionOut)
def get_question(question_id: int, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    return _get_question(ctx, question_id)


@app.put("/api/admin/questions/{question_id}", response_model=QuestionOut)
def update_question(question_id: int, payload: QuestionUpdateIn, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    question = _get_question(ctx, question_id)
    if _question_locked(ctx, question_id):
        raise StateFailure("Question is referenced by submitted sessions and can no longer be edited", code="question_locked")

    current = {field: getattr(question, field) for field in QuestionIn.model_fields}
    current.update(payload.model_dump(exclude_unset=True))
    fields = _validated_question(ctx, current, exclude_id=question_id)
    ctx.repo.update(question, **fields)
    ctx.repo.commit()
    logger.info("Admin %s updated question %s", ctx.identity.user_id, question_id)
    return ctx.repo.refresh(question)


@app.delete("/api/admin/questions/{question_id}")
def delete_question(question_id: int, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    question = _get_question(ctx, question_id)
    if _question_locked(ctx, question_id):
        raise StateFailure("Question is referenced by submitted sessions and cannot be deleted", code="question_locked")
    if ctx.repo.count(Answer, Answer.question_id == question_id) or ctx.repo.count(
        Bookmark, Bookmark.question_id == question_id
    ):
        raise StateFailure("Question is in use by an open quiz session", code="question_in_use")

    ctx.repo.write(lambda db: db.query(QuizQuestion).filter(QuizQuestion.question_id == question_id).delete())
    ctx.repo.write(
        lambda db: db.query(QuestionExplanation).filter(QuestionExplanation.question_id == question_id).delete()
    )
    ctx.repo.delete(question)
    ctx.repo.commit()
    logger.info("Admin %s deleted question %s", ctx.identity.user_id, question_id)
    return {"deleted": True, "question_id": question_id}


# Admin: users


def _get_user(ctx: RequestContext, user_id: str) -> User:
    user = ctx.repo.get(User, user_id)
    if user is None:
        raise NotFoundFailure("User not found")
    return user


@app.get("/api/admin/users", response_model=UserListResponse)
def list_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
):
    ctx.require_admin()
    criteria = []
    if role:
        criteria.append(User.role == role)
    if search:
        pattern = f"%{search.strip()}%"
        criteria.append(or_(User.email.ilike(pattern), User.display_name.ilike(pattern)))
    users = ctx.repo.find(User, *criteria, order_by=User.created_at.desc(), limit=limit, offset=offset)
    return {"users": users, "total": ctx.repo.count(User, *criteria)}


@app.patch("/api/admin/users/{user_id}/role", response_model=UserOut)
def update_user_role(user_id: str, payload: RoleUpdateRequest, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    if user_id == ctx.identity.user_id:
        raise ValidationFailure("Admins cannot change their own role", details={"field": "role"})
    user = _get_user(ctx, user_id)
    ctx.repo.update(user, role=payload.role)
    ctx.repo.commit()
    logger.info("Admin %s set role of %s to %s", ctx.identity.user_id, user_id, payload.role)
    return ctx.repo.refresh(user)


@app.patch("/api/admin/users/{user_id}/suspend", response_model=UserOut)
def suspend_user(user_id: str, payload: SuspendRequest, ctx: RequestContext = Depends(get_request_context)):
    ctx.require_admin()
    if user_id == ctx.identity.user_id:
        raise ValidationFailure("Admins cannot suspend themselves", details={"field": "suspended"})
    user = _get_user(ctx, user_id)
    ctx.repo.update(user, is_suspended=payload.suspended)
    ctx.repo.commit()
    logger.info("Admin %s set suspended=%s for %s", ctx.identity.user_id, payload.suspended, user_id)
    return ctx.repo.refresh(user)
