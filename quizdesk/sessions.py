import json
import logging
import random
import uuid
from datetime import datetime, timezone

from sqlalchemy import and_, func, or_

from quizdesk.context import RequestContext
from quizdesk.errors import AuthorizationFailure, NotFoundFailure, StateFailure, ValidationFailure
from quizdesk.models import (
    SESSION_IN_PROGRESS,
    SESSION_PAUSED,
    SESSION_SUBMITTED,
    Answer,
    Bookmark,
    Question,
    Quiz,
    QuizSession,
    utcnow,
)
from quizdesk.scoring import OPTION_LETTERS, breakdown, score_answers

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SESSION_IN_PROGRESS, SESSION_PAUSED)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class QuizSessionManager:
    """Lifecycle of one user's quiz sessions: start, autosave, pause/resume, submit.

    Every status change and autosave is a single conditional UPDATE on the session
    row, so two racing requests are serialized by the store rather than by this
    process: the loser's condition no longer matches and it reports why.
    """

    def __init__(self, ctx: RequestContext, clock=utcnow, rng: random.Random | None = None):
        self.ctx = ctx
        self.repo = ctx.repo
        self.clock = clock
        self.rng = rng or random.Random()
        self.ordering = ctx.settings.autosave_ordering

    # Loading and guards

    def load(self, session_id: str) -> QuizSession:
        session = self.repo.get(QuizSession, session_id)
        if session is None:
            raise NotFoundFailure("Quiz session not found")
        if session.user_id != self.ctx.identity.user_id:
            raise AuthorizationFailure("Unauthorized access to session")
        return session

    @staticmethod
    def _ensure_status(session: QuizSession, allowed: tuple[str, ...]):
        if session.status == SESSION_SUBMITTED:
            raise StateFailure("Quiz already submitted")
        if session.status not in allowed:
            raise StateFailure(f"Session is {session.status.replace('_', ' ')}")

    def _claim(self, session: QuizSession, allowed: tuple[str, ...], values: dict, *extra_criteria) -> bool:
        matched = self.repo.update_where(
            QuizSession,
            [QuizSession.id == session.id, QuizSession.status.in_(allowed), *extra_criteria],
            values,
        )
        self.repo.refresh(session)
        return matched == 1

    @staticmethod
    def question_ids(session: QuizSession) -> list[int]:
        return json.loads(session.question_ids_json)

    def _resolve_question(self, session: QuizSession, question_index: int | None, question_id: int | None):
        ids = self.question_ids(session)
        if question_id is not None:
            if question_id not in ids:
                raise ValidationFailure(
                    "Question is not part of this session", details={"field": "question_id", "value": question_id}
                )
            index = ids.index(question_id)
            if question_index is not None and question_index != index:
                raise ValidationFailure(
                    "question_index does not match question_id", details={"field": "question_index"}
                )
            return index, question_id

        index = session.current_index if question_index is None else question_index
        if not 0 <= index < len(ids):
            raise ValidationFailure(
                f"Question index must be between 0 and {len(ids) - 1}",
                details={"field": "question_index", "value": index},
            )
        return index, ids[index]

    def current_elapsed(self, session: QuizSession, now: datetime | None = None) -> float:
        elapsed = session.elapsed_seconds or 0.0
        if session.status == SESSION_IN_PROGRESS and session.timing_started_at is not None:
            now = now or self.clock()
            elapsed += max(0.0, (now - session.timing_started_at).total_seconds())
        return round(elapsed, 3)

    # Views

    def _answered_count(self, session_id: str) -> int:
        return self.repo.count(Answer, Answer.session_id == session_id)

    def state_view(self, session: QuizSession, answered_count: int | None = None) -> dict:
        return {
            "session_id": session.id,
            "quiz_id": session.quiz_id,
            "status": session.status,
            "current_index": session.current_index,
            "total_questions": session.total_questions,
            "answered_count": self._answered_count(session.id) if answered_count is None else answered_count,
            "elapsed_seconds": self.current_elapsed(session),
            "time_limit_minutes": session.time_limit_minutes,
            "state_sequence": session.state_sequence,
            "started_at": session.started_at,
            "paused_at": session.paused_at,
            "submitted_at": session.submitted_at,
            "score": session.score,
            "percentage": session.percentage,
        }

    def _questions_by_id(self, ids: list[int]) -> dict[int, Question]:
        if not ids:
            return {}
        return {q.id: q for q in self.repo.find(Question, Question.id.in_(ids))}

    def get(self, session_id: str, *, resumed: bool = False) -> dict:
        session = self.load(session_id)
        ids = self.question_ids(session)
        lookup = self._questions_by_id(ids)
        answers = self.repo.find(Answer, Answer.session_id == session.id)
        bookmarks = self.repo.find(Bookmark, Bookmark.session_id == session.id)
        return {
            "session": self.state_view(session, answered_count=len(answers)),
            "questions": [
                {
                    "id": qid,
                    "position": position,
                    "question_text": lookup[qid].question_text,
                    "options": lookup[qid].options,
                    "category": lookup[qid].category,
                    "difficulty": lookup[qid].difficulty,
                }
                for position, qid in enumerate(ids)
                if qid in lookup
            ],
            "answers": {a.question_id: a.selected_option for a in answers},
            "bookmarks": sorted(b.question_id for b in bookmarks),
            "resumed": resumed,
        }

    def list_for_user(self, status: str | None = None) -> list[dict]:
        criteria = [QuizSession.status == status] if status else []
        sessions = self.repo.list_by_user(
            QuizSession, self.ctx.identity.user_id, *criteria, order_by=QuizSession.started_at.desc()
        )
        ids = [s.id for s in sessions]
        counts = {}
        if ids:
            counts = dict(
                self.repo.read(
                    lambda db: db.query(Answer.session_id, func.count(Answer.id))
                    .filter(Answer.session_id.in_(ids))
                    .group_by(Answer.session_id)
                    .all()
                )
            )
        return [self.state_view(s, answered_count=counts.get(s.id, 0)) for s in sessions]

    # Lifecycle

    def _select_questions(self, category, difficulty, question_count) -> list[int]:
        criteria = []
        if category:
            criteria.append(func.lower(Question.category) == category.strip().lower())
        if difficulty:
            criteria.append(Question.difficulty == difficulty)
        candidates = self.repo.read(lambda db: [qid for (qid,) in db.query(Question.id).filter(*criteria).all()])
        count = question_count or self.ctx.settings.default_question_count
        return self.rng.sample(candidates, min(count, len(candidates)))

    def start(
        self,
        *,
        quiz_id: int | None = None,
        question_ids: list[int] | None = None,
        category: str | None = None,
        difficulty: str | None = None,
        question_count: int | None = None,
    ) -> dict:
        user_id = self.ctx.identity.user_id
        time_limit = self.ctx.settings.default_time_limit_minutes

        if quiz_id is not None:
            quiz = self.repo.get(Quiz, quiz_id)
            if quiz is None or not quiz.is_active:
                raise NotFoundFailure("Quiz not found")
            existing = self.repo.find(
                QuizSession,
                QuizSession.user_id == user_id,
                QuizSession.quiz_id == quiz_id,
                QuizSession.status.in_(OPEN_STATUSES),
                order_by=QuizSession.started_at.desc(),
                limit=1,
            )
            if existing:
                logger.info("Resuming open session %s for user %s on quiz %s", existing[0].id, user_id, quiz_id)
                return self.get(existing[0].id, resumed=True)
            selected = self.repo.read(lambda db: [qq.question_id for qq in quiz.questions])
            time_limit = quiz.time_limit_minutes or time_limit
        elif question_ids:
            selected = list(dict.fromkeys(question_ids))
            found = self._questions_by_id(selected)
            missing = [qid for qid in selected if qid not in found]
            if missing:
                raise ValidationFailure("Unknown question ids", details={"field": "question_ids", "value": missing})
        else:
            selected = self._select_questions(category, difficulty, question_count)

        if not selected:
            raise ValidationFailure("No questions available for this quiz", details={"field": "question_ids"})

        now = self.clock()
        session = QuizSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            quiz_id=quiz_id,
            question_ids_json=json.dumps(selected),
            current_index=0,
            status=SESSION_IN_PROGRESS,
            total_questions=len(selected),
            elapsed_seconds=0.0,
            timing_started_at=now,
            time_limit_minutes=time_limit,
            state_sequence=0,
            started_at=now,
        )
        self.repo.insert(session)
        self.repo.commit()
        logger.info("Started session %s for user %s with %s questions", session.id, user_id, len(selected))
        return self.get(session.id)

    def save_answer(
        self,
        session_id: str,
        selected_option: str,
        *,
        question_index: int | None = None,
        question_id: int | None = None,
        sequence: int | None = None,
    ) -> dict:
        session = self.load(session_id)
        self._ensure_status(session, (SESSION_IN_PROGRESS,))
        option = (selected_option or "").strip().upper()
        if option not in OPTION_LETTERS:
            raise ValidationFailure(
                "Selected option must be A, B, C, or D",
                details={"field": "selected_option", "value": selected_option},
            )
        index, qid = self._resolve_question(session, question_index, question_id)

        # Lock the session row first so a concurrent submit cannot score around this answer.
        if not self._claim(session, (SESSION_IN_PROGRESS,), {"updated_at": self.clock()}):
            self._ensure_status(session, (SESSION_IN_PROGRESS,))

        existing = self.repo.find_one(Answer, Answer.session_id == session.id, Answer.question_id == qid)
        applied = True
        if existing is None:
            self.repo.insert(Answer(session_id=session.id, question_id=qid, selected_option=option, sequence=sequence or 0))
        elif sequence is None:
            self.repo.update(existing, selected_option=option)
        else:
            matched = self.repo.update_where(
                Answer,
                [Answer.id == existing.id, Answer.sequence < sequence],
                {"selected_option": option, "sequence": sequence},
            )
            if not matched:
                self.repo.refresh(existing)
                applied = existing.selected_option == option
                logger.info(
                    "Ignored out-of-order answer for session %s question %s (sequence=%s, stored=%s)",
                    session.id,
                    qid,
                    sequence,
                    existing.sequence,
                )
        self.repo.commit()

        return {
            "session_id": session.id,
            "question_id": qid,
            "question_index": index,
            "selected_option": option,
            "applied": applied,
            "answered_count": self._answered_count(session.id),
        }

    def _newer_than_stored(self, sequence: int, client_timestamp: datetime | None):
        if self.ordering == "client_timestamp":
            return or_(
                QuizSession.state_client_timestamp.is_(None),
                QuizSession.state_client_timestamp < client_timestamp,
                and_(
                    QuizSession.state_client_timestamp == client_timestamp,
                    QuizSession.state_sequence < sequence,
                ),
            )
        return QuizSession.state_sequence < sequence

    def _ordering_key(self, sequence: int, client_timestamp: datetime | None) -> tuple:
        if self.ordering == "client_timestamp":
            return (client_timestamp or datetime.min, sequence)
        return (sequence,)

    def save_state(
        self,
        session_id: str,
        *,
        current_index: int,
        elapsed_seconds: float,
        sequence: int,
        client_timestamp: datetime | None = None,
    ) -> dict:
        """Autosave position and elapsed time, last write wins by ordering key.

        A payload whose key is older than the stored one is ignored; an equal key is
        treated as a redelivery and changes nothing.
        """
        session = self.load(session_id)
        self._ensure_status(session, (SESSION_IN_PROGRESS,))
        if not 0 <= current_index < session.total_questions:
            raise ValidationFailure(
                f"Question index must be between 0 and {session.total_questions - 1}",
                details={"field": "current_index", "value": current_index},
            )
        client_timestamp = _naive_utc(client_timestamp)
        if self.ordering == "client_timestamp" and client_timestamp is None:
            raise ValidationFailure("client_timestamp is required", details={"field": "client_timestamp"})

        applied = self._claim(
            session,
            (SESSION_IN_PROGRESS,),
            {
                "current_index": current_index,
                "elapsed_seconds": float(elapsed_seconds),
                "timing_started_at": self.clock(),
                "state_sequence": sequence,
                "state_client_timestamp": client_timestamp,
            },
            self._newer_than_stored(sequence, client_timestamp),
        )
        self.repo.commit()
        if not applied:
            self._ensure_status(session, (SESSION_IN_PROGRESS,))
            stored_key = self._ordering_key(session.state_sequence, session.state_client_timestamp)
            incoming_key = self._ordering_key(sequence, client_timestamp)
            if incoming_key == stored_key:
                applied = session.current_index == current_index
            else:
                logger.info(
                    "Ignored stale autosave for session %s (sequence=%s, stored=%s)",
                    session.id,
                    sequence,
                    session.state_sequence,
                )
        return {"applied": applied, "session": self.state_view(session)}

    def pause(self, session_id: str) -> dict:
        session = self.load(session_id)
        self._ensure_status(session, (SESSION_IN_PROGRESS,))
        now = self.clock()
        values = {
            "status": SESSION_PAUSED,
            "elapsed_seconds": self.current_elapsed(session, now),
            "timing_started_at": None,
            "paused_at": now,
        }
        if not self._claim(session, (SESSION_IN_PROGRESS,), values):
            self._ensure_status(session, (SESSION_IN_PROGRESS,))
        self.repo.commit()
        logger.info("Paused session %s at %.1fs", session.id, session.elapsed_seconds)
        return self.state_view(session)

    def resume(self, session_id: str) -> dict:
        session = self.load(session_id)
        self._ensure_status(session, (SESSION_PAUSED,))
        values = {"status": SESSION_IN_PROGRESS, "timing_started_at": self.clock(), "paused_at": None}
        if not self._claim(session, (SESSION_PAUSED,), values):
            self._ensure_status(session, (SESSION_PAUSED,))
        self.repo.commit()
        logger.info("Resumed session %s from %.1fs", session.id, session.elapsed_seconds)
        return self.state_view(session)

    def submit(self, session_id: str) -> dict:
        session = self.load(session_id)
        self._ensure_status(session, OPEN_STATUSES)
        now = self.clock()
        elapsed = self.current_elapsed(session, now)

        # Claim the terminal status before reading answers; later answer writes now fail.
        if not self._claim(
            session,
            OPEN_STATUSES,
            {
                "status": SESSION_SUBMITTED,
                "elapsed_seconds": elapsed,
                "timing_started_at": None,
                "paused_at": None,
                "submitted_at": now,
            },
        ):
            self._ensure_status(session, OPEN_STATUSES)

        ids = self.question_ids(session)
        lookup = self._questions_by_id(ids)
        answers = self.repo.find(Answer, Answer.session_id == session.id)
        result = score_answers(
            ids,
            {qid: q.correct_option for qid, q in lookup.items()},
            {a.question_id: a.selected_option for a in answers},
        )
        outcome_by_id = {o.question_id: o for o in result.outcomes}
        for answer in answers:
            outcome = outcome_by_id.get(answer.question_id)
            self.repo.update(answer, is_correct=bool(outcome and outcome.is_correct))
        self.repo.update(session, score=result.score, percentage=result.percentage)
        self.repo.commit()

        logger.info(
            "Submitted session %s (score=%s/%s, percentage=%s)", session.id, result.score, result.total, result.percentage
        )
        return {
            "session_id": session.id,
            "score": result.score,
            "total_questions": result.total,
            "percentage": result.percentage,
            "correct_answers": result.score,
            "incorrect_answers": result.incorrect,
            "unanswered": result.unanswered,
            "time_taken_seconds": int(elapsed),
        }

    def toggle_bookmark(
        self,
        session_id: str,
        *,
        question_id: int | None = None,
        question_index: int | None = None,
        bookmarked: bool | None = None,
    ) -> dict:
        session = self.load(session_id)
        self._ensure_status(session, OPEN_STATUSES)
        _, qid = self._resolve_question(session, question_index, question_id)
        if not self._claim(session, OPEN_STATUSES, {"updated_at": self.clock()}):
            self._ensure_status(session, OPEN_STATUSES)

        existing = self.repo.find_one(Bookmark, Bookmark.session_id == session.id, Bookmark.question_id == qid)
        target = existing is None if bookmarked is None else bookmarked
        if target and existing is None:
            self.repo.insert(Bookmark(session_id=session.id, question_id=qid))
        elif not target and existing is not None:
            self.repo.delete(existing)
        self.repo.commit()
        return {"session_id": session.id, "question_id": qid, "is_bookmarked": target}

    def results(self, session_id: str) -> dict:
        session = self.load(session_id)
        if session.status != SESSION_SUBMITTED:
            raise StateFailure("Quiz not completed yet")

        ids = self.question_ids(session)
        lookup = self._questions_by_id(ids)
        answers = self.repo.find(Answer, Answer.session_id == session.id)
        bookmarked = {b.question_id for b in self.repo.find(Bookmark, Bookmark.session_id == session.id)}
        result = score_answers(
            ids,
            {qid: q.correct_option for qid, q in lookup.items()},
            {a.question_id: a.selected_option for a in answers},
        )

        quiz_title = "Practice Quiz"
        if session.quiz_id is not None:
            quiz = self.repo.get(Quiz, session.quiz_id)
            if quiz:
                quiz_title = quiz.title

        question_rows = []
        for position, outcome in enumerate(result.outcomes):
            question = lookup.get(outcome.question_id)
            question_rows.append(
                {
                    "question_id": outcome.question_id,
                    "position": position,
                    "question_text": question.question_text if question else "",
                    "options": question.options if question else {},
                    "selected_option": outcome.selected_option,
                    "correct_option": outcome.correct_option,
                    "is_correct": outcome.is_correct,
                    "bookmarked": outcome.question_id in bookmarked,
                    "category": question.category if question else None,
                    "difficulty": question.difficulty if question else None,
                    "explanation": question.explanation if question else None,
                }
            )

        score = session.score if session.score is not None else result.score
        total = session.total_questions
        elapsed = session.elapsed_seconds or 0.0
        return {
            "session_id": session.id,
            "quiz_id": session.quiz_id,
            "quiz_title": quiz_title,
            "started_at": session.started_at,
            "submitted_at": session.submitted_at,
            "score": score,
            "total_questions": total,
            "percentage": session.percentage if session.percentage is not None else result.percentage,
            "correct_answers": score,
            "incorrect_answers": result.incorrect,
            "unanswered": result.unanswered,
            "time_taken_seconds": int(elapsed),
            "average_time_per_question": round(elapsed / total, 2) if total else 0.0,
            "category_breakdown": breakdown(result.outcomes, lookup, "category"),
            "difficulty_breakdown": breakdown(result.outcomes, lookup, "difficulty", default="unrated"),
            "questions": question_rows,
        }
