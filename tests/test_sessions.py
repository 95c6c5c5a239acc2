import random
from datetime import datetime, timedelta, timezone

import pytest

from quizdesk.config import Settings
from quizdesk.context import RequestContext, resolve_identity
from quizdesk.database import Base, SessionLocal, engine
from quizdesk.errors import StateFailure, ValidationFailure
from quizdesk.models import Question
from quizdesk.repository import Repository
from quizdesk.sessions import QuizSessionManager


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def setup_module():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    for category, count in (("Chemistry", 5), ("Physics", 3)):
        for i in range(count):
            db.add(
                Question(
                    question_text=f"{category} question {i}",
                    option_a="a",
                    option_b="b",
                    option_c="c",
                    option_d="d",
                    correct_option="A",
                    category=category,
                    difficulty="medium",
                )
            )
    db.commit()
    db.close()


@pytest.fixture
def make_context():
    sessions = []

    def _make(user_id="student-1", **settings):
        db = SessionLocal()
        sessions.append(db)
        repo = Repository(db)
        return RequestContext(identity=resolve_identity(repo, user_id, None, None), repo=repo, settings=Settings(**settings))

    yield _make
    for db in sessions:
        db.close()


def test_random_selection_respects_category(make_context):
    ctx = make_context()
    manager = QuizSessionManager(ctx, rng=random.Random(3))

    detail = manager.start(category="chemistry", question_count=3)

    assert len(detail["questions"]) == 3
    assert {q["category"] for q in detail["questions"]} == {"Chemistry"}

    with pytest.raises(ValidationFailure):
        manager.start(category="Astronomy")


def test_elapsed_time_freezes_while_paused(make_context):
    clock = FakeClock()
    manager = QuizSessionManager(make_context(), clock=clock)
    session_id = manager.start(category="Physics")["session"]["session_id"]

    clock.advance(30)
    assert manager.pause(session_id)["elapsed_seconds"] == 30.0

    clock.advance(600)
    assert manager.get(session_id)["session"]["elapsed_seconds"] == 30.0

    manager.resume(session_id)
    clock.advance(15)
    submitted = manager.submit(session_id)
    assert submitted["time_taken_seconds"] == 45
    assert submitted["unanswered"] == 3
    assert submitted["percentage"] == 0


def test_autosave_replaces_elapsed_with_client_value(make_context):
    clock = FakeClock()
    manager = QuizSessionManager(make_context(), clock=clock)
    session_id = manager.start(category="Physics")["session"]["session_id"]

    clock.advance(90)
    saved = manager.save_state(session_id, current_index=1, elapsed_seconds=50, sequence=1)
    assert saved["applied"] is True
    assert saved["session"]["elapsed_seconds"] == 50.0

    clock.advance(10)
    assert manager.get(session_id)["session"]["elapsed_seconds"] == 60.0

    with pytest.raises(ValidationFailure):
        manager.save_state(session_id, current_index=3, elapsed_seconds=1, sequence=2)


def test_client_timestamp_ordering(make_context):
    manager = QuizSessionManager(make_context(autosave_ordering="client_timestamp"))
    session_id = manager.start(category="Physics")["session"]["session_id"]
    later = datetime(2024, 3, 1, 9, 5, tzinfo=timezone.utc)
    earlier = datetime(2024, 3, 1, 9, 1, tzinfo=timezone.utc)

    assert manager.save_state(session_id, current_index=1, elapsed_seconds=5, sequence=1, client_timestamp=later)[
        "applied"
    ]
    # A higher sequence from an older client clock still loses.
    older = manager.save_state(session_id, current_index=2, elapsed_seconds=9, sequence=7, client_timestamp=earlier)
    assert older["applied"] is False
    assert older["session"]["current_index"] == 1

    redelivered = manager.save_state(session_id, current_index=1, elapsed_seconds=5, sequence=1, client_timestamp=later)
    assert redelivered["applied"] is True

    with pytest.raises(ValidationFailure):
        manager.save_state(session_id, current_index=1, elapsed_seconds=5, sequence=2)


def test_answer_racing_submit_is_rejected(make_context):
    first = QuizSessionManager(make_context("student-race"))
    second = QuizSessionManager(make_context("student-race"))
    session_id = first.start(category="Chemistry", question_count=2)["session"]["session_id"]

    # The second handle still holds the in-progress row when the first one submits.
    second.load(session_id)
    first.submit(session_id)

    with pytest.raises(StateFailure) as exc:
        second.save_answer(session_id, "A", question_index=0)
    assert exc.value.message == "Quiz already submitted"
    assert first.results(session_id)["unanswered"] == 2


def test_stale_autosave_after_pause_reports_state(make_context):
    first = QuizSessionManager(make_context("student-pause"))
    second = QuizSessionManager(make_context("student-pause"))
    session_id = first.start(category="Physics")["session"]["session_id"]

    second.load(session_id)
    first.pause(session_id)

    with pytest.raises(StateFailure) as exc:
        second.save_state(session_id, current_index=1, elapsed_seconds=3, sequence=1)
    assert exc.value.message == "Session is paused"


def test_bookmark_toggle_and_explicit_state(make_context):
    manager = QuizSessionManager(make_context())
    detail = manager.start(category="Physics")
    session_id = detail["session"]["session_id"]
    question_id = detail["questions"][1]["id"]

    assert manager.toggle_bookmark(session_id, question_id=question_id)["is_bookmarked"] is True
    assert manager.toggle_bookmark(session_id, question_id=question_id)["is_bookmarked"] is False
    assert manager.toggle_bookmark(session_id, question_index=1, bookmarked=True)["is_bookmarked"] is True
    assert manager.toggle_bookmark(session_id, question_index=1, bookmarked=True)["is_bookmarked"] is True
    assert manager.get(session_id)["bookmarks"] == [question_id]

    with pytest.raises(ValidationFailure):
        manager.toggle_bookmark(session_id, question_id=question_id, question_index=0)
