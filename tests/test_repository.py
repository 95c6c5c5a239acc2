import pytest
from sqlalchemy.exc import OperationalError

from quizdesk.database import Base, SessionLocal, engine
from quizdesk.errors import UpstreamFailure
from quizdesk.models import Question
from quizdesk.repository import Repository


def setup_module():
    Base.metadata.create_all(bind=engine)


class FlakyRead:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, db):
        self.calls += 1
        if self.calls <= self.failures:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return "ok"


def _question(text):
    return Question(
        question_text=text, option_a="a", option_b="b", option_c="c", option_d="d", correct_option="A"
    )


def test_clean_read_is_retried_once():
    db = SessionLocal()
    try:
        read = FlakyRead(failures=1)
        assert Repository(db).read(read) == "ok"
        assert read.calls == 2

        always_failing = FlakyRead(failures=2)
        with pytest.raises(UpstreamFailure):
            Repository(db).read(always_failing)
        assert always_failing.calls == 2
    finally:
        db.close()


def test_read_after_flushed_write_fails_without_retry():
    db = SessionLocal()
    try:
        repo = Repository(db)
        repo.insert(_question("Flushed but never committed?"))
        read = FlakyRead(failures=1)

        with pytest.raises(UpstreamFailure):
            repo.read(read)
        assert read.calls == 1
        assert repo.count(Question, Question.question_text == "Flushed but never committed?") == 0
    finally:
        db.close()


def test_commit_clears_pending_write_state():
    db = SessionLocal()
    try:
        repo = Repository(db)
        question = repo.insert(_question("Committed before a flaky read?"))
        repo.commit()
        read = FlakyRead(failures=1)

        assert repo.read(read) == "ok"
        assert read.calls == 2
        repo.delete(question)
        repo.commit()
    finally:
        db.close()
