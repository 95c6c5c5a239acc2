from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError

from quizdesk.config import Settings
from quizdesk.errors import GenerationError
from quizdesk.services import (
    GenerativeClient,
    SuggestionService,
    compute_performance,
    default_recommendations,
    extract_json,
    performance_hash,
    practice_suggestions,
    recommended_difficulty,
)


class FakeClient:
    def __init__(self, text):
        self.text = text
        self.prompts = []

    def generate(self, prompt, context=None):
        self.prompts.append((prompt, context))
        return self.text


class TimeoutResponses:
    def create(self, **kwargs):
        raise APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/responses"))


def _session(session_id, question_ids, percentage):
    return SimpleNamespace(id=session_id, question_ids_json=str(question_ids), percentage=percentage)


def _performance():
    questions = [
        SimpleNamespace(id=1, category="Biology"),
        SimpleNamespace(id=2, category="Biology"),
        SimpleNamespace(id=3, category="Physics"),
    ]
    sessions = [_session("s1", [1, 2, 3], 33), _session("s2", [1, 2, 3], 67)]
    answers = [
        SimpleNamespace(session_id="s1", question_id=3, is_correct=True),
        SimpleNamespace(session_id="s1", question_id=1, is_correct=False),
        SimpleNamespace(session_id="s2", question_id=3, is_correct=True),
        SimpleNamespace(session_id="s2", question_id=1, is_correct=True),
    ]
    return compute_performance(sessions, answers, questions)


def test_compute_performance_splits_weak_and_strong_topics():
    performance = _performance()

    assert performance["total_sessions"] == 2
    assert performance["total_questions"] == 6
    assert performance["total_correct"] == 3
    assert performance["overall_accuracy"] == 50.0
    assert performance["recent_trend"] == "improving"
    assert [t["topic"] for t in performance["weak_topics"]] == ["Biology"]
    assert performance["weak_topics"][0]["accuracy"] == 25.0
    assert [t["topic"] for t in performance["strong_topics"]] == ["Physics"]


def test_performance_hash_ignores_small_accuracy_changes():
    performance = _performance()
    nudged = dict(performance, overall_accuracy=50.2)

    assert performance_hash(performance) == performance_hash(nudged)
    assert performance_hash(performance) != performance_hash(dict(performance, total_sessions=3))


def test_default_recommendations_target_weak_topics():
    recommendations = default_recommendations(_performance())

    assert recommendations[0]["priority"] == "high"
    assert recommendations[0]["related_topics"] == ["Biology"]


def test_generate_recommendations_parses_fenced_json():
    client = FakeClient(
        '```json\n{"recommendations": [{"priority": "high", "what": "Drill enzyme kinetics", '
        '"why": "Biology accuracy is 25%.", "how": ["Redo missed questions"], "relatedTopics": ["Biology"]}]}\n```'
    )
    service = SuggestionService(client=client)

    recommendations = service.generate_recommendations(_performance())

    assert recommendations[0]["what"] == "Drill enzyme kinetics"
    assert recommendations[0]["related_topics"] == ["Biology"]
    assert "Biology (25.0%)" in client.prompts[0][0]


def test_generate_recommendations_rejects_malformed_output():
    service = SuggestionService(client=FakeClient('{"recommendations": [{"priority": "urgent"}]}'))
    with pytest.raises(GenerationError):
        service.generate_recommendations(_performance())

    empty = SuggestionService(client=FakeClient('{"recommendations": []}'))
    with pytest.raises(GenerationError):
        empty.generate_recommendations(_performance())


def test_extract_json_errors_are_generation_errors():
    assert extract_json('Sure! {"a": 1}') == {"a": 1}
    with pytest.raises(GenerationError):
        extract_json("no json here")
    with pytest.raises(GenerationError):
        extract_json('{"a": }')


def test_client_without_key_fails_fast():
    client = GenerativeClient(Settings(openai_api_key=None))
    with pytest.raises(GenerationError) as exc:
        client.generate("hello")
    assert "OPENAI_API_KEY" in str(exc.value)


def test_timeout_maps_to_generation_error():
    client = GenerativeClient(Settings(openai_api_key="test-key", suggestion_timeout_seconds=0.5))
    client.client = SimpleNamespace(responses=TimeoutResponses())

    with pytest.raises(GenerationError) as exc:
        client.generate("hello")
    assert "timed out" in str(exc.value)


def test_explain_question_sends_question_context():
    client = FakeClient("Mitochondria produce ATP.")
    service = SuggestionService(client=client)

    text = service.explain_question({"question_text": "Powerhouse of the cell?", "correct_option": "B"})

    assert text == "Mitochondria produce ATP."
    assert client.prompts[0][1] == {"question": {"question_text": "Powerhouse of the cell?", "correct_option": "B"}}
    assert "Markdown" in client.prompts[0][0]


def test_extract_json_list_key_requires_list_of_objects():
    assert extract_json('{"recommendations": [{"what": "x"}]}', list_key="recommendations") == [{"what": "x"}]

    for reply in (
        '{"recommendations": "study more"}',
        '{"recommendations": ["study more"]}',
        '{"advice": []}',
    ):
        with pytest.raises(GenerationError):
            extract_json(reply, list_key="recommendations")


def test_generate_recommendations_rejects_non_list_payload():
    service = SuggestionService(client=FakeClient('{"recommendations": {"what": "Study"}}'))
    with pytest.raises(GenerationError):
        service.generate_recommendations(_performance())


def test_recommended_difficulty_bands():
    assert [recommended_difficulty(a) for a in (0, 39.9, 40, 59.9, 60)] == ["easy", "easy", "medium", "medium", "hard"]


def test_practice_suggestions_prefer_recommended_difficulty():
    performance = {
        "weak_topics": [
            {"topic": "Biology", "accuracy": 25.0},
            {"topic": "uncategorized", "accuracy": 50.0},
            {"topic": "Chemistry", "accuracy": 10.0},
        ]
    }
    questions = [
        SimpleNamespace(id=10, category="Biology", difficulty="hard"),
        SimpleNamespace(id=11, category="Biology", difficulty="easy"),
        SimpleNamespace(id=12, category="Biology", difficulty="easy"),
        SimpleNamespace(id=13, category=None, difficulty="medium"),
        SimpleNamespace(id=14, category="Physics", difficulty="easy"),
    ]

    suggestions = practice_suggestions(performance, questions, mastered_ids={12}, per_topic=2)

    # Chemistry has no stored questions to practise, so it is left out.
    assert [s["topic"] for s in suggestions] == ["Biology", "uncategorized"]
    assert suggestions[0]["question_ids"] == [11, 10]
    assert suggestions[0]["question_count"] == 2
    assert suggestions[0]["priority_score"] == 75.0
    assert suggestions[1]["recommended_difficulty"] == "medium"
    assert suggestions[1]["question_ids"] == [13]
