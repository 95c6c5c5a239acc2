import os

import pytest

from quizdesk.services import SuggestionService


@pytest.mark.integration
@pytest.mark.skipif(not os.getenv("OPENAI_API_KEY"), reason="OPENAI_API_KEY not set")
def test_live_recommendations_and_explanation():
    service = SuggestionService()
    performance = {
        "total_sessions": 4,
        "total_questions": 40,
        "total_correct": 26,
        "overall_accuracy": 65.0,
        "recent_trend": "improving",
        "weak_topics": [{"topic": "Organic chemistry", "correct": 4, "total": 10, "accuracy": 40.0}],
        "strong_topics": [{"topic": "Cell biology", "correct": 9, "total": 10, "accuracy": 90.0}],
    }

    recommendations = service.generate_recommendations(performance)

    assert 1 <= len(recommendations) <= 7
    for item in recommendations:
        assert item["priority"] in {"high", "medium", "low"}
        assert item["what"].strip()

    explanation = service.explain_question(
        {
            "question_text": "Which organelle produces most of a cell's ATP?",
            "options": {"A": "Nucleus", "B": "Mitochondria", "C": "Ribosome", "D": "Golgi apparatus"},
            "correct_option": "B",
        }
    )
    assert "mitochondria" in explanation.lower()
