from types import SimpleNamespace

from quizdesk.scoring import breakdown, percentage, score_answers


def test_percentage_rounds_halves_up():
    assert percentage(7, 10) == 70
    assert percentage(1, 8) == 13
    assert percentage(2, 3) == 67
    assert percentage(1, 3) == 33
    assert percentage(0, 0) == 0


def test_score_counts_unanswered_as_incorrect():
    question_ids = list(range(1, 11))
    correct = {qid: "A" for qid in question_ids}
    selected = {qid: "A" for qid in range(1, 8)}
    selected[8] = "C"

    result = score_answers(question_ids, correct, selected)

    assert result.score == 7
    assert result.incorrect == 1
    assert result.unanswered == 2
    assert result.total == 10
    assert result.percentage == 70
    assert [o.answered for o in result.outcomes].count(False) == 2


def test_score_ignores_answers_outside_session_and_unknown_questions():
    result = score_answers([1, 2], {1: "B"}, {1: "b", 2: "A", 3: "A"})

    assert result.score == 1
    assert result.incorrect == 1
    assert result.total == 2
    assert result.outcomes[1].correct_option is None
    assert not result.outcomes[1].is_correct


def test_breakdown_sorted_by_accuracy():
    lookup = {
        1: SimpleNamespace(category="Biology", difficulty="easy"),
        2: SimpleNamespace(category="Biology", difficulty="hard"),
        3: SimpleNamespace(category="Physics", difficulty=None),
    }
    result = score_answers([1, 2, 3, 4], {1: "A", 2: "A", 3: "A"}, {1: "A", 2: "B", 3: "A"})

    by_category = breakdown(result.outcomes, lookup, "category")
    assert [row["key"] for row in by_category] == ["Physics", "Biology", "uncategorized"]
    assert by_category[1] == {"key": "Biology", "correct": 1, "total": 2, "accuracy": 50.0}

    by_difficulty = breakdown(result.outcomes, lookup, "difficulty", default="unrated")
    assert {row["key"] for row in by_difficulty} == {"easy", "hard", "unrated"}
