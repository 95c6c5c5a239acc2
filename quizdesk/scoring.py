from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping, Sequence

OPTION_LETTERS = ("A", "B", "C", "D")
DIFFICULTY_LEVELS = ("easy", "medium", "hard")


@dataclass(frozen=True)
class QuestionOutcome:
    question_id: int
    selected_option: str | None
    correct_option: str | None
    is_correct: bool

    @property
    def answered(self) -> bool:
        return self.selected_option is not None


@dataclass(frozen=True)
class ScoreResult:
    score: int
    total: int
    incorrect: int
    unanswered: int
    percentage: int
    outcomes: list[QuestionOutcome] = field(default_factory=list)


def percentage(score: int, total: int) -> int:
    """Score as a whole percentage, halves rounded up (7/10 -> 70, 1/8 -> 13)."""
    if total <= 0:
        return 0
    return (200 * score + total) // (2 * total)


def score_answers(
    question_ids: Sequence[int],
    correct_by_question: Mapping[int, str],
    selected_by_question: Mapping[int, str],
) -> ScoreResult:
    """Count answers matching each question's correct option.

    Unanswered questions, and questions whose correct option is unknown, count as
    incorrect. Answers for questions outside ``question_ids`` are ignored.
    """
    outcomes = []
    score = incorrect = unanswered = 0
    for question_id in question_ids:
        selected = selected_by_question.get(question_id)
        correct = correct_by_question.get(question_id)
        is_correct = selected is not None and correct is not None and selected.upper() == correct.upper()
        if is_correct:
            score += 1
        elif selected is None:
            unanswered += 1
        else:
            incorrect += 1
        outcomes.append(
            QuestionOutcome(
                question_id=question_id,
                selected_option=selected,
                correct_option=correct,
                is_correct=is_correct,
            )
        )

    total = len(question_ids)
    return ScoreResult(
        score=score,
        total=total,
        incorrect=incorrect,
        unanswered=unanswered,
        percentage=percentage(score, total),
        outcomes=outcomes,
    )


def breakdown(outcomes: Sequence[QuestionOutcome], question_lookup, attribute: str, default: str = "uncategorized"):
    by_key = defaultdict(lambda: {"correct": 0, "total": 0})
    for outcome in outcomes:
        question = question_lookup.get(outcome.question_id)
        key = (getattr(question, attribute, None) if question else None) or default
        by_key[key]["total"] += 1
        by_key[key]["correct"] += int(outcome.is_correct)

    rows = []
    for key, stats in by_key.items():
        accuracy = (stats["correct"] / stats["total"] * 100.0) if stats["total"] else 0
        rows.append({"key": key, "correct": stats["correct"], "total": stats["total"], "accuracy": round(accuracy, 2)})
    rows.sort(key=lambda x: x["accuracy"], reverse=True)
    return rows
