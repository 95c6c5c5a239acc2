import hashlib
import json
import logging
from collections import defaultdict
from typing import List

from openai import APIError, APITimeoutError, AuthenticationError, OpenAI
from pydantic import ValidationError

from quizdesk.config import Settings, get_settings
from quizdesk.errors import GenerationError
from quizdesk.schemas import RecommendationOut

logger = logging.getLogger(__name__)

WEAK_TOPIC_THRESHOLD = 70.0


class GenerativeClient:
    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self.api_key = settings.openai_api_key
        self.model = settings.model
        self.timeout = settings.suggestion_timeout_seconds
        # Single attempt so the timeout bounds the whole call.
        self.client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0) if self.api_key else None

    def generate(self, prompt: str, context: dict | None = None) -> str:
        if not self.client:
            raise GenerationError("OPENAI_API_KEY is required to generate suggestions")

        full_prompt = prompt
        if context:
            full_prompt = f"{prompt}\n\nContext (JSON):\n{json.dumps(context, default=str)}"

        try:
            response = self.client.responses.create(model=self.model, input=full_prompt, timeout=self.timeout)
        except APITimeoutError as exc:
            raise GenerationError(f"Model call timed out after {self.timeout}s") from exc
        except AuthenticationError as exc:
            raise GenerationError("Invalid OpenAI API key") from exc
        except APIError as exc:
            raise GenerationError(f"Model call failed: {exc.__class__.__name__}") from exc

        text = response.output_text or ""
        logger.info("Generative response length=%s", len(text))
        if not text.strip():
            raise GenerationError("Model returned empty output")
        return text


def extract_json(text: str, list_key: str | None = None):
    """Pull the JSON object out of a model reply, tolerating code fences and chatter.

    With ``list_key`` the object must hold a list of objects under that key, and
    that list is returned instead of the whole object.
    """
    if not text or not text.strip():
        raise GenerationError("Model returned empty output while JSON was expected")

    normalized = text.strip()
    if normalized.startswith("```"):
        normalized = normalized.strip("`").removeprefix("json")

    start = normalized.find("{")
    end = normalized.rfind("}")
    if start == -1 or end < start:
        preview = normalized[:200].replace("\n", " ")
        raise GenerationError(f"Model did not return a JSON object. Preview: {preview!r}")

    candidate = normalized[start : end + 1]
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        preview = candidate[:220].replace("\n", " ")
        raise GenerationError(
            f"Model returned invalid JSON ({exc.msg} at line {exc.lineno}, col {exc.colno}). Preview: {preview!r}"
        ) from exc

    if list_key is None:
        return payload
    items = payload.get(list_key)
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise GenerationError(f"Model reply has no list of objects under {list_key!r}")
    return items


def compute_performance(sessions, answer_rows, question_rows):
    """Aggregate submitted sessions into accuracy per category and a recent trend.

    Unanswered questions count against accuracy, matching session scoring.
    """
    question_lookup = {q.id: q for q in question_rows}
    correct_lookup = {(a.session_id, a.question_id): bool(a.is_correct) for a in answer_rows}
    by_topic = defaultdict(lambda: {"correct": 0, "total": 0})
    total = correct = 0

    for session in sessions:
        for qid in json.loads(session.question_ids_json):
            question = question_lookup.get(qid)
            topic = (question.category if question else None) or "uncategorized"
            is_correct = correct_lookup.get((session.id, qid), False)
            by_topic[topic]["total"] += 1
            by_topic[topic]["correct"] += int(is_correct)
            total += 1
            correct += int(is_correct)

    topics = []
    for topic, stats in by_topic.items():
        accuracy = (stats["correct"] / stats["total"] * 100.0) if stats["total"] else 0
        topics.append({"topic": topic, "correct": stats["correct"], "total": stats["total"], "accuracy": round(accuracy, 2)})
    topics.sort(key=lambda x: (x["accuracy"], x["topic"]))

    weak = [t for t in topics if t["accuracy"] < WEAK_TOPIC_THRESHOLD][:3]
    strong = [t for t in reversed(topics) if t["accuracy"] >= WEAK_TOPIC_THRESHOLD][:3]

    return {
        "total_sessions": len(sessions),
        "total_questions": total,
        "total_correct": correct,
        "overall_accuracy": round(correct / total * 100.0, 2) if total else 0.0,
        "recent_trend": _recent_trend([s.percentage or 0 for s in sessions]),
        "weak_topics": weak,
        "strong_topics": strong,
    }


def _recent_trend(percentages: List[int]) -> str:
    # Sessions arrive oldest first; compare the last three against the three before.
    if len(percentages) < 2:
        return "stable"
    recent = percentages[-3:]
    earlier = percentages[-6:-3] or percentages[:1]
    delta = sum(recent) / len(recent) - sum(earlier) / len(earlier)
    if delta > 5:
        return "improving"
    if delta < -5:
        return "declining"
    return "stable"


def performance_hash(performance: dict) -> str:
    hash_input = json.dumps(
        {
            "accuracy": round(performance["overall_accuracy"]),
            "sessions": performance["total_sessions"],
            "trend": performance["recent_trend"],
            "weak_topics": sorted(t["topic"] for t in performance["weak_topics"]),
        },
        sort_keys=True,
    )
    return hashlib.md5(hash_input.encode("utf-8")).hexdigest()


def default_recommendations(performance: dict) -> List[dict]:
    weak = [t["topic"] for t in performance["weak_topics"]]
    if not performance["total_sessions"]:
        return [
            {
                "priority": "high",
                "what": "Complete your first practice quiz",
                "why": "A finished quiz gives a baseline to measure progress against.",
                "how": ["Start a short quiz", "Answer every question", "Review the explanations afterwards"],
                "related_topics": [],
            }
        ]
    if not weak:
        return [
            {
                "priority": "medium",
                "what": "Raise the difficulty",
                "why": "Accuracy is high across every topic attempted so far.",
                "how": ["Start quizzes filtered to hard questions", "Time yourself per question"],
                "related_topics": [t["topic"] for t in performance["strong_topics"]],
            }
        ]
    return [
        {
            "priority": "high" if idx == 0 else "medium",
            "what": f"Practice deeper exercises in {topic}.",
            "why": f"{topic} is currently below {WEAK_TOPIC_THRESHOLD:.0f}% accuracy.",
            "how": [f"Start a quiz filtered to {topic}", "Review every missed explanation", "Bookmark questions to revisit"],
            "related_topics": [topic],
        }
        for idx, topic in enumerate(weak)
    ]


def recommended_difficulty(accuracy: float) -> str:
    if accuracy < 40:
        return "easy"
    if accuracy < 60:
        return "medium"
    return "hard"


def practice_suggestions(
    performance: dict, question_rows, mastered_ids, per_topic: int = 5, limit: int = 5
) -> List[dict]:
    """Stored questions to practise for each weak topic, weakest topic first.

    Questions already answered correctly are skipped; those at the recommended
    difficulty come first.
    """
    by_topic = defaultdict(list)
    for question in question_rows:
        if question.id not in mastered_ids:
            by_topic[question.category or "uncategorized"].append(question)

    suggestions = []
    for topic in performance["weak_topics"][:limit]:
        difficulty = recommended_difficulty(topic["accuracy"])
        candidates = sorted(by_topic.get(topic["topic"], []), key=lambda q: (q.difficulty != difficulty, q.id))
        if not candidates:
            continue
        suggestions.append(
            {
                "topic": topic["topic"],
                "current_accuracy": topic["accuracy"],
                "recommended_difficulty": difficulty,
                "priority_score": round(100.0 - topic["accuracy"], 2),
                "question_count": len(candidates),
                "question_ids": [q.id for q in candidates[:per_topic]],
            }
        )
    suggestions.sort(key=lambda s: s["priority_score"], reverse=True)
    return suggestions


class SuggestionService:
    def __init__(self, client: GenerativeClient | None = None):
        self.client = client or GenerativeClient()

    @staticmethod
    def build_recommendation_prompt(performance: dict) -> str:
        weak = ", ".join(f"{t['topic']} ({t['accuracy']:.1f}%)" for t in performance["weak_topics"]) or "None identified"
        strong = ", ".join(f"{t['topic']} ({t['accuracy']:.1f}%)" for t in performance["strong_topics"]) or "None identified"
        return (
            "You are an expert tutor analysing quiz performance to give actionable improvement recommendations. "
            f"Overall accuracy: {performance['overall_accuracy']:.1f}%. "
            f"Quizzes completed: {performance['total_sessions']}. "
            f"Questions attempted: {performance['total_questions']}. "
            f"Recent trend: {performance['recent_trend']}. "
            f"Weak topics: {weak}. Strong topics: {strong}. "
            "Return JSON only with key 'recommendations': a list of 3-7 objects with "
            "priority (high|medium|low), what (max 10 words), why (1-2 sentences), how (list of steps), "
            "related_topics (list of topic names). Prioritise weak topics with the lowest accuracy."
        )

    def generate_recommendations(self, performance: dict) -> List[dict]:
        text = self.client.generate(self.build_recommendation_prompt(performance))
        items = extract_json(text, list_key="recommendations")
        try:
            recommendations = [RecommendationOut(**item) for item in items]
        except ValidationError as exc:
            raise GenerationError(f"Model returned malformed recommendations: {exc}") from exc
        if not recommendations:
            raise GenerationError("Model returned no recommendations")
        logger.info("Generated %s recommendations", len(recommendations))
        return [r.model_dump() for r in recommendations]

    def explain_question(self, question: dict) -> str:
        prompt = (
            "Explain the answer to this multiple-choice question for a student reviewing their quiz. "
            "Start with the core concept, then say why the correct option is right and why each other option "
            "is wrong. Write the explanation in Markdown, at most 200 words."
        )
        return self.client.generate(prompt, {"question": question})
