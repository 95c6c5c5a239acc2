from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

Difficulty = Literal["easy", "medium", "hard"]


class ErrorOut(BaseModel):
    code: str
    message: str
    details: Any = None


class ErrorResponse(BaseModel):
    error: ErrorOut


# Quiz catalogue and sessions


class QuizOut(BaseModel):
    id: int
    title: str
    description: str
    category: Optional[str]
    difficulty: Optional[str]
    time_limit_minutes: int
    question_count: int


class QuizListResponse(BaseModel):
    quizzes: List[QuizOut]


class StartQuizRequest(BaseModel):
    quiz_id: Optional[int] = None
    question_ids: Optional[List[int]] = Field(default=None, min_length=1)
    category: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    question_count: Optional[int] = Field(default=None, ge=1, le=200)

    @model_validator(mode="after")
    def single_question_source(self):
        if self.quiz_id is not None and self.question_ids:
            raise ValueError("Provide either quiz_id or question_ids, not both")
        return self


class SessionQuestionOut(BaseModel):
    id: int
    position: int
    question_text: str
    options: Dict[str, str]
    category: Optional[str]
    difficulty: Optional[str]


class SessionStateOut(BaseModel):
    session_id: str
    quiz_id: Optional[int]
    status: str
    current_index: int
    total_questions: int
    answered_count: int
    elapsed_seconds: float
    time_limit_minutes: int
    state_sequence: int
    started_at: datetime
    paused_at: Optional[datetime]
    submitted_at: Optional[datetime]
    score: Optional[int]
    percentage: Optional[int]


class SessionDetailResponse(BaseModel):
    session: SessionStateOut
    questions: List[SessionQuestionOut]
    answers: Dict[int, str]
    bookmarks: List[int]
    resumed: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionStateOut]


class SessionRef(BaseModel):
    session_id: str


class SaveAnswerRequest(BaseModel):
    session_id: str
    selected_option: str
    question_index: Optional[int] = None
    question_id: Optional[int] = None
    sequence: Optional[int] = Field(default=None, ge=1)


class SaveAnswerResponse(BaseModel):
    session_id: str
    question_id: int
    question_index: int
    selected_option: str
    applied: bool
    answered_count: int


class SaveStateRequest(BaseModel):
    session_id: str
    current_index: int
    elapsed_seconds: float = Field(ge=0)
    sequence: int = Field(ge=1)
    client_timestamp: Optional[datetime] = None


class SaveStateResponse(BaseModel):
    applied: bool
    session: SessionStateOut


class BookmarkRequest(BaseModel):
    session_id: str
    question_id: Optional[int] = None
    question_index: Optional[int] = None
    bookmarked: Optional[bool] = None


class BookmarkResponse(BaseModel):
    session_id: str
    question_id: int
    is_bookmarked: bool


class SubmitResponse(BaseModel):
    session_id: str
    score: int
    total_questions: int
    percentage: int
    correct_answers: int
    incorrect_answers: int
    unanswered: int
    time_taken_seconds: int


class BreakdownOut(BaseModel):
    key: str
    correct: int
    total: int
    accuracy: float


class QuestionResultOut(BaseModel):
    question_id: int
    position: int
    question_text: str
    options: Dict[str, str]
    selected_option: Optional[str]
    correct_option: Optional[str]
    is_correct: bool
    bookmarked: bool
    category: Optional[str]
    difficulty: Optional[str]
    explanation: Optional[str]


class ResultsResponse(BaseModel):
    session_id: str
    quiz_id: Optional[int]
    quiz_title: str
    started_at: datetime
    submitted_at: Optional[datetime]
    score: int
    total_questions: int
    percentage: int
    correct_answers: int
    incorrect_answers: int
    unanswered: int
    time_taken_seconds: int
    average_time_per_question: float
    category_breakdown: List[BreakdownOut]
    difficulty_breakdown: List[BreakdownOut]
    questions: List[QuestionResultOut]


class ExplanationRequest(BaseModel):
    question_id: int


class ExplanationResponse(BaseModel):
    question_id: int
    explanation: str
    cached: bool
    source: Literal["generated", "cached", "stored", "default"]


# Suggestions


class RecommendationOut(BaseModel):
    priority: Literal["high", "medium", "low"] = "medium"
    what: str
    why: str = ""
    how: List[str] = Field(default_factory=list)
    related_topics: List[str] = Field(default_factory=list, validation_alias=AliasChoices("related_topics", "relatedTopics"))


class TopicPerformanceOut(BaseModel):
    topic: str
    correct: int
    total: int
    accuracy: float


class PerformanceOut(BaseModel):
    total_sessions: int
    total_questions: int
    total_correct: int
    overall_accuracy: float
    recent_trend: Literal["improving", "declining", "stable"]
    weak_topics: List[TopicPerformanceOut]
    strong_topics: List[TopicPerformanceOut]


class SuggestionsResponse(BaseModel):
    performance: PerformanceOut
    recommendations: List[RecommendationOut]
    source: Literal["generated", "cached", "default"]
    generated_at: datetime
    regenerations_remaining: Optional[int] = None


class PracticeSuggestionOut(BaseModel):
    topic: str
    current_accuracy: float
    recommended_difficulty: Difficulty
    priority_score: float
    question_count: int
    question_ids: List[int]


class PracticeSuggestionsResponse(BaseModel):
    suggestions: List[PracticeSuggestionOut]
    count: int


# Bulk upload


class QuestionRowIn(BaseModel):
    """One spreadsheet row as read, before validation. Every cell is text."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    row_number: Optional[int] = None
    question_text: str = ""
    option_a: str = ""
    option_b: str = ""
    option_c: str = ""
    option_d: str = ""
    correct_option: str = ""
    category: str = ""
    difficulty: str = Field(default="", validation_alias=AliasChoices("difficulty", "difficulty_level"))
    explanation: str = ""

    @field_validator("question_text", "option_a", "option_b", "option_c", "option_d", "correct_option",
                     "category", "difficulty", "explanation", mode="before")
    @classmethod
    def blank_for_none(cls, value):
        return "" if value is None else value


class NormalizedQuestion(BaseModel):
    question_text: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_option: Literal["A", "B", "C", "D"]
    category: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    explanation: Optional[str] = None


class RowIssue(BaseModel):
    field: str
    code: Literal["field_missing", "invalid_answer_key", "invalid_difficulty"]
    message: str
    value: Optional[str] = None


class ValidRow(BaseModel):
    status: Literal["valid"] = "valid"
    row_number: int
    question: NormalizedQuestion


class InvalidRow(BaseModel):
    status: Literal["invalid"] = "invalid"
    row_number: int
    issues: List[RowIssue]


class DuplicateRow(BaseModel):
    status: Literal["duplicate"] = "duplicate"
    row_number: int
    duplicate_of: Union[Literal["existing"], int]
    question: NormalizedQuestion


RowOutcome = Annotated[Union[ValidRow, InvalidRow, DuplicateRow], Field(discriminator="status")]


class UploadReport(BaseModel):
    file_name: str
    total_rows: int
    valid_count: int
    invalid_count: int
    duplicate_count: int
    rows: List[RowOutcome]

    @property
    def accepted(self) -> List[ValidRow]:
        return [row for row in self.rows if isinstance(row, ValidRow)]


class BulkInsertRequest(BaseModel):
    file_name: str = ""
    rows: List[QuestionRowIn] = Field(min_length=1)


class BulkInsertResponse(BaseModel):
    success: bool
    inserted_count: int
    quiz_id: Optional[int]
    quiz_title: str
    report: UploadReport


class DetectDuplicatesRequest(BaseModel):
    question_texts: List[str]


class DetectDuplicatesResponse(BaseModel):
    duplicates: List[str]


# Admin management


class QuestionIn(BaseModel):
    question_text: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_option: str
    category: Optional[str] = None
    difficulty: Optional[str] = None
    explanation: Optional[str] = None


class QuestionUpdateIn(BaseModel):
    question_text: Optional[str] = None
    option_a: Optional[str] = None
    option_b: Optional[str] = None
    option_c: Optional[str] = None
    option_d: Optional[str] = None
    correct_option: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    explanation: Optional[str] = None


class QuestionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    question_text: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_option: str
    category: Optional[str]
    difficulty: Optional[str]
    explanation: Optional[str]
    created_at: datetime
    updated_at: datetime


class QuestionListResponse(BaseModel):
    questions: List[QuestionOut]
    total: int


class QuizIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    category: Optional[str] = None
    difficulty: Optional[Literal["easy", "medium", "hard", "mixed"]] = None
    time_limit_minutes: Optional[int] = Field(default=None, ge=1, le=600)
    is_active: bool = True
    question_ids: List[int] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        if not value.strip():
            raise ValueError("Title is required")
        return value.strip()


class AdminQuizOut(BaseModel):
    id: int
    title: str
    description: str
    category: Optional[str]
    difficulty: Optional[str]
    time_limit_minutes: int
    is_active: bool
    question_count: int
    created_by: Optional[str]
    created_at: datetime


class AdminQuizListResponse(BaseModel):
    quizzes: List[AdminQuizOut]


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    display_name: str
    role: str
    is_suspended: bool
    created_at: datetime


class UserListResponse(BaseModel):
    users: List[UserOut]
    total: int


class RoleUpdateRequest(BaseModel):
    role: Literal["admin", "user"]


class SuspendRequest(BaseModel):
    suspended: bool
