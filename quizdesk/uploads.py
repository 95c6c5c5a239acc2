import csv
import io
import logging
import re
import zipfile
from collections import Counter
from typing import Iterable, List, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils.exceptions import InvalidFileException

from quizdesk.context import RequestContext
from quizdesk.errors import StructuralFailure
from quizdesk.models import Question, Quiz, QuizQuestion
from quizdesk.schemas import (
    BulkInsertResponse,
    DuplicateRow,
    InvalidRow,
    NormalizedQuestion,
    QuestionRowIn,
    RowIssue,
    UploadReport,
    ValidRow,
)
from quizdesk.scoring import DIFFICULTY_LEVELS, OPTION_LETTERS

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["question_text", "option_a", "option_b", "option_c", "option_d", "correct_option"]
OPTIONAL_COLUMNS = ["category", "difficulty", "explanation"]
COLUMN_ALIASES = {"difficulty_level": "difficulty", "correct_answer": "correct_option"}
ALLOWED_EXTENSIONS = (".xlsx", ".csv")

TEMPLATE_ROWS = [
    {
        "question_text": "What is the powerhouse of the cell?",
        "option_a": "Nucleus",
        "option_b": "Mitochondria",
        "option_c": "Ribosome",
        "option_d": "Golgi apparatus",
        "correct_option": "B",
        "category": "Biology",
        "difficulty": "easy",
        "explanation": "Mitochondria are known as the powerhouse of the cell.",
    },
    {
        "question_text": "What is the SI unit of force?",
        "option_a": "Joule",
        "option_b": "Newton",
        "option_c": "Watt",
        "option_d": "Pascal",
        "correct_option": "B",
        "category": "Physics",
        "difficulty": "medium",
        "explanation": "The newton (N) is the SI unit of force.",
    },
]


def normalize_question_text(text: str, mode: str = "trim_casefold") -> str:
    if mode == "exact":
        return text
    if mode == "collapse_whitespace":
        return " ".join(text.split()).casefold()
    return text.strip().casefold()


def quiz_title_from_filename(file_name: str) -> str:
    stem = re.sub(r"\.(xlsx|xls|csv)$", "", (file_name or "").strip(), flags=re.IGNORECASE)
    stem = re.sub(r"[_-]+", " ", stem).strip()
    if not stem:
        return "Imported Quiz"
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), stem)


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _normalize_header(cell) -> str:
    name = _cell_text(cell).replace("\ufeff", "").strip().lower()
    return COLUMN_ALIASES.get(name, name)


def _read_xlsx_rows(content: bytes) -> List[list]:
    # Sheet XML is parsed lazily, so rows are materialised inside the guard. Malformed
    # XML raises a SyntaxError subclass under both the stdlib and lxml parsers.
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        try:
            if not workbook.worksheets:
                raise StructuralFailure("Spreadsheet has no worksheets", code="no_worksheet")
            return [list(row) for row in workbook.worksheets[0].iter_rows(values_only=True)]
        finally:
            workbook.close()
    except (InvalidFileException, zipfile.BadZipFile, SyntaxError, KeyError, ValueError, OSError) as exc:
        raise StructuralFailure("Spreadsheet could not be read", code="unreadable_file") from exc


def _read_csv_rows(content: bytes) -> List[list]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise StructuralFailure("CSV file must be UTF-8 encoded", code="unreadable_file") from exc
    try:
        return [row for row in csv.reader(io.StringIO(text))]
    except csv.Error as exc:
        raise StructuralFailure(f"CSV file could not be read: {exc}", code="unreadable_file") from exc


def parse_spreadsheet(file_name: str, content: bytes, max_bytes: int) -> List[QuestionRowIn]:
    """Read the first sheet into rows keyed by normalized header.

    Raises ``StructuralFailure`` for anything that prevents reading rows at all;
    row content is not judged here.
    """
    if not content:
        raise StructuralFailure("Uploaded file is empty", code="empty_file")
    if len(content) > max_bytes:
        raise StructuralFailure(
            f"File size exceeds {max_bytes // (1024 * 1024)}MB limit",
            code="file_too_large",
            details={"size_bytes": len(content), "max_bytes": max_bytes},
        )
    extension = file_name[file_name.rfind(".") :].lower() if "." in (file_name or "") else ""
    if extension not in ALLOWED_EXTENSIONS:
        raise StructuralFailure(
            "Only .xlsx and .csv files are supported",
            code="unsupported_format",
            details={"extension": extension},
        )

    raw_rows = _read_xlsx_rows(content) if extension == ".xlsx" else _read_csv_rows(content)
    header_index = next((i for i, row in enumerate(raw_rows) if any(_cell_text(c).strip() for c in row)), None)
    if header_index is None:
        raise StructuralFailure("Spreadsheet has no header row", code="missing_header")

    headers = [_normalize_header(cell) for cell in raw_rows[header_index]]
    missing = [col for col in REQUIRED_COLUMNS if col not in headers]
    if missing:
        raise StructuralFailure(
            f"Missing required columns: {', '.join(missing)}",
            code="missing_columns",
            details={"missing_columns": missing},
        )

    wanted = set(REQUIRED_COLUMNS + OPTIONAL_COLUMNS)
    rows = []
    for offset, raw in enumerate(raw_rows[header_index + 1 :], start=header_index + 2):
        values = {}
        for column, cell in zip(headers, raw):
            if column in wanted and column not in values:
                values[column] = _cell_text(cell)
        if not any(v.strip() for v in values.values()):
            continue
        rows.append(QuestionRowIn(row_number=offset, **values))
    return rows


def validate_row(row: QuestionRowIn) -> List[RowIssue]:
    issues = []
    if not row.question_text.strip():
        issues.append(RowIssue(field="question_text", code="field_missing", message="Question text is required"))
    for letter in OPTION_LETTERS:
        field = f"option_{letter.lower()}"
        if not getattr(row, field).strip():
            issues.append(RowIssue(field=field, code="field_missing", message=f"Option {letter} is required"))

    answer_key = row.correct_option.strip()
    if not answer_key:
        issues.append(RowIssue(field="correct_option", code="field_missing", message="Correct option is required"))
    elif answer_key.upper() not in OPTION_LETTERS:
        issues.append(
            RowIssue(
                field="correct_option",
                code="invalid_answer_key",
                message="Correct option must be A, B, C, or D",
                value=answer_key,
            )
        )

    difficulty = row.difficulty.strip()
    if difficulty and difficulty.lower() not in DIFFICULTY_LEVELS:
        issues.append(
            RowIssue(
                field="difficulty",
                code="invalid_difficulty",
                message="Difficulty must be easy, medium, or hard",
                value=difficulty,
            )
        )
    return issues


def normalize_row(row: QuestionRowIn) -> NormalizedQuestion:
    return NormalizedQuestion(
        question_text=row.question_text.strip(),
        option_a=row.option_a.strip(),
        option_b=row.option_b.strip(),
        option_c=row.option_c.strip(),
        option_d=row.option_d.strip(),
        correct_option=row.correct_option.strip().upper(),
        category=row.category.strip() or None,
        difficulty=row.difficulty.strip().lower() or None,
        explanation=row.explanation.strip() or None,
    )


def build_report(
    file_name: str,
    rows: Sequence[QuestionRowIn],
    existing_keys: Iterable[str],
    mode: str = "trim_casefold",
) -> UploadReport:
    """Classify every row as valid, invalid or duplicate.

    Only valid rows claim a duplicate key, so the first valid occurrence of a
    question wins and later ones point back at its row number.
    """
    existing = set(existing_keys)
    seen: dict[str, int] = {}
    outcomes = []
    for index, row in enumerate(rows):
        row_number = row.row_number if row.row_number is not None else index + 2
        issues = validate_row(row)
        if issues:
            outcomes.append(InvalidRow(row_number=row_number, issues=issues))
            continue

        question = normalize_row(row)
        key = normalize_question_text(question.question_text, mode)
        if key in existing:
            outcomes.append(DuplicateRow(row_number=row_number, duplicate_of="existing", question=question))
        elif key in seen:
            outcomes.append(DuplicateRow(row_number=row_number, duplicate_of=seen[key], question=question))
        else:
            seen[key] = row_number
            outcomes.append(ValidRow(row_number=row_number, question=question))

    counts = Counter(outcome.status for outcome in outcomes)
    return UploadReport(
        file_name=file_name,
        total_rows=len(outcomes),
        valid_count=counts["valid"],
        invalid_count=counts["invalid"],
        duplicate_count=counts["duplicate"],
        rows=outcomes,
    )


def build_template() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Questions"
    columns = REQUIRED_COLUMNS + OPTIONAL_COLUMNS
    sheet.append(columns)
    for cell in sheet[1]:
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = PatternFill(start_color="4F81BD", end_color="4F81BD", fill_type="solid")
        cell.alignment = Alignment(horizontal="center")
    for row in TEMPLATE_ROWS:
        sheet.append([row[column] for column in columns])

    widths = {"question_text": 50, "correct_option": 15, "difficulty": 15, "explanation": 50}
    for idx, column in enumerate(columns, start=1):
        sheet.column_dimensions[sheet.cell(row=1, column=idx).column_letter].width = widths.get(column, 30)

    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


class UploadPipeline:
    def __init__(self, ctx: RequestContext):
        ctx.require_admin()
        self.ctx = ctx
        self.repo = ctx.repo
        self.mode = ctx.settings.duplicate_normalization

    def _existing_keys(self) -> set[str]:
        texts = self.repo.read(lambda db: [text for (text,) in db.query(Question.question_text).all()])
        return {normalize_question_text(text, self.mode) for text in texts}

    def validate_upload(self, file_name: str, content: bytes) -> UploadReport:
        rows = parse_spreadsheet(file_name, content, self.ctx.settings.max_upload_bytes)
        report = build_report(file_name, rows, self._existing_keys(), self.mode)
        logger.info(
            "Validated upload %r (rows=%s, valid=%s, invalid=%s, duplicate=%s)",
            file_name,
            report.total_rows,
            report.valid_count,
            report.invalid_count,
            report.duplicate_count,
        )
        return report

    def detect_duplicates(self, question_texts: List[str]) -> List[str]:
        existing = self._existing_keys()
        return [text for text in question_texts if normalize_question_text(text, self.mode) in existing]

    def bulk_insert(self, file_name: str, rows: Sequence[QuestionRowIn]) -> BulkInsertResponse:
        # The store may have changed since the preview, so classification reruns here.
        report = build_report(file_name, rows, self._existing_keys(), self.mode)
        accepted = report.accepted
        quiz_title = quiz_title_from_filename(file_name)
        if not accepted:
            logger.warning("Bulk insert for %r had no insertable rows", file_name)
            return BulkInsertResponse(success=False, inserted_count=0, quiz_id=None, quiz_title=quiz_title, report=report)

        admin_id = self.ctx.identity.user_id
        questions = [
            Question(**row.question.model_dump(), created_by=admin_id)
            for row in accepted
        ]
        self.repo.insert_all(questions)

        categories = Counter(q.category for q in questions if q.category)
        difficulties = {q.difficulty for q in questions}
        quiz = Quiz(
            title=quiz_title,
            description=f"Imported from {file_name or 'spreadsheet upload'}",
            category=categories.most_common(1)[0][0] if categories else None,
            difficulty=difficulties.pop() if len(difficulties) == 1 else None,
            time_limit_minutes=self.ctx.settings.default_time_limit_minutes,
            created_by=admin_id,
        )
        self.repo.insert(quiz)
        self.repo.insert_all(
            [QuizQuestion(quiz_id=quiz.id, question_id=q.id, position=pos) for pos, q in enumerate(questions)]
        )
        self.repo.commit()

        logger.info(
            "Bulk inserted %s questions from %r into quiz %s (skipped invalid=%s, duplicate=%s)",
            len(questions),
            file_name,
            quiz.id,
            report.invalid_count,
            report.duplicate_count,
        )
        return BulkInsertResponse(
            success=True,
            inserted_count=len(questions),
            quiz_id=quiz.id,
            quiz_title=quiz_title,
            report=report,
        )
