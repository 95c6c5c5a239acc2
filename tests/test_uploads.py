import io
import zipfile

import pytest
from openpyxl import Workbook, load_workbook

from quizdesk.errors import StructuralFailure
from quizdesk.schemas import QuestionRowIn
from quizdesk.uploads import (
    REQUIRED_COLUMNS,
    build_report,
    build_template,
    normalize_question_text,
    parse_spreadsheet,
    quiz_title_from_filename,
    validate_row,
)

MAX_BYTES = 1024 * 1024


def _row(text, **overrides):
    values = {
        "question_text": text,
        "option_a": "one",
        "option_b": "two",
        "option_c": "three",
        "option_d": "four",
        "correct_option": "A",
    }
    values.update(overrides)
    return QuestionRowIn(**values)


def test_normalize_question_text_modes():
    assert normalize_question_text("  What IS  DNA? ") == "what is  dna?"
    assert normalize_question_text("  What IS  DNA? ", "collapse_whitespace") == "what is dna?"
    assert normalize_question_text("  What IS  DNA? ", "exact") == "  What IS  DNA? "


def test_quiz_title_from_filename():
    assert quiz_title_from_filename("Biology_Practice_Test.xlsx") == "Biology Practice Test"
    assert quiz_title_from_filename("chem-midterm.csv") == "Chem Midterm"
    assert quiz_title_from_filename("") == "Imported Quiz"


def test_parse_csv_with_bom_aliases_and_blank_rows():
    content = (
        "\ufeffQuestion_Text,Option_A,Option_B,Option_C,Option_D,Correct_Answer,Difficulty_Level\n"
        "What is H2O?,Water,Salt,Sugar,Air,a,Easy\n"
        ",,,,,,\n"
        "What is NaCl?,Water,Salt,Sugar,Air,B,\n"
    ).encode("utf-8")

    rows = parse_spreadsheet("chem.csv", content, MAX_BYTES)

    assert [row.row_number for row in rows] == [2, 4]
    assert rows[0].correct_option == "a"
    assert rows[0].difficulty == "Easy"
    assert rows[1].difficulty == ""


def test_parse_xlsx_coerces_numbers_to_text():
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(REQUIRED_COLUMNS + ["category"])
    sheet.append(["What is 2 + 2?", 3, 4.0, 5, 6, "B", "Math"])
    buffer = io.BytesIO()
    workbook.save(buffer)

    rows = parse_spreadsheet("math.xlsx", buffer.getvalue(), MAX_BYTES)

    assert len(rows) == 1
    assert rows[0].option_a == "3"
    assert rows[0].option_b == "4"
    assert rows[0].category == "Math"


def test_parse_rejects_unreadable_and_oversized_files():
    with pytest.raises(StructuralFailure) as unreadable:
        parse_spreadsheet("broken.xlsx", b"this is not a workbook", MAX_BYTES)
    assert unreadable.value.code == "unreadable_file"

    with pytest.raises(StructuralFailure) as too_large:
        parse_spreadsheet("big.csv", b"x" * 20, 10)
    assert too_large.value.code == "file_too_large"
    assert too_large.value.status_code == 400

    with pytest.raises(StructuralFailure) as headerless:
        parse_spreadsheet("blank.csv", b"\n\n", MAX_BYTES)
    assert headerless.value.code == "missing_header"


def test_validate_row_reports_every_issue():
    issues = validate_row(_row("", option_c=" ", correct_option="F", difficulty="extreme"))

    assert [(i.field, i.code) for i in issues] == [
        ("question_text", "field_missing"),
        ("option_c", "field_missing"),
        ("correct_option", "invalid_answer_key"),
        ("difficulty", "invalid_difficulty"),
    ]


def test_json_rows_accept_numbers_and_nulls():
    row = QuestionRowIn(question_text="Pick 1", option_a=1, option_b=2, option_c=3, option_d=4,
                        correct_option="a", category=None)

    assert row.option_a == "1"
    assert row.category == ""
    assert validate_row(row) == []


def test_build_report_first_valid_occurrence_wins():
    rows = [
        _row("What is ATP?", option_b=""),
        _row("what is atp?"),
        _row("  WHAT IS ATP?"),
        _row("What is RNA?"),
    ]

    report = build_report("bio.csv", rows, existing_keys={"what is rna?"})

    assert [row.status for row in report.rows] == ["invalid", "valid", "duplicate", "duplicate"]
    assert report.rows[1].row_number == 3
    assert report.rows[2].duplicate_of == 3
    assert report.rows[3].duplicate_of == "existing"
    assert (report.valid_count, report.invalid_count, report.duplicate_count) == (1, 1, 2)
    assert [row.row_number for row in report.accepted] == [3]


def test_build_report_exact_mode_keeps_case_variants():
    rows = [_row("What is ATP?"), _row("what is atp?")]

    report = build_report("bio.csv", rows, existing_keys=set(), mode="exact")

    assert report.valid_count == 2


def test_template_round_trips_through_parser():
    content = build_template()

    sheet = load_workbook(io.BytesIO(content)).active
    assert sheet.title == "Questions"
    rows = parse_spreadsheet("question_template.xlsx", content, MAX_BYTES)
    assert len(rows) == 2
    assert all(validate_row(row) == [] for row in rows)


def _workbook_with_part(part_name, payload):
    source = io.BytesIO(build_template())
    target = io.BytesIO()
    with zipfile.ZipFile(source) as original, zipfile.ZipFile(target, "w") as rewritten:
        for item in original.infolist():
            data = payload if item.filename == part_name else original.read(item.filename)
            rewritten.writestr(item, data)
    return target.getvalue()


@pytest.mark.parametrize(
    "part_name, payload",
    [
        ("xl/worksheets/sheet1.xml", b"<worksheet><sheetData><row>"),
        ("xl/workbook.xml", b"<workbook"),
    ],
)
def test_parse_rejects_workbooks_with_corrupt_xml(part_name, payload):
    content = _workbook_with_part(part_name, payload)

    with pytest.raises(StructuralFailure) as exc:
        parse_spreadsheet("corrupt.xlsx", content, MAX_BYTES)
    assert exc.value.code == "unreadable_file"


def test_parse_rejects_csv_with_oversized_field():
    header = ",".join(REQUIRED_COLUMNS)
    content = f'{header}\n"{"x" * 200_000}",a,b,c,d,A\n'.encode("utf-8")

    with pytest.raises(StructuralFailure) as exc:
        parse_spreadsheet("huge.csv", content, MAX_BYTES)
    assert exc.value.code == "unreadable_file"
