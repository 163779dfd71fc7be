import json
from pathlib import Path

import course_content_loader as ccl
from conftest import COURSE_SLUG, write_course


def test_metadata_is_read_with_slug(courses_dir):
    meta = ccl.load_course_metadata(COURSE_SLUG)
    assert meta["slug"] == COURSE_SLUG
    assert meta["title"] == "Test Course"
    assert meta["passingScore"] == 80


def test_metadata_rejects_unsafe_or_missing_slugs(courses_dir):
    assert ccl.load_course_metadata("../etc") is None
    assert ccl.load_course_metadata("Upper") is None
    assert ccl.load_course_metadata("missing-course") is None


def test_list_courses(courses_dir):
    write_course(courses_dir, slug="another-course", meta={"title": "Another"})
    assert [c["slug"] for c in ccl.list_courses()] == ["another-course", COURSE_SLUG]


def test_lessons_sorted_with_titles(courses_dir):
    write_course(courses_dir, lessons={"03-last": "No heading here", "01-intro": "# Intro\n\nHello."})
    lessons = ccl.load_course_lessons(COURSE_SLUG)
    assert [l["id"] for l in lessons] == ["01-intro", "02-next", "03-last"]
    assert [l["order"] for l in lessons] == [1, 2, 3]
    assert lessons[0]["title"] == "Intro"
    assert lessons[2]["title"] == "03-last"
    assert ccl.find_lesson(COURSE_SLUG, "02-next")["title"] == "Next"
    assert ccl.find_lesson(COURSE_SLUG, "nope") is None


def test_questions_normalized(courses_dir):
    write_course(courses_dir, questions={"questions": [
        {"id": "a", "question": "Pick two", "options": ["one", "two"], "correctAnswer": 1},
        {"id": 7, "question_text": "Legacy", "question_type": "true_false",
         "options": ["True", "False"], "correct_answer": "False"},
    ]})
    qs = ccl.load_exam_questions(COURSE_SLUG)
    assert qs == [
        {"id": "a", "question": "Pick two", "type": "multiple_choice", "options": ["one", "two"], "correct_answer": "two"},
        {"id": "7", "question": "Legacy", "type": "true_false", "options": ["True", "False"], "correct_answer": "False"},
    ]


def test_bank_rejected_when_any_question_lacks_id(courses_dir, capsys):
    write_course(courses_dir, questions=[
        {"id": "a", "question": "ok", "options": ["x"], "correctAnswer": "x"},
        {"question": "no id", "options": ["x"], "correctAnswer": "x"},
    ])
    assert ccl.load_exam_questions(COURSE_SLUG) == []
    assert "bank rejected" in capsys.readouterr().out


def test_bank_rejected_on_bad_index_or_duplicate(courses_dir):
    write_course(courses_dir, questions=[{"id": "a", "question": "q", "options": ["x"], "correctAnswer": 3}])
    assert ccl.load_exam_questions(COURSE_SLUG) == []
    write_course(courses_dir, questions=[
        {"id": "a", "question": "q", "options": ["x"], "correctAnswer": "x"},
        {"id": "a", "question": "q2", "options": ["x"], "correctAnswer": "x"},
    ])
    assert ccl.load_exam_questions(COURSE_SLUG) == []


def test_malformed_json_yields_empty_bank(courses_dir, capsys):
    (Path(courses_dir) / COURSE_SLUG / "exam" / "questions.json").write_text("{oops", encoding="utf-8")
    assert ccl.load_exam_questions(COURSE_SLUG) == []
    assert "failed to load" in capsys.readouterr().out


def test_bank_edits_are_seen_immediately(courses_dir):
    assert len(ccl.load_exam_questions(COURSE_SLUG)) == 10
    path = Path(courses_dir) / COURSE_SLUG / "exam" / "questions.json"
    path.write_text(json.dumps([{"id": "only", "question": "q", "options": ["x"], "correctAnswer": "x"}]),
                    encoding="utf-8")
    assert [q["id"] for q in ccl.load_exam_questions(COURSE_SLUG)] == ["only"]


def test_bundled_course_bank_is_valid():
    root = Path(__file__).resolve().parents[1] / "data" / "courses"
    data = json.loads((root / "nsbs-foundations" / "exam" / "questions.json").read_text(encoding="utf-8"))
    ids = [q["id"] for q in data]
    assert len(ids) == len(set(ids))
    for q in data:
        answer = q["correctAnswer"]
        assert answer in q["options"] or (isinstance(answer, int) and 0 <= answer < len(q["options"]))
