"""Utilities for loading course metadata, lessons and exam question banks from disk.

Layout under COURSES_DIR (one directory per course slug)::

    <slug>/course/meta.json
    <slug>/exam/questions.json
    <slug>/lessons/*.md

Nothing here is cached: every call reads the files again, so an edited
question bank is picked up by the next request.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

COURSES_DIR = Path(
    os.getenv("COURSES_DIR") or (Path(__file__).resolve().parent / "data" / "courses")
)

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except Exception as exc:
        print(f"[course_content] failed to load '{path}': {exc}")
        return None


def _course_dir(slug: str) -> Optional[Path]:
    if not isinstance(slug, str) or not _SLUG_RE.match(slug):
        return None
    path = Path(COURSES_DIR) / slug
    return path if path.is_dir() else None


def load_course_metadata(slug: str) -> Optional[Dict[str, Any]]:
    """Return the course's meta.json with ``slug`` filled in, or None."""
    base = _course_dir(slug)
    if base is None:
        return None
    meta = _safe_load_json(base / "course" / "meta.json")
    if not isinstance(meta, dict):
        return None
    meta = dict(meta)
    meta["slug"] = slug
    meta.setdefault("title", slug)
    return meta


def list_courses() -> List[Dict[str, Any]]:
    root = Path(COURSES_DIR)
    if not root.is_dir():
        return []
    out: List[Dict[str, Any]] = []
    for child in sorted(root.iterdir()):
        if not child.is_dir():
            continue
        meta = load_course_metadata(child.name)
        if meta:
            out.append(meta)
    return out


def _lesson_title(body: str, fallback: str) -> str:
    for line in body.splitlines():
        line = line.strip()
        if line.startswith("#"):
            return line.lstrip("#").strip() or fallback
    return fallback


def load_course_lessons(slug: str) -> List[Dict[str, Any]]:
    """Lessons sorted by filename; the id is the file stem (``01-intro``)."""
    base = _course_dir(slug)
    if base is None:
        return []
    lessons_dir = base / "lessons"
    if not lessons_dir.is_dir():
        return []
    lessons: List[Dict[str, Any]] = []
    for order, path in enumerate(sorted(lessons_dir.glob("*.md")), start=1):
        try:
            body = path.read_text(encoding="utf-8")
        except OSError as exc:
            print(f"[course_content] failed to read lesson '{path}': {exc}")
            continue
        lessons.append({
            "id": path.stem,
            "order": order,
            "title": _lesson_title(body, path.stem),
            "content_md": body,
        })
    return lessons


def find_lesson(slug: str, lesson_id: str) -> Optional[Dict[str, Any]]:
    for lesson in load_course_lessons(slug):
        if lesson["id"] == lesson_id:
            return lesson
    return None


def _normalize_question(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    qid = raw.get("id")
    if qid is None or str(qid).strip() == "":
        return None
    text = raw.get("question") if raw.get("question") is not None else raw.get("question_text")
    options = raw.get("options") or []
    if not isinstance(options, list):
        options = []
    options = [str(o) for o in options]

    correct = raw.get("correctAnswer")
    if correct is None:
        correct = raw.get("correct_answer")
    # An integer answer is an index into options.
    if isinstance(correct, int) and not isinstance(correct, bool):
        if 0 <= correct < len(options):
            correct = options[correct]
        else:
            return None
    if correct is None:
        return None

    return {
        "id": str(qid),
        "question": str(text or ""),
        "type": str(raw.get("type") or raw.get("question_type") or "multiple_choice"),
        "options": options,
        "correct_answer": str(correct),
    }


def load_exam_questions(slug: str) -> List[Dict[str, Any]]:
    """Return the ordered question bank, or [] when it is missing or invalid.

    Every question must carry its own ``id``. A bank where any question is
    missing an id, has an out-of-range answer index or repeats an id is
    rejected as a whole.
    """
    base = _course_dir(slug)
    if base is None:
        return []
    data = _safe_load_json(base / "exam" / "questions.json")
    if isinstance(data, dict):
        data = data.get("questions")
    if not isinstance(data, list):
        return []

    questions: List[Dict[str, Any]] = []
    seen = set()
    for i, raw in enumerate(data):
        q = _normalize_question(raw) if isinstance(raw, dict) else None
        if q is None:
            print(f"[course_content] {slug}: question #{i + 1} has no id or no valid answer; bank rejected")
            return []
        if q["id"] in seen:
            print(f"[course_content] {slug}: duplicate question id '{q['id']}'; bank rejected")
            return []
        seen.add(q["id"])
        questions.append(q)
    return questions


__all__ = [
    "COURSES_DIR",
    "find_lesson",
    "list_courses",
    "load_course_lessons",
    "load_course_metadata",
    "load_exam_questions",
]
