# exam.py
# -----------------------------------------------------------------------------
# Certification exam API.
# - POST /api/exams/<slug>/start   : purchase + attempt gate, question snapshot
# - POST /api/exams/<slug>/submit  : exact-match grading, certificate on pass
# - GET  /api/exams/<slug>/status  : attempts used / remaining, active attempt
# - GET  /api/exams/<slug>/result  : latest completed attempt
# Passing score and max attempts come from the course meta or the environment;
# there is no built-in default for either.
# -----------------------------------------------------------------------------

import os, json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from flask import Blueprint, request, jsonify, g

from certificates import issue_certificate as _issue_certificate
from grading import (
    ALREADY_PASSED, MAX_ATTEMPTS_REACHED, NOT_PURCHASED,
    attempt_gate, grade_answers, is_passing, public_questions, validate_submission,
)

_GATE_ERRORS = {
    NOT_PURCHASED: ("Course not purchased", 403),
    ALREADY_PASSED: ("Exam already passed", 400),
    MAX_ATTEMPTS_REACHED: ("Maximum attempts reached", 400),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _env_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        print(f"[exam] ignoring non-integer {name}={raw!r}")
        return None


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value) if value is not None else None


def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory for the exam API under ``{base_path}/api/exams``.
    Required deps: fetch_one, fetch_all, transaction, load_course_metadata, load_exam_questions
    Optional deps: issue_certificate, notify_result, rate_limit, now
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/api/exams")

    # ---- Required deps -------------------------------------------------------
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    transaction: Callable = deps["transaction"]
    load_course_metadata: Callable = deps["load_course_metadata"]
    load_exam_questions: Callable = deps["load_exam_questions"]

    # ---- Optional deps -------------------------------------------------------
    issue_certificate: Callable = deps.get("issue_certificate") or _issue_certificate
    notify_result: Optional[Callable] = deps.get("notify_result")
    rate_limit: Optional[Callable] = deps.get("rate_limit")
    now: Callable[[], datetime] = deps.get("now") or _utcnow

    # ---- Config --------------------------------------------------------------
    ENV_PASSING_SCORE  = _env_int("EXAM_PASSING_SCORE")
    ENV_MAX_ATTEMPTS   = _env_int("EXAM_MAX_ATTEMPTS")
    TIME_LIMIT_MIN     = int(os.getenv("EXAM_TIME_LIMIT_MIN") or 90)  # 0 = no server clock
    GRACE_SECONDS      = int(os.getenv("EXAM_GRACE_SECONDS") or 300)
    APP_URL            = (os.getenv("APP_URL") or "").rstrip("/")

    def _err(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    def _exam_config(meta: Dict[str, Any]) -> Optional[Dict[str, int]]:
        passing = meta.get("passingScore")
        max_attempts = meta.get("maxAttempts")
        time_limit = meta.get("timeLimitMinutes")
        try:
            passing = int(passing) if passing is not None else ENV_PASSING_SCORE
            max_attempts = int(max_attempts) if max_attempts is not None else ENV_MAX_ATTEMPTS
            time_limit = int(time_limit) if time_limit is not None else TIME_LIMIT_MIN
        except (TypeError, ValueError) as e:
            print(f"[exam] bad exam config for {meta.get('slug')}: {e}")
            return None
        if passing is None or max_attempts is None:
            print(f"[exam] {meta.get('slug')}: passing score / max attempts not configured")
            return None
        return {"passing_score": passing, "max_attempts": max_attempts, "time_limit_min": max(0, time_limit)}

    def _has_purchase(user_id, slug: str) -> bool:
        row = fetch_one("""
            SELECT id
              FROM public.purchases
             WHERE user_id = %s AND course_slug = %s AND status = 'completed'
             LIMIT 1;
        """, (user_id, slug))
        return bool(row)

    # ------------------------------- origin -----------------------------------
    def _expected_origin() -> str:
        if APP_URL:
            p = urlsplit(APP_URL)
            return f"{p.scheme}://{p.netloc}"
        return request.host_url.rstrip("/")

    def _origin_ok() -> bool:
        origin = (request.headers.get("Origin") or "").rstrip("/")
        referer = request.headers.get("Referer") or ""
        if not origin or not referer:
            return False
        expected = _expected_origin()
        r = urlsplit(referer)
        return origin == expected and f"{r.scheme}://{r.netloc}" == expected

    # ------------------------------- attempts ---------------------------------
    def _snapshot(attempt: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = attempt.get("questions_data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                data = None
        return data if isinstance(data, list) else []

    def _deadline_passed(started_at: Any, time_limit_min: int) -> bool:
        if not time_limit_min or not isinstance(started_at, datetime):
            return False
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        deadline = started_at + timedelta(minutes=time_limit_min, seconds=GRACE_SECONDS)
        return now() > deadline

    # --------------------------------- routes ---------------------------------
    @bp.post("/<slug>/start")
    def exam_start(slug: str):
        if rate_limit:
            limited = rate_limit("exam_start")
            if limited:
                return limited
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)

        meta = load_course_metadata(slug)
        if not meta:
            return _err("Course not found", 404)
        purchased = _has_purchase(user_id, slug)
        if not purchased:
            return _err(*_GATE_ERRORS[NOT_PURCHASED])
        cfg = _exam_config(meta)
        if cfg is None:
            return _err("Exam is not configured for this course", 500)

        questions = load_exam_questions(slug)
        started_at = now()
        try:
            with transaction() as tx:
                # serialize concurrent starts for the same (user, course)
                tx.execute("SELECT pg_advisory_xact_lock(hashtext(%s));", (f"exam:{user_id}:{slug}",))
                attempts = tx.fetch_all("""
                    SELECT id, status, score, passed
                      FROM public.exam_attempts
                     WHERE user_id = %s AND course_slug = %s;
                """, (user_id, slug))
                decision = attempt_gate(attempts or [], purchased, cfg["passing_score"], cfg["max_attempts"])
                if decision in _GATE_ERRORS:
                    return _err(*_GATE_ERRORS[decision])
                if not questions:
                    return _err("Exam not available", 404)

                row = tx.fetch_one("""
                    INSERT INTO public.exam_attempts
                        (user_id, course_slug, status, started_at, questions_data)
                    VALUES (%s, %s, 'in_progress', %s, %s::jsonb)
                    RETURNING id, started_at;
                """, (user_id, slug, started_at, json.dumps(questions)))
        except Exception as e:
            print(f"[exam] start failed for user {user_id} / {slug}: {e}")
            return _err("Failed to start exam", 500)
        if not row:
            return _err("Failed to start exam", 500)

        return jsonify({
            "ok": True,
            "attemptId": str(row["id"]),
            "questions": public_questions(questions),
            "startedAt": _iso(row.get("started_at") or started_at),
            "timeLimitMinutes": cfg["time_limit_min"] or None,
        })

    @bp.post("/<slug>/submit")
    def exam_submit(slug: str):
        if not _origin_ok():
            return _err("Invalid request origin", 403)
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        if rate_limit:
            limited = rate_limit("exam_submit")
            if limited:
                return limited

        answers, time_spent, error = validate_submission(request.get_json(silent=True))
        if error:
            return _err(error, 400)

        meta = load_course_metadata(slug)
        if not meta:
            return _err("Course not found", 404)
        cfg = _exam_config(meta)
        if cfg is None:
            return _err("Exam is not configured for this course", 500)

        attempt = fetch_one("""
            SELECT id, started_at, questions_data
              FROM public.exam_attempts
             WHERE user_id = %s AND course_slug = %s AND status = 'in_progress'
             ORDER BY started_at DESC
             LIMIT 1;
        """, (user_id, slug))
        if not attempt:
            return _err("No active exam attempt found", 400)
        if _deadline_passed(attempt.get("started_at"), cfg["time_limit_min"]):
            return _err("Exam time limit exceeded", 400)

        questions = _snapshot(attempt) or load_exam_questions(slug)
        if not questions:
            return _err("Exam questions not found or empty", 404)

        result = grade_answers(questions, answers)
        passed = is_passing(result["score"], cfg["passing_score"])
        certificate_number: Optional[str] = None

        try:
            with transaction() as tx:
                updated = tx.fetch_one("""
                    UPDATE public.exam_attempts
                       SET status = 'completed',
                           completed_at = %s,
                           score = %s,
                           answers = %s::jsonb,
                           time_spent_seconds = %s,
                           passed = %s
                     WHERE id = %s AND status = 'in_progress'
                     RETURNING id;
                """, (now(), result["score"], json.dumps(result["answers"]), time_spent, passed, attempt["id"]))
                if not updated:
                    # another submit completed this attempt first
                    return _err("No active exam attempt found", 400)
                if passed:
                    try:
                        with tx.savepoint():
                            certificate_number = issue_certificate(tx, user_id, slug, attempt["id"])
                    except Exception as e:
                        print(f"[exam] certificate issue failed for attempt {attempt['id']}: {e}")
                        certificate_number = None
        except Exception as e:
            print(f"[exam] saving results failed for attempt {attempt['id']}: {e}")
            return _err("Failed to save exam results", 500)

        if notify_result:
            try:
                notify_result(
                    email=getattr(g, "user_email", None),
                    user_name=getattr(g, "user_name", None),
                    course_title=meta.get("title") or slug,
                    score=result["score"],
                    passed=passed,
                    correct=result["correct"],
                    total=result["total"],
                    passing_score=cfg["passing_score"],
                )
            except Exception as e:
                print(f"[exam] result notification failed: {e}")

        return jsonify({
            "ok": True,
            "attemptId": str(attempt["id"]),
            "score": result["score"],
            "passed": passed,
            "correctAnswers": result["correct"],
            "totalQuestions": result["total"],
            "certificateNumber": certificate_number,
        })

    @bp.get("/<slug>/status")
    def exam_status(slug: str):
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        meta = load_course_metadata(slug)
        if not meta:
            return _err("Course not found", 404)
        cfg = _exam_config(meta)
        if cfg is None:
            return _err("Exam is not configured for this course", 500)

        attempts = fetch_all("""
            SELECT id, status, score, passed, started_at
              FROM public.exam_attempts
             WHERE user_id = %s AND course_slug = %s
             ORDER BY started_at DESC;
        """, (user_id, slug)) or []
        active = next((a for a in attempts if a.get("status") == "in_progress"), None)
        passed_any = any(a.get("score") is not None and a["score"] >= cfg["passing_score"] for a in attempts)

        if passed_any:
            state = "passed"
        elif active:
            state = "in_progress"
        elif attempts:
            state = "completed"
        else:
            state = "none"

        return jsonify({
            "ok": True,
            "state": state,
            "purchased": _has_purchase(user_id, slug),
            "attemptsUsed": len(attempts),
            "maxAttempts": cfg["max_attempts"],
            "passingScore": cfg["passing_score"],
            "timeLimitMinutes": cfg["time_limit_min"] or None,
            "activeAttemptId": str(active["id"]) if active else None,
        })

    @bp.get("/<slug>/result")
    def exam_result(slug: str):
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        attempt = fetch_one("""
            SELECT id, score, passed, answers, time_spent_seconds, completed_at
              FROM public.exam_attempts
             WHERE user_id = %s AND course_slug = %s AND status = 'completed'
             ORDER BY completed_at DESC
             LIMIT 1;
        """, (user_id, slug))
        if not attempt:
            return _err("No completed exam attempt found", 404)
        cert = fetch_one("""
            SELECT certificate_number
              FROM public.certificates
             WHERE user_id = %s AND course_slug = %s AND revoked = FALSE;
        """, (user_id, slug))
        answers = attempt.get("answers")
        if isinstance(answers, str):
            answers = json.loads(answers)
        return jsonify({
            "ok": True,
            "attemptId": str(attempt["id"]),
            "score": attempt.get("score"),
            "passed": bool(attempt.get("passed")),
            "answers": answers or {},
            "timeSpentSeconds": attempt.get("time_spent_seconds"),
            "completedAt": _iso(attempt.get("completed_at")),
            "certificateNumber": (cert or {}).get("certificate_number"),
        })

    return bp
