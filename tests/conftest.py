import copy
import json
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest
from flask import Flask, g


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import course_content_loader  # noqa: E402


def _now():
    return datetime.now(timezone.utc)


class FakeDB:
    """In-memory stand-in for the Postgres tables, dispatching on SQL text."""

    def __init__(self):
        self.tables = {
            "users": [],
            "purchases": [],
            "exam_attempts": [],
            "certificates": [],
            "certificate_verifications": [],
            "admin_actions": [],
            "course_progress": [],
            "lesson_completions": [],
            "confirmation_events": [],
            "rate_limits": {},
        }
        self.statements = []
        self.fail_on = {}

    # ---- seeding helpers ---------------------------------------------------
    def add_user(self, email="learner@example.com", full_name="Test Learner", role="candidate"):
        row = {"id": str(uuid.uuid4()), "email": email, "full_name": full_name, "role": role}
        self.tables["users"].append(row)
        return row

    def add_purchase(self, user_id, slug, status="completed"):
        row = {
            "id": str(uuid.uuid4()), "user_id": user_id, "course_slug": slug,
            "stripe_session_id": f"cs_{uuid.uuid4().hex}", "status": status,
        }
        self.tables["purchases"].append(row)
        return row

    def add_attempt(self, user_id, slug, status="completed", score=None, started_at=None, questions=None):
        row = {
            "id": str(uuid.uuid4()), "user_id": user_id, "course_slug": slug, "status": status,
            "started_at": started_at or _now(), "completed_at": _now() if status == "completed" else None,
            "score": score, "passed": None, "answers": None, "time_spent_seconds": None,
            "questions_data": questions,
        }
        self.tables["exam_attempts"].append(row)
        return row

    def add_certificate(self, user_id, slug, number="NSBS-EXISTING", revoked=False):
        row = {
            "id": str(uuid.uuid4()), "user_id": user_id, "course_slug": slug,
            "certificate_number": number, "issued_at": _now(), "exam_attempt_id": None,
            "revoked": revoked, "revoked_at": None, "revoked_reason": None,
        }
        self.tables["certificates"].append(row)
        return row

    def attempts(self, user_id=None, slug=None):
        return [
            a for a in self.tables["exam_attempts"]
            if (user_id is None or a["user_id"] == user_id) and (slug is None or a["course_slug"] == slug)
        ]

    # ---- transactions ------------------------------------------------------
    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield FakeTx(self)
        except BaseException:
            self.tables = snapshot
            raise

    # ---- query entry points ------------------------------------------------
    def fetch_all(self, sql, params=()):
        params = tuple(params or ())
        self.statements.append((sql, params))
        for pattern, exc in self.fail_on.items():
            if pattern in sql:
                raise exc
        return self._dispatch(sql, params)

    def fetch_one(self, sql, params=()):
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def execute(self, sql, params=()):
        return len(self.fetch_all(sql, params))

    def execute_returning(self, sql, params=()):
        return self.fetch_all(sql, params)

    def executed(self, fragment):
        return [(s, p) for s, p in self.statements if fragment in s]

    # ---- dispatch ------------------------------------------------------------
    def _dispatch(self, sql, p):
        verb = sql.strip().split()[0].upper()
        t = self.tables

        if "SELECT 1 AS ok" in sql:
            return [{"ok": 1}]
        if "pg_advisory_xact_lock" in sql:
            return [{"pg_advisory_xact_lock": None}]

        # users
        if verb == "SELECT" and "FROM public.users" in sql:
            return [dict(u) for u in t["users"] if u["email"] == p[0]]
        if verb == "INSERT" and "INTO public.users" in sql:
            row = {"id": str(uuid.uuid4()), "email": p[0], "full_name": p[1], "role": "candidate"}
            t["users"].append(row)
            return [dict(row)]

        # purchases
        if verb == "SELECT" and "FROM public.purchases" in sql:
            return [
                {"id": r["id"]} for r in t["purchases"]
                if r["user_id"] == p[0] and r["course_slug"] == p[1] and r["status"] == "completed"
            ][:1]
        if verb == "INSERT" and "INTO public.purchases" in sql:
            if any(r["stripe_session_id"] == p[3] for r in t["purchases"]):
                return []
            row = {
                "id": str(uuid.uuid4()), "user_id": p[0], "course_slug": p[1],
                "stripe_payment_intent_id": p[2], "stripe_session_id": p[3],
                "amount_paid": p[4], "currency": p[5], "status": "completed",
            }
            t["purchases"].append(row)
            return [{"id": row["id"]}]

        # exam attempts
        if verb == "INSERT" and "INTO public.exam_attempts" in sql:
            row = {
                "id": str(uuid.uuid4()), "user_id": p[0], "course_slug": p[1], "status": "in_progress",
                "started_at": p[2], "completed_at": None, "score": None, "passed": None,
                "answers": None, "time_spent_seconds": None, "questions_data": json.loads(p[3]),
            }
            t["exam_attempts"].append(row)
            return [{"id": row["id"], "started_at": row["started_at"]}]
        if verb == "UPDATE" and "public.exam_attempts" in sql:
            for a in t["exam_attempts"]:
                if a["id"] == p[5] and a["status"] == "in_progress":
                    a.update({
                        "status": "completed", "completed_at": p[0], "score": p[1],
                        "answers": json.loads(p[2]), "time_spent_seconds": p[3], "passed": p[4],
                    })
                    return [{"id": a["id"]}]
            return []
        if verb == "SELECT" and "FROM public.exam_attempts" in sql:
            rows = [a for a in t["exam_attempts"] if a["user_id"] == p[0] and a["course_slug"] == p[1]]
            if "status = 'in_progress'" in sql:
                rows = [a for a in rows if a["status"] == "in_progress"]
                rows.sort(key=lambda a: a["started_at"], reverse=True)
                return [copy.deepcopy(a) for a in rows[:1]]
            if "status = 'completed'" in sql:
                rows = [a for a in rows if a["status"] == "completed"]
                rows.sort(key=lambda a: a["completed_at"], reverse=True)
                return [copy.deepcopy(a) for a in rows[:1]]
            rows.sort(key=lambda a: a["started_at"], reverse=True)
            return [copy.deepcopy(a) for a in rows]

        # certificates
        if verb == "INSERT" and "INTO public.certificates" in sql:
            if any(c["user_id"] == p[0] and c["course_slug"] == p[1] for c in t["certificates"]):
                return []
            if any(c["certificate_number"] == p[2] for c in t["certificates"]):
                raise RuntimeError("duplicate key value violates unique constraint certificates_certificate_number_key")
            row = {
                "id": str(uuid.uuid4()), "user_id": p[0], "course_slug": p[1],
                "certificate_number": p[2], "issued_at": _now(), "exam_attempt_id": p[3],
                "revoked": False, "revoked_at": None, "revoked_reason": None,
            }
            t["certificates"].append(row)
            return [{"certificate_number": row["certificate_number"]}]
        if verb == "UPDATE" and "public.certificates" in sql:
            if "revoked = TRUE" in sql:
                reason, cid = p
                changes = {"revoked": True, "revoked_at": _now(), "revoked_reason": reason}
            else:
                (cid,) = p
                changes = {"revoked": False, "revoked_at": None, "revoked_reason": None}
            hits = [c for c in t["certificates"] if c["id"] == cid]
            for c in hits:
                c.update(changes)
            return [{"id": c["id"]} for c in hits]
        if verb == "SELECT" and "FROM public.certificates c" in sql:
            out = []
            for c in t["certificates"]:
                if c["id"] == p[0]:
                    user = next((u for u in t["users"] if u["id"] == c["user_id"]), None)
                    row = dict(c)
                    row["user_name"] = user["full_name"] if user else None
                    out.append(row)
            return out
        if verb == "SELECT" and "FROM public.certificates" in sql:
            certs = t["certificates"]
            if "WHERE certificate_number = %s" in sql:
                return [{"id": c["id"]} for c in certs if c["certificate_number"] == p[0] and not c["revoked"]][:1]
            if "FOR UPDATE" in sql:
                return [dict(c) for c in certs if c["id"] == p[0]]
            if "course_slug = %s" in sql:
                rows = [c for c in certs if c["user_id"] == p[0] and c["course_slug"] == p[1]]
                if "revoked = FALSE" in sql:
                    rows = [c for c in rows if not c["revoked"]]
                return [dict(c) for c in rows]
            rows = [dict(c) for c in certs if c["user_id"] == p[0]]
            rows.sort(key=lambda c: c["issued_at"], reverse=True)
            return rows
        if verb == "INSERT" and "INTO public.certificate_verifications" in sql:
            t["certificate_verifications"].append({"certificate_id": p[0], "ip_address": p[1], "user_agent": p[2]})
            return [{}]
        if verb == "INSERT" and "INTO public.admin_actions" in sql:
            t["admin_actions"].append({
                "admin_user_id": p[0], "action_type": p[1], "target_user_id": p[2],
                "target_certificate_id": p[3], "details": json.loads(p[4]),
            })
            return [{}]

        # lessons / progress
        if verb == "INSERT" and "INTO public.lesson_completions" in sql:
            if any((r["user_id"], r["course_slug"], r["lesson_id"]) == p for r in t["lesson_completions"]):
                return []
            row = {"id": str(uuid.uuid4()), "user_id": p[0], "course_slug": p[1], "lesson_id": p[2]}
            t["lesson_completions"].append(row)
            return [{"id": row["id"]}]
        if verb == "SELECT" and "FROM public.lesson_completions" in sql:
            return [
                {"lesson_id": r["lesson_id"]} for r in t["lesson_completions"]
                if r["user_id"] == p[0] and r["course_slug"] == p[1]
            ]
        if verb == "INSERT" and "INTO public.course_progress" in sql:
            existing = next(
                (r for r in t["course_progress"] if r["user_id"] == p[0] and r["course_slug"] == p[1]), None
            )
            if "DO NOTHING" in sql:
                if existing:
                    return []
                row = {"user_id": p[0], "course_slug": p[1], "lessons_completed": [],
                       "total_lessons": p[2], "progress_percentage": 0, "completed_at": None}
                t["course_progress"].append(row)
                return [{}]
            values = {"lessons_completed": list(p[2]), "total_lessons": p[3], "progress_percentage": p[4]}
            if existing:
                existing.update(values)
                if p[5] and not existing.get("completed_at"):
                    existing["completed_at"] = _now()
            else:
                row = {"user_id": p[0], "course_slug": p[1], "completed_at": _now() if p[5] else None}
                row.update(values)
                t["course_progress"].append(row)
            return [{}]
        if verb == "UPDATE" and "public.course_progress" in sql:
            return [{}]
        if verb == "INSERT" and "INTO public.confirmation_events" in sql:
            t["confirmation_events"].append({"user_id": p[0], "event_data": json.loads(p[1])})
            return [{}]

        # rate limits
        if verb == "INSERT" and "INTO public.rate_limits" in sql:
            key = tuple(p)
            t["rate_limits"][key] = t["rate_limits"].get(key, 0) + 1
            return [{"count": t["rate_limits"][key]}]
        if verb == "DELETE" and "public.rate_limits" in sql:
            stale = [k for k in t["rate_limits"] if k[2] < p[0]]
            for k in stale:
                del t["rate_limits"][k]
            return []

        raise AssertionError(f"FakeDB does not understand: {sql.strip()[:120]}")


class FakeTx:
    def __init__(self, db):
        self._db = db

    def fetch_all(self, sql, params=()):
        return self._db.fetch_all(sql, params)

    def fetch_one(self, sql, params=()):
        return self._db.fetch_one(sql, params)

    def execute(self, sql, params=()):
        return self._db.execute(sql, params)

    @contextmanager
    def savepoint(self):
        with self._db.transaction():
            yield self


# ---------------------------------------------------------------------------
# Course content on disk
# ---------------------------------------------------------------------------
COURSE_SLUG = "test-course"


def write_course(root, slug=COURSE_SLUG, meta=None, questions=None, lessons=None):
    base = Path(root) / slug
    (base / "course").mkdir(parents=True, exist_ok=True)
    (base / "exam").mkdir(parents=True, exist_ok=True)
    (base / "lessons").mkdir(parents=True, exist_ok=True)
    meta = meta if meta is not None else {
        "title": "Test Course", "description": "A course for tests", "price": 49,
        "passingScore": 80, "maxAttempts": 2, "timeLimitMinutes": 90,
    }
    (base / "course" / "meta.json").write_text(json.dumps(meta), encoding="utf-8")
    if questions is None:
        questions = [
            {"id": f"q{i}", "question": f"Question {i}?", "options": ["A", "B", "C", "D"], "correctAnswer": "A"}
            for i in range(1, 11)
        ]
    (base / "exam" / "questions.json").write_text(json.dumps(questions), encoding="utf-8")
    for name, body in (lessons or {"01-intro": "# Intro\n\nHello.", "02-next": "# Next\n\nMore."}).items():
        (base / "lessons" / f"{name}.md").write_text(body, encoding="utf-8")
    return base


@pytest.fixture
def courses_dir(tmp_path, monkeypatch):
    write_course(tmp_path)
    monkeypatch.setattr(course_content_loader, "COURSES_DIR", tmp_path)
    return tmp_path


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def identity():
    """Mutable identity the test app attaches to ``g`` on every request."""
    return {"user_id": None, "user_email": None, "user_name": None, "user_role": None}


@pytest.fixture
def make_app(identity):
    def _make(*register):
        app = Flask(__name__)
        app.testing = True

        @app.before_request
        def _set_user():
            for k, v in identity.items():
                setattr(g, k, v)

        for fn in register:
            fn(app)
        return app

    return _make
