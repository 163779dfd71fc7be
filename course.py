# course.py
import json
from typing import Any, Dict, List

from flask import jsonify, request, g

from grading import score_percent


def register_course_routes(app, base_path: str, deps: Dict[str, Any]):
    """
    Registers:
      - GET  "/api/courses"                                     -> catalogue
      - GET  "/api/courses/<slug>"                              -> detail (+ purchase/progress when signed in)
      - GET  "/api/courses/<slug>/lessons/<lesson_id>"          -> lesson body (purchase required)
      - POST "/api/courses/<slug>/lessons/<lesson_id>/complete" -> mark complete, update progress
    Also creates BASE_PATH aliases.
    """
    fetch_one = deps["fetch_one"]
    fetch_all = deps["fetch_all"]
    execute = deps["execute"]
    transaction = deps["transaction"]
    list_courses = deps["list_courses"]
    load_course_metadata = deps["load_course_metadata"]
    load_course_lessons = deps["load_course_lessons"]

    def _alias(rule: str, view_func, methods=None, endpoint_suffix="alias"):
        if not base_path:
            return
        alias_rule = f"{base_path}{rule if rule.startswith('/') else '/' + rule}"
        endpoint = f"{view_func.__name__}_{endpoint_suffix}"
        app.add_url_rule(alias_rule, endpoint=endpoint, view_func=view_func, methods=methods or ["GET"])

    def _err(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    def _summary(meta: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "slug": meta["slug"],
            "title": meta.get("title"),
            "description": meta.get("description"),
            "price": meta.get("price"),
            "category": meta.get("category"),
            "level": meta.get("level"),
            "duration": meta.get("duration"),
        }

    def _has_purchase(user_id, slug: str) -> bool:
        row = fetch_one("""
            SELECT id
              FROM public.purchases
             WHERE user_id = %s AND course_slug = %s AND status = 'completed'
             LIMIT 1;
        """, (user_id, slug))
        return bool(row)

    def _completed_ids(user_id, slug: str) -> List[str]:
        rows = fetch_all("""
            SELECT lesson_id
              FROM public.lesson_completions
             WHERE user_id = %s AND course_slug = %s;
        """, (user_id, slug))
        return [str(r["lesson_id"]) for r in rows or []]

    def _touch_progress(user_id, slug: str):
        try:
            execute("""
                UPDATE public.course_progress
                   SET last_accessed = now()
                 WHERE user_id = %s AND course_slug = %s;
            """, (user_id, slug))
        except Exception as e:
            print(f"[course] last_accessed update failed for {user_id}/{slug}: {e}")

    # ----- Routes -----
    def courses_index():
        courses = []
        for meta in list_courses():
            item = _summary(meta)
            item["lessonCount"] = len(load_course_lessons(meta["slug"]))
            courses.append(item)
        return jsonify({"ok": True, "courses": courses})

    def course_detail(slug: str):
        meta = load_course_metadata(slug)
        if not meta:
            return _err("Course not found", 404)
        lessons = load_course_lessons(slug)
        out = _summary(meta)
        out["lessons"] = [{"id": l["id"], "title": l["title"], "order": l["order"]} for l in lessons]

        user_id = getattr(g, "user_id", None)
        if user_id:
            purchased = _has_purchase(user_id, slug)
            done = set(_completed_ids(user_id, slug)) if purchased else set()
            known = [l["id"] for l in lessons if l["id"] in done]
            out["purchased"] = purchased
            out["completedLessons"] = known
            out["progressPercentage"] = score_percent(len(known), len(lessons))
        return jsonify({"ok": True, "course": out})

    def lesson_view(slug: str, lesson_id: str):
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        if not load_course_metadata(slug):
            return _err("Course not found", 404)
        if not _has_purchase(user_id, slug):
            return _err("Course not purchased", 403)

        lessons = load_course_lessons(slug)
        ids = [l["id"] for l in lessons]
        if lesson_id not in ids:
            return _err("Lesson not found", 404)
        idx = ids.index(lesson_id)
        lesson = lessons[idx]

        _touch_progress(user_id, slug)
        return jsonify({
            "ok": True,
            "lesson": {
                "id": lesson["id"],
                "title": lesson["title"],
                "order": lesson["order"],
                "content_md": lesson["content_md"],
                "completed": lesson_id in set(_completed_ids(user_id, slug)),
                "prevLessonId": ids[idx - 1] if idx > 0 else None,
                "nextLessonId": ids[idx + 1] if idx + 1 < len(ids) else None,
            },
        })

    def lesson_complete(slug: str, lesson_id: str):
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        if not load_course_metadata(slug):
            return _err("Course not found", 404)
        if not _has_purchase(user_id, slug):
            return _err("Course not purchased", 403)
        lesson_ids = [l["id"] for l in load_course_lessons(slug)]
        if lesson_id not in lesson_ids:
            return _err("Lesson not found", 404)

        try:
            with transaction() as tx:
                row = tx.fetch_one("""
                    INSERT INTO public.lesson_completions (user_id, course_slug, lesson_id, completed_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id, course_slug, lesson_id) DO NOTHING
                    RETURNING id;
                """, (user_id, slug, lesson_id))
                if not row:
                    return jsonify({"ok": True, "message": "Already completed"})

                rows = tx.fetch_all("""
                    SELECT lesson_id
                      FROM public.lesson_completions
                     WHERE user_id = %s AND course_slug = %s;
                """, (user_id, slug))
                done = {str(r["lesson_id"]) for r in rows or []}
                completed = [lid for lid in lesson_ids if lid in done]
                pct = score_percent(len(completed), len(lesson_ids))

                tx.execute("""
                    INSERT INTO public.course_progress
                        (user_id, course_slug, lessons_completed, total_lessons,
                         progress_percentage, started_at, completed_at, last_accessed)
                    VALUES (%s, %s, %s, %s, %s, now(), CASE WHEN %s THEN now() END, now())
                    ON CONFLICT (user_id, course_slug) DO UPDATE
                       SET lessons_completed = EXCLUDED.lessons_completed,
                           total_lessons = EXCLUDED.total_lessons,
                           progress_percentage = EXCLUDED.progress_percentage,
                           completed_at = COALESCE(public.course_progress.completed_at, EXCLUDED.completed_at),
                           last_accessed = now();
                """, (user_id, slug, completed, len(lesson_ids), pct, pct >= 100))

                tx.execute("""
                    INSERT INTO public.confirmation_events (user_id, event_type, event_data, created_at)
                    VALUES (%s, 'lesson_completed', %s::jsonb, now());
                """, (user_id, json.dumps({
                    "course_slug": slug,
                    "lesson_id": lesson_id,
                    "user_agent": request.headers.get("User-Agent"),
                })))
        except Exception as e:
            print(f"[course] lesson completion failed for {user_id}/{slug}/{lesson_id}: {e}")
            return _err("Failed to mark lesson complete", 500)

        return jsonify({
            "ok": True,
            "message": "Lesson marked complete",
            "progressPercentage": pct,
            "courseCompleted": pct >= 100,
        })

    app.add_url_rule("/api/courses", view_func=courses_index, methods=["GET"], endpoint="courses_index")
    app.add_url_rule("/api/courses/<slug>", view_func=course_detail, methods=["GET"], endpoint="course_detail")
    app.add_url_rule("/api/courses/<slug>/lessons/<lesson_id>", view_func=lesson_view,
                     methods=["GET"], endpoint="lesson_view")
    app.add_url_rule("/api/courses/<slug>/lessons/<lesson_id>/complete", view_func=lesson_complete,
                     methods=["POST"], endpoint="lesson_complete")

    _alias("/api/courses", courses_index, ["GET"])
    _alias("/api/courses/<slug>", course_detail, ["GET"])
    _alias("/api/courses/<slug>/lessons/<lesson_id>", lesson_view, ["GET"])
    _alias("/api/courses/<slug>/lessons/<lesson_id>/complete", lesson_complete, ["POST"])
