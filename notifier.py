# notifier.py
# Exam result email over the Resend HTTP API, sent off the request thread.

import os, time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional, Tuple

import requests
from markupsafe import escape

RESEND_API_URL = "https://api.resend.com/emails"
RESEND_API_KEY = os.getenv("RESEND_API_KEY") or ""
RESEND_FROM = os.getenv("RESEND_FROM") or "NSBS Certification <noreply@example.com>"
APP_NAME = os.getenv("APP_NAME") or "NSBS Certification"

EMAIL_MAX_TRIES = int(os.getenv("EMAIL_MAX_TRIES") or 3)
EMAIL_BACKOFF_SECONDS = float(os.getenv("EMAIL_BACKOFF_SECONDS") or 1.0)

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")


class EmailSendError(RuntimeError):
    pass


def send_email(to: str, subject: str, html: str, *,
               api_key: Optional[str] = None, sender: Optional[str] = None,
               max_tries: int = EMAIL_MAX_TRIES, backoff: float = EMAIL_BACKOFF_SECONDS) -> Dict[str, Any]:
    """
    POST one message to Resend. 5xx responses and transport errors are retried
    with exponential backoff; 4xx responses raise immediately.
    """
    key = api_key or RESEND_API_KEY
    if not key:
        raise EmailSendError("RESEND_API_KEY missing")
    payload = {
        "from": sender or RESEND_FROM,
        "to": [to],
        "subject": subject,
        "html": html,
    }

    last_error = "no attempt made"
    for attempt in range(max(1, max_tries)):
        if attempt:
            time.sleep(backoff * (2 ** (attempt - 1)))
        try:
            r = requests.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
                json=payload, timeout=30,
            )
        except requests.RequestException as e:
            last_error = f"transport error: {e}"
            continue
        if r.status_code >= 500:
            last_error = f"Resend error {r.status_code}: {r.text[:200]}"
            continue
        if r.status_code >= 400:
            raise EmailSendError(f"Resend error {r.status_code}: {r.text[:200]}")
        try:
            return r.json() or {}
        except ValueError:
            return {}
    raise EmailSendError(f"giving up after {max(1, max_tries)} tries: {last_error}")


def render_result_email(course_title: str, score: int, passed: bool, correct: int, total: int,
                        passing_score: int, user_name: Optional[str] = None) -> Tuple[str, str]:
    """Returns (subject, html)."""
    subject = f"Exam Results - {course_title}"
    result = "PASSED" if passed else "FAILED"
    colour = "#047857" if passed else "#b91c1c"
    if passed:
        closing = (
            "<p>Congratulations! You passed the exam and your certificate has been issued. "
            "You can view and share it from your account.</p>"
        )
    else:
        closing = (
            f"<p>You did not reach the passing score of {int(passing_score)}%. "
            "Review the course material and retake the exam if you have attempts remaining.</p>"
        )
    greeting = f"Hi {escape(user_name)}," if user_name else "Hi,"
    html = f"""
<div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Arial,sans-serif;line-height:1.5;color:#111827">
  <h2>Exam Results: {escape(course_title)}</h2>
  <p>{greeting}</p>
  <p><strong>Score:</strong> {int(score)}%</p>
  <p><strong>Result:</strong> <span style="color:{colour}">{result}</span></p>
  <p><strong>Correct Answers:</strong> {int(correct)} of {int(total)}</p>
  {closing}
  <p>{escape(APP_NAME)}</p>
</div>"""
    return subject, html


def send_result_email(email: str, course_title: str, score: int, passed: bool, correct: int,
                      total: int, passing_score: int, user_name: Optional[str] = None) -> bool:
    """Never raises; a failed email is logged and reported as False."""
    try:
        subject, html = render_result_email(course_title, score, passed, correct, total,
                                            passing_score, user_name=user_name)
        send_email(email, subject, html)
        print(f"[notify] result email sent to {email} ({course_title})", flush=True)
        return True
    except Exception as e:
        print(f"[notify] result email to {email} failed: {e}", flush=True)
        return False


def dispatch_result_email(email: Optional[str] = None, **kwargs) -> Optional[Future]:
    """Queue the result email on the worker pool; no email on file -> skipped."""
    if not email:
        print("[notify] no email on file; result email skipped")
        return None
    return _executor.submit(send_result_email, email, **kwargs)
