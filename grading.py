# grading.py
# Submission validation and exact-match scoring for certification exams.

import math
from typing import Any, Dict, List, Optional, Tuple

MAX_TIME_SPENT_SECONDS = 86400

# Attempt gate decisions
ALLOWED = "allowed"
ALREADY_PASSED = "alreadyPassed"
MAX_ATTEMPTS_REACHED = "maxAttemptsReached"
NOT_PURCHASED = "notPurchased"


def validate_submission(body: Any) -> Tuple[Optional[Dict[str, Any]], Optional[int], Optional[str]]:
    """
    Returns (answers, time_spent_seconds, error). Exactly one of error or the
    (answers, time_spent) pair is set.
    """
    if not isinstance(body, dict):
        return None, None, "Invalid JSON payload"

    answers = body.get("answers")
    if not isinstance(answers, dict):
        return None, None, "Answers must be an object keyed by question ID"

    time_spent = body.get("timeSpent")
    if isinstance(time_spent, bool) or not isinstance(time_spent, (int, float)):
        return None, None, "Invalid time spent (must be 0-86400 seconds)"
    # range first: a huge JSON integer overflows float conversion
    if time_spent < 0 or time_spent > MAX_TIME_SPENT_SECONDS or not math.isfinite(time_spent):
        return None, None, "Invalid time spent (must be 0-86400 seconds)"

    return answers, int(time_spent), None


def lookup_answer(answers: Dict[str, Any], question: Dict[str, Any], index: int,
                  positional: bool = True) -> Any:
    """By question id first, then (when allowed) by 0-based position; missing -> ''."""
    qid = str(question.get("id"))
    if qid in answers:
        return answers[qid]
    pos = str(index)
    if positional and pos in answers:
        return answers[pos]
    return ""


def score_percent(correct: int, total: int) -> int:
    # round-half-up of correct/total*100 in integers
    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


def is_passing(score: int, passing_score: int) -> bool:
    return score >= passing_score


def grade_answers(questions: List[Dict[str, Any]], answers: Dict[str, Any]) -> Dict[str, Any]:
    """
    Exact equality only: no trimming, no case folding. The graded map keeps
    the submitted answer and the verdict, never the answer key.
    """
    graded: Dict[str, Dict[str, Any]] = {}
    correct = 0
    # Positional keys only count for a submission keyed purely by position;
    # once any key names a question id, "2" means question "2", not index 2.
    positional = not any(str(q.get("id")) in answers for q in questions)
    for i, q in enumerate(questions):
        submitted = lookup_answer(answers, q, i, positional)
        ok = submitted == q.get("correct_answer")
        if ok:
            correct += 1
        graded[str(q.get("id"))] = {"answer": submitted, "correct": ok}
    total = len(questions)
    return {
        "correct": correct,
        "total": total,
        "score": score_percent(correct, total),
        "answers": graded,
    }


def public_questions(questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "id": q.get("id"),
            "question": q.get("question"),
            "type": q.get("type"),
            "options": list(q.get("options") or []),
        }
        for q in questions
    ]


def attempt_gate(attempts: List[Dict[str, Any]], purchased: bool,
                 passing_score: int, max_attempts: int) -> str:
    """Decide whether a new attempt may start. ``attempts`` are all prior rows."""
    if not purchased:
        return NOT_PURCHASED
    for a in attempts:
        score = a.get("score")
        if score is not None and score >= passing_score:
            return ALREADY_PASSED
    if len(attempts) >= max_attempts:
        return MAX_ATTEMPTS_REACHED
    return ALLOWED
