# ratelimit.py
# Fixed-window request limiting backed by the shared public.rate_limits table.
# Every app instance increments the same row for a (bucket, key, window), so
# limits hold across processes. Storage errors fail open.

import os, random, time
from typing import Any, Callable, Dict, Optional, Tuple

from flask import g, jsonify, request

DEFAULT_LIMITS = {
    "api": "100/60",
    "exam_start": "5/60",
    "exam_submit": "2/60",
    "verification": "20/60",
    "checkout": "3/60",
}
PRUNE_PROBABILITY = 0.01
PRUNE_AGE_SECONDS = 86400


def parse_limit(raw: str) -> Tuple[int, int]:
    """'<count>/<seconds>' -> (count, seconds)."""
    count, _, seconds = str(raw).partition("/")
    count_i, seconds_i = int(count), int(seconds or 60)
    if count_i < 1 or seconds_i < 1:
        raise ValueError(f"invalid rate limit '{raw}'")
    return count_i, seconds_i


def load_limits() -> Dict[str, Tuple[int, int]]:
    limits: Dict[str, Tuple[int, int]] = {}
    for bucket, default in DEFAULT_LIMITS.items():
        raw = os.getenv(f"RATE_LIMIT_{bucket.upper()}") or default
        try:
            limits[bucket] = parse_limit(raw)
        except ValueError as e:
            print(f"[ratelimit] {e}; using {default}")
            limits[bucket] = parse_limit(default)
    return limits


def client_ip() -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real = (request.headers.get("X-Real-IP") or "").strip()
    return real or request.remote_addr


def client_key() -> str:
    user_id = getattr(g, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_ip() or 'unknown'}"


def too_many_requests(retry_after: int, limit: int, message: str = "Too many requests. Please try again later."):
    resp = jsonify({"ok": False, "error": message, "retryAfter": retry_after})
    resp.status_code = 429
    resp.headers["Retry-After"] = str(retry_after)
    resp.headers["X-RateLimit-Limit"] = str(limit)
    resp.headers["X-RateLimit-Remaining"] = "0"
    return resp


def create_rate_limiter(execute_returning: Callable, execute: Callable,
                        limits: Optional[Dict[str, Tuple[int, int]]] = None,
                        clock: Callable[[], float] = time.time) -> Callable:
    """
    Returns ``rate_limit(bucket, key=None)`` which answers None when the
    request may proceed, or a ready 429 response.
    """
    table = dict(limits or load_limits())

    def _prune(now_s: int):
        if random.random() >= PRUNE_PROBABILITY:
            return
        try:
            execute("DELETE FROM public.rate_limits WHERE window_start < %s;", (now_s - PRUNE_AGE_SECONDS,))
        except Exception as e:
            print(f"[ratelimit] prune failed: {e}")

    def rate_limit(bucket: str, key: Optional[str] = None) -> Any:
        max_requests, window = table.get(bucket) or table["api"]
        now_s = int(clock())
        window_start = now_s - (now_s % window)
        ident = key or client_key()
        try:
            rows = execute_returning("""
                INSERT INTO public.rate_limits (bucket, key, window_start, count)
                VALUES (%s, %s, %s, 1)
                ON CONFLICT (bucket, key, window_start)
                DO UPDATE SET count = public.rate_limits.count + 1
                RETURNING count;
            """, (bucket, ident, window_start))
        except Exception as e:
            print(f"[ratelimit] {bucket} check failed open: {e}")
            return None
        _prune(now_s)

        count = int((rows[0] if rows else {}).get("count") or 0)
        if count > max_requests:
            retry_after = max(1, window_start + window - now_s)
            print(f"[ratelimit] {bucket} limit hit for {ident} ({count}/{max_requests})")
            return too_many_requests(retry_after, max_requests)
        return None

    return rate_limit
