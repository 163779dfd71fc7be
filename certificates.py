# certificates.py
# -----------------------------------------------------------------------------
# Certificate issuance + public verification + admin revoke/restore.
# - Numbers are "<prefix>-<UUID4 upper>"; one certificate per (user, course)
# - Verification lookups are audited in certificate_verifications
# - Holders download their own certificate as a PDF
# -----------------------------------------------------------------------------

import os, json, uuid, ipaddress
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Response, request, jsonify, g

from certificate_pdf import build_certificate_pdf, certificate_filename
from ratelimit import client_ip

CERTIFICATE_PREFIX = (os.getenv("CERTIFICATE_PREFIX") or "NSBS").strip()


def generate_certificate_number(prefix: str = CERTIFICATE_PREFIX) -> str:
    # uuid4 draws from os.urandom
    return f"{prefix}-{str(uuid.uuid4()).upper()}"


def issue_certificate(tx, user_id, course_slug: str, attempt_id) -> str:
    """
    Insert the (user, course) certificate or return the one already there.
    Must run inside the caller's transaction handle.
    """
    row = tx.fetch_one("""
        INSERT INTO public.certificates
            (user_id, course_slug, certificate_number, issued_at, exam_attempt_id)
        VALUES (%s, %s, %s, now(), %s)
        ON CONFLICT (user_id, course_slug) DO NOTHING
        RETURNING certificate_number;
    """, (user_id, course_slug, generate_certificate_number(), attempt_id))
    if row:
        return row["certificate_number"]
    existing = tx.fetch_one("""
        SELECT certificate_number
          FROM public.certificates
         WHERE user_id = %s AND course_slug = %s;
    """, (user_id, course_slug))
    if not existing:
        raise RuntimeError("certificate upsert returned no row")
    return existing["certificate_number"]


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value) if value is not None else None


def _valid_ip(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        return str(ipaddress.ip_address(raw.strip()))
    except ValueError:
        return None


def create_certificates_blueprint(base_path: str, deps: Dict[str, Any], name: str = "certificates") -> Blueprint:
    """
    Required deps: fetch_one, fetch_all, execute, transaction, load_course_metadata
    Optional deps: rate_limit, app_url
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/api")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    transaction: Callable = deps["transaction"]
    load_course_metadata: Callable = deps["load_course_metadata"]
    rate_limit: Optional[Callable] = deps.get("rate_limit")
    app_url: str = (deps.get("app_url") or os.getenv("APP_URL") or "").rstrip("/")

    def _err(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    def _course_title(slug: str) -> str:
        meta = load_course_metadata(slug) or {}
        return meta.get("title") or slug

    def _record_verification(certificate_id):
        try:
            execute("""
                INSERT INTO public.certificate_verifications
                    (certificate_id, verified_at, ip_address, user_agent)
                VALUES (%s, now(), %s, %s);
            """, (certificate_id, _valid_ip(client_ip()), request.headers.get("User-Agent")))
        except Exception as e:
            print(f"[certificates] verification audit failed for {certificate_id}: {e}")

    # ------------------------------ public -----------------------------------
    @bp.get("/verification/search")
    def verification_search():
        if rate_limit:
            limited = rate_limit("verification")
            if limited:
                return limited
        number = (request.args.get("number") or "").strip()
        if not number:
            return _err("Certificate number is required", 400)
        row = fetch_one("""
            SELECT id
              FROM public.certificates
             WHERE certificate_number = %s AND revoked = FALSE
             LIMIT 1;
        """, (number,))
        return jsonify({"ok": True, "certificateId": str(row["id"]) if row else None})

    @bp.get("/verification/<certificate_id>")
    def verify_certificate(certificate_id: str):
        if rate_limit:
            limited = rate_limit("verification")
            if limited:
                return limited
        try:
            cert_uuid = str(uuid.UUID(certificate_id))
        except ValueError:
            return _err("Certificate not found", 404)

        row = fetch_one("""
            SELECT c.id, c.certificate_number, c.course_slug, c.issued_at, c.revoked,
                   u.full_name AS user_name
              FROM public.certificates c
              LEFT JOIN public.users u ON u.id = c.user_id
             WHERE c.id = %s;
        """, (cert_uuid,))
        if not row:
            return _err("Certificate not found", 404)
        if row.get("revoked"):
            return _err("Certificate has been revoked", 410)

        _record_verification(row["id"])
        return jsonify({
            "ok": True,
            "valid": True,
            "certificate": {
                "id": str(row["id"]),
                "certificate_number": row["certificate_number"],
                "course_title": _course_title(row["course_slug"]),
                "user_name": row.get("user_name"),
                "issued_at": _iso(row.get("issued_at")),
            },
        })

    # ------------------------------ account ----------------------------------
    @bp.get("/account/certificates")
    def my_certificates():
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        rows = fetch_all("""
            SELECT id, certificate_number, course_slug, issued_at, revoked
              FROM public.certificates
             WHERE user_id = %s
             ORDER BY issued_at DESC;
        """, (user_id,))
        return jsonify({
            "ok": True,
            "certificates": [
                {
                    "id": str(r["id"]),
                    "certificate_number": r["certificate_number"],
                    "course_slug": r["course_slug"],
                    "course_title": _course_title(r["course_slug"]),
                    "issued_at": _iso(r.get("issued_at")),
                    "revoked": bool(r.get("revoked")),
                }
                for r in rows or []
            ],
        })

    @bp.get("/certificates/<certificate_id>/download")
    def download_certificate(certificate_id: str):
        user_id = getattr(g, "user_id", None)
        if not user_id:
            return _err("Unauthorized", 401)
        try:
            cert_uuid = str(uuid.UUID(certificate_id))
        except ValueError:
            return _err("Certificate not found", 404)

        row = fetch_one("""
            SELECT c.id, c.user_id, c.certificate_number, c.course_slug, c.issued_at, c.revoked,
                   u.full_name AS user_name
              FROM public.certificates c
              LEFT JOIN public.users u ON u.id = c.user_id
             WHERE c.id = %s;
        """, (cert_uuid,))
        # other holders' and revoked certificates look the same as missing ones
        if not row or str(row.get("user_id")) != str(user_id) or row.get("revoked"):
            return _err("Certificate not found", 404)

        try:
            pdf = build_certificate_pdf(
                row["certificate_number"],
                row.get("user_name"),
                _course_title(row["course_slug"]),
                row.get("issued_at"),
                verify_url=f"{app_url}/verify/{cert_uuid}" if app_url else None,
            )
        except Exception as e:
            print(f"[certificates] PDF build failed for {cert_uuid}: {e}")
            return _err("Failed to generate certificate", 500)

        filename = certificate_filename(row["certificate_number"])
        return Response(pdf, mimetype="application/pdf", headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
        })

    # ------------------------------ admin ------------------------------------
    def _require_admin():
        if not getattr(g, "user_id", None):
            return _err("Unauthorized", 401)
        if getattr(g, "user_role", None) != "admin":
            return _err("Admin access required", 403)
        return None

    def _set_revoked(certificate_id: str, revoke: bool):
        denied = _require_admin()
        if denied:
            return denied
        try:
            cert_uuid = str(uuid.UUID(certificate_id))
        except ValueError:
            return _err("Certificate not found", 404)
        data = request.get_json(silent=True) or {}
        reason = str(data.get("reason") or "").strip() or None
        if revoke and not reason:
            return _err("A revocation reason is required", 400)

        try:
            with transaction() as tx:
                row = tx.fetch_one("""
                    SELECT id, user_id, revoked
                      FROM public.certificates
                     WHERE id = %s
                     FOR UPDATE;
                """, (cert_uuid,))
                if not row:
                    return _err("Certificate not found", 404)
                if revoke:
                    tx.execute("""
                        UPDATE public.certificates
                           SET revoked = TRUE, revoked_at = now(), revoked_reason = %s
                         WHERE id = %s;
                    """, (reason, cert_uuid))
                else:
                    tx.execute("""
                        UPDATE public.certificates
                           SET revoked = FALSE, revoked_at = NULL, revoked_reason = NULL
                         WHERE id = %s;
                    """, (cert_uuid,))
                tx.execute("""
                    INSERT INTO public.admin_actions
                        (admin_user_id, action_type, target_user_id, target_certificate_id, details, performed_at)
                    VALUES (%s, %s, %s, %s, %s::jsonb, now());
                """, (
                    g.user_id,
                    "revoke_certificate" if revoke else "restore_certificate",
                    row["user_id"],
                    cert_uuid,
                    json.dumps({"reason": reason, "was_revoked": bool(row.get("revoked"))}),
                ))
        except Exception as e:
            print(f"[certificates] {'revoke' if revoke else 'restore'} failed for {certificate_id}: {e}")
            return _err("Failed to update certificate", 500)

        return jsonify({"ok": True, "certificateId": cert_uuid, "revoked": revoke})

    @bp.post("/admin/certificates/<certificate_id>/revoke")
    def revoke_certificate(certificate_id: str):
        return _set_revoked(certificate_id, True)

    @bp.post("/admin/certificates/<certificate_id>/restore")
    def restore_certificate(certificate_id: str):
        return _set_revoked(certificate_id, False)

    return bp
