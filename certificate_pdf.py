# certificate_pdf.py
# One-page landscape A4 certificate drawn with ReportLab, returned as bytes.

from datetime import datetime
from io import BytesIO
from typing import Any, Optional

from reportlab.lib.pagesizes import A4, landscape
from reportlab.pdfgen import canvas

# Brand colours (RGB 0-1)
EVERGREEN = (0x35 / 255.0, 0x5E / 255.0, 0x3B / 255.0)   # #355E3B
MOCHA = (0xA0 / 255.0, 0x82 / 255.0, 0x6D / 255.0)       # #A0826D
MINT_SAGE = (0x9C / 255.0, 0xAF / 255.0, 0x88 / 255.0)   # #9CAF88
PAPER = (248 / 255.0, 250 / 255.0, 252 / 255.0)


def _format_issue_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%d %B %Y")
    if value:
        try:
            return datetime.fromisoformat(str(value)).strftime("%d %B %Y")
        except ValueError:
            return str(value)
    return "-"


def certificate_filename(certificate_number: str) -> str:
    return f"NSBS-Certificate-{certificate_number}.pdf"


def build_certificate_pdf(certificate_number: str, user_name: Optional[str], course_title: str,
                          issued_at: Any, verify_url: Optional[str] = None,
                          issuer: str = "NSBS") -> bytes:
    """
    Draws the certificate for one holder:
      - recipient name and course title
      - issue date and certificate number
      - public verification link (when an app URL is known)
    """
    page_width, page_height = landscape(A4)
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(page_width, page_height))
    c.setTitle(f"Certificate {certificate_number}")

    # Background, header and footer bands
    c.setFillColorRGB(*PAPER)
    c.rect(0, 0, page_width, page_height, stroke=0, fill=1)
    c.setFillColorRGB(*EVERGREEN)
    c.rect(0, page_height * 0.905, page_width, page_height * 0.095, stroke=0, fill=1)
    c.setFillColorRGB(*MINT_SAGE)
    c.rect(0, 0, page_width, page_height * 0.095, stroke=0, fill=1)

    centre = page_width / 2
    c.setFillColorRGB(*EVERGREEN)
    c.setFont("Helvetica-Bold", 16)
    c.drawString(page_width * 0.07, page_height * 0.78, issuer)

    c.setFont("Helvetica-Bold", 32)
    c.drawCentredString(centre, page_height * 0.70, "CERTIFICATE OF COMPLETION")

    c.setFillColorRGB(*MOCHA)
    c.setFont("Helvetica", 24)
    c.drawCentredString(centre, page_height * 0.58, user_name or "Certificate Recipient")

    c.setFillColorRGB(0, 0, 0)
    c.setFont("Helvetica", 16)
    c.drawCentredString(centre, page_height * 0.49, "has successfully completed the course")

    c.setFillColorRGB(*EVERGREEN)
    c.setFont("Helvetica-Bold", 20)
    c.drawCentredString(centre, page_height * 0.40, course_title or "Course")

    c.setFillColorRGB(0, 0, 0)
    c.setFont("Helvetica", 12)
    c.drawCentredString(centre, page_height * 0.30, f"Issued on {_format_issue_date(issued_at)}")
    c.setFont("Helvetica", 10)
    c.drawCentredString(centre, page_height * 0.255, f"Certificate No: {certificate_number}")

    if verify_url:
        c.setFillColorRGB(*EVERGREEN)
        c.drawCentredString(centre, page_height * 0.21, f"Verify at: {verify_url}")

    c.setFillColorRGB(1, 1, 1)
    c.setFont("Helvetica", 12)
    c.drawCentredString(centre, page_height * 0.04, f"{issuer} Certification Program")

    c.showPage()
    c.save()
    return buf.getvalue()
