import json
from io import BytesIO
from typing import Optional

import qrcode
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from errors import ValidationError
from schemas import Visit


def parse_qr_payload(raw: str) -> str:
    """Return the visit id carried by a scanned QR code.

    Codes produced by ``qr_payload`` are JSON objects with an ``id`` (older
    passes used ``visitorId``); anything else is taken as a bare id.
    """
    text = (raw or "").strip()
    if not text:
        raise ValidationError("QR code is empty")
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict):
        visit_id = data.get("id") or data.get("visitorId")
        if not visit_id:
            raise ValidationError("QR code does not carry a visitor id")
        return str(visit_id)
    return text


def qr_payload(visit: Visit) -> str:
    return json.dumps({
        "id": visit.id,
        "name": visit.name,
        "contact": visit.contact_number,
        "department": visit.department,
        "timestamp": visit.created_at.isoformat(),
        "type": "visitor_entry",
    })


def render_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(border=2, box_size=8)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    out = BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def render_pass_pdf(visit: Visit, qr_png: Optional[bytes] = None) -> bytes:
    """Printable visitor badge with the check-in QR code."""
    qr_png = qr_png or render_qr_png(qr_payload(visit))
    out = BytesIO()
    c = canvas.Canvas(out, pagesize=letter)
    c.setTitle(f"Visitor Pass - {visit.name}")
    c.setFont("Helvetica-Bold", 18)
    c.drawString(72, 720, "Visitor Pass")
    c.setFont("Helvetica", 12)
    c.drawString(72, 690, f"Name: {visit.name}")
    c.drawString(72, 670, f"Contact: {visit.contact_number}")
    c.drawString(72, 650, f"To meet: {visit.whom_to_meet} ({visit.department})")
    c.drawString(72, 630, f"Purpose: {visit.purpose_of_visit}")
    c.drawString(72, 610, f"Status: {visit.status}")
    c.drawString(72, 590, f"Registered: {visit.created_at.strftime('%Y-%m-%d %H:%M')}")
    c.drawImage(ImageReader(BytesIO(qr_png)), 72, 400, width=160, height=160)
    c.setFont("Helvetica", 9)
    c.drawString(72, 385, f"Pass ID: {visit.id}")
    c.showPage()
    c.save()
    return out.getvalue()
