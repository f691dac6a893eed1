"""
QR images and printable ticket PDFs.

QR codes are PNGs from `qrcode`; PDFs are laid out with `fpdf2` using its
built-in core fonts, so all text is folded to latin-1 before drawing.
"""
from __future__ import annotations
import io
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import qrcode
from fpdf import FPDF

DEFAULT_TERMS = [
    "This ticket is non-transferable and non-refundable",
    "Present this ticket and valid ID at the venue entrance",
    "Ticket holder agrees to comply with venue rules and regulations",
    "Event organizers reserve the right to refuse entry",
    "No re-entry allowed once you leave the venue",
]


def qr_png(payload: str, box_size: int = 8) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buf)
    return buf.getvalue()


def format_money(amount: Optional[float], currency: str) -> str:
    return f"{currency} {float(amount or 0):,.2f}"


def format_date(ts: Optional[float]) -> str:
    if ts is None:
        return "TBA"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(
        "%a, %d %b %Y %H:%M UTC"
    )


@dataclass
class TicketDocument:
    ticket_id: str
    event_name: str
    event_date: Optional[float]
    venue: str
    ticket_type: str
    seat_number: str
    price: float
    currency: str
    holder_name: str
    holder_email: str
    order_number: str
    qr_code: str
    organizer_name: str = "Event Platform"
    terms: List[str] = field(default_factory=lambda: list(DEFAULT_TERMS))


def _latin1(text: str) -> str:
    return str(text).encode("latin-1", "replace").decode("latin-1")


class TicketPdfRenderer:
    def __init__(self, page_format: str = "A5") -> None:
        self.page_format = page_format

    def render(self, doc: TicketDocument) -> bytes:
        return self.render_bulk([doc])

    def render_bulk(self, docs: Sequence[TicketDocument]) -> bytes:
        pdf = FPDF(orientation="P", unit="mm", format=self.page_format)
        pdf.set_auto_page_break(False)
        pdf.set_title("Tickets")
        for doc in docs:
            self._draw(pdf, doc)
        return bytes(pdf.output())

    def _draw(self, pdf: FPDF, doc: TicketDocument) -> None:
        pdf.add_page()
        width = pdf.w - pdf.l_margin - pdf.r_margin

        pdf.set_font("Helvetica", "B", 18)
        pdf.multi_cell(width, 9, _latin1(doc.event_name), align="C",
                       new_x="LMARGIN", new_y="NEXT")
        pdf.set_font("Helvetica", "", 10)
        pdf.cell(width, 6, _latin1(format_date(doc.event_date)), align="C",
                 new_x="LMARGIN", new_y="NEXT")
        pdf.cell(width, 6, _latin1(doc.venue), align="C",
                 new_x="LMARGIN", new_y="NEXT")
        pdf.ln(3)

        size = 50
        pdf.image(io.BytesIO(qr_png(doc.qr_code)),
                  x=(pdf.w - size) / 2, y=pdf.get_y(), w=size, h=size)
        pdf.set_y(pdf.get_y() + size + 2)
        pdf.set_font("Courier", "", 9)
        pdf.cell(width, 5, _latin1(doc.qr_code), align="C",
                 new_x="LMARGIN", new_y="NEXT")
        pdf.ln(3)

        rows = [
            ("Holder", doc.holder_name),
            ("Email", doc.holder_email),
            ("Ticket type", doc.ticket_type),
            ("Seat", doc.seat_number),
            ("Price", format_money(doc.price, doc.currency)),
            ("Order", doc.order_number),
            ("Ticket", doc.ticket_id),
            ("Organizer", doc.organizer_name),
        ]
        for label, value in rows:
            pdf.set_font("Helvetica", "B", 9)
            pdf.cell(28, 6, _latin1(label))
            pdf.set_font("Helvetica", "", 9)
            pdf.cell(width - 28, 6, _latin1(value),
                     new_x="LMARGIN", new_y="NEXT")

        if doc.terms:
            pdf.ln(3)
            pdf.set_font("Helvetica", "B", 8)
            pdf.cell(width, 5, "Terms and conditions",
                     new_x="LMARGIN", new_y="NEXT")
            pdf.set_font("Helvetica", "", 7)
            for term in doc.terms:
                pdf.multi_cell(width, 4, _latin1(f"- {term}"),
                               new_x="LMARGIN", new_y="NEXT")
