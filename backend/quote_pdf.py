"""
PDF rendering for quotes and offer plates.

Both documents share one column grid (side borders, per-column alignment)
and page-break when a row would fall into the footer band.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from reportlab.lib.colors import HexColor, black
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

log = logging.getLogger("quote_pdf")

COMPANY = {
    "name": "i-Numera",
    "tagline": "Solutions d'assurance pour les entreprises",
    "email": "contact@i-numera.com",
}

HEADER_BG = HexColor("#dbe4f3")
BORDER_CLR = HexColor("#333333")
ROW_LINE_CLR = HexColor("#bbbbbb")
MUTED_CLR = HexColor("#888888")
PAD = 4
FOOTER_LIMIT = 90

QUOTE_COLUMNS = [
    ("OFFRE", 0.40, "C", "L"),
    ("QTÉ", 0.08, "C", "C"),
    ("MENSUEL U.", 0.16, "C", "R"),
    ("INSTALLATION", 0.16, "C", "R"),
    ("TOTAL", 0.20, "C", "R"),
]

PLATE_COLUMNS = [
    ("OFFRE", 0.44, "C", "L"),
    ("QTÉ", 0.08, "C", "C"),
    ("MENSUEL", 0.24, "C", "R"),
    ("INSTALLATION", 0.24, "C", "R"),
]

STATUS_LABELS = {
    "draft": "Brouillon",
    "pending": "En attente de validation",
    "approved": "Approuvé",
    "sent": "Envoyé",
    "accepted": "Accepté",
    "rejected": "Rejeté",
    "viewed": "Consultée",
}


def format_eur(amount: Any) -> str:
    formatted = f"{float(amount or 0):,.2f}".replace(",", " ").replace(".", ",")
    return f"{formatted} €"


def person_name(person: Optional[Dict[str, Any]]) -> str:
    if not person:
        return ""
    name = f"{person.get('first_name') or ''} {person.get('last_name') or ''}".strip()
    return name or (person.get("email") or "")


def _col_edges(columns: List[Tuple[str, float, str, str]], lm: float, tw: float) -> Tuple[List[float], List[float]]:
    widths = [tw * fraction for _, fraction, _, _ in columns]
    edges = []
    x = lm
    for w in widths:
        edges.append(x)
        x += w
    return edges, widths


def _wrap(text: str, n: int = 50) -> List[str]:
    words, lines, cur = text.split(), [], ""
    for w in words:
        candidate = cur + (" " if cur else "") + w
        if len(candidate) > n and cur:
            lines.append(cur)
            cur = w
        else:
            cur = candidate
    if cur:
        lines.append(cur)
    return lines or [""]


def _draw_cell_text(c, text, x, w, y_mid, align="C", font="Helvetica", size=9):
    """Draw single-line text in a cell at vertical center."""
    c.setFont(font, size)
    if align == "L":
        c.drawString(x + PAD, y_mid, text)
    elif align == "R":
        c.drawRightString(x + w - PAD, y_mid, text)
    else:
        c.drawCentredString(x + w / 2, y_mid, text)


def _draw_multiline(c, lines, x, y_top, font="Helvetica", size=8, line_h=11):
    c.setFont(font, size)
    ty = y_top - size - 2
    for ln in lines:
        c.drawString(x + PAD, ty, ln)
        ty -= line_h


def _draw_col_borders(c, edges, widths, y_top, y_bot, color=BORDER_CLR, width=0.3):
    """Draw vertical column dividers (side borders)."""
    c.setStrokeColor(color)
    c.setLineWidth(width)
    c.line(edges[0], y_top, edges[0], y_bot)
    right = edges[-1] + widths[-1]
    c.line(right, y_top, right, y_bot)
    for i in range(1, len(edges)):
        c.line(edges[i], y_top, edges[i], y_bot)


def _item_label(item: Dict[str, Any]) -> str:
    offer = item.get("offer") or {}
    label = offer.get("name") or item.get("offer_id") or ""
    extra_names = {extra.get("id"): extra.get("name") for extra in offer.get("extras") or []}
    selected = [
        f"{extra_names.get(extra_id, extra_id)} x{quantity}"
        for extra_id, quantity in (item.get("selected_extras") or {}).items()
        if quantity
    ]
    if selected:
        label = f"{label} (options : {', '.join(selected)})"
    return label


def _draw_header(c, title: str, reference: str, date_str: str, width: float, height: float) -> float:
    lm, rm = 40, width - 40
    y = height - 55
    c.setFillColor(black)
    c.setFont("Helvetica-Bold", 26)
    c.drawRightString(rm, y, title)
    c.setStrokeColor(black)
    c.setLineWidth(2)
    c.line(rm - 175, y - 8, rm, y - 8)

    c.setFont("Helvetica-BoldOblique", 15)
    c.drawString(lm, y, COMPANY["name"])
    c.setFont("Helvetica", 9)
    c.drawString(lm, y - 14, COMPANY["tagline"])
    c.drawString(lm, y - 27, COMPANY["email"])

    bw = 230
    bx = rm - bw
    rh = 22
    by = y - 16
    for i, (label, value) in enumerate([("RÉFÉRENCE", reference), ("DATE", date_str)]):
        ry = by - (i + 1) * rh
        c.setFillColor(HEADER_BG)
        c.rect(bx, ry, bw, rh, fill=1, stroke=0)
        c.setStrokeColor(black)
        c.setLineWidth(0.7)
        c.rect(bx, ry, bw, rh, stroke=1, fill=0)
        c.setFillColor(black)
        c.setFont("Helvetica-Bold", 10)
        c.drawString(bx + 10, ry + 7, label)
        c.setFont("Helvetica-Bold", 11)
        c.drawRightString(rm - 10, ry + 7, value)
    return by - 2 * rh - 20


def _draw_parties(c, y: float, width: float, client: Optional[Dict[str, Any]], agent: Optional[Dict[str, Any]]) -> float:
    lm = 40
    c.setFillColor(black)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(lm, y, "Client :")
    c.drawString(lm + 270, y, "Conseiller :")
    c.setFont("Helvetica", 9.5)
    client_lines = [person_name(client)]
    if client:
        client_lines.extend(
            value for value in (client.get("company_name"), client.get("email"), client.get("phone")) if value
        )
    agent_lines = [person_name(agent) or "-"]
    if agent and agent.get("email"):
        agent_lines.append(agent["email"])
    cy = y - 14
    for line in client_lines:
        c.drawString(lm, cy, line)
        cy -= 12
    ay = y - 14
    for line in agent_lines:
        c.drawString(lm + 270, ay, line)
        ay -= 12
    return min(cy, ay) - 10


def _draw_items_table(
    c,
    y: float,
    width: float,
    height: float,
    columns: List[Tuple[str, float, str, str]],
    rows: List[Tuple[str, List[str]]],
) -> float:
    """Draw the line table; each row is (description, other cell values). Returns the y below it."""
    lm, rm = 40, width - 40
    edges, widths = _col_edges(columns, lm, rm - lm)
    desc_chars = int(widths[0] / 4.6)
    page_num = 1

    def draw_table_header(y_pos: float) -> float:
        hh = 20
        hy = y_pos - hh
        c.setFillColor(HEADER_BG)
        c.rect(lm, hy, rm - lm, hh, fill=1, stroke=0)
        c.setStrokeColor(black)
        c.setLineWidth(0.7)
        c.line(lm, hy, rm, hy)
        c.line(lm, hy + hh, rm, hy + hh)
        _draw_col_borders(c, edges, widths, hy + hh, hy, BORDER_CLR, 0.5)
        c.setFillColor(black)
        for i, (label, _, header_align, _) in enumerate(columns):
            _draw_cell_text(c, label, edges[i], widths[i], hy + 6, header_align, "Helvetica-Bold", 8)
        return hy

    y = draw_table_header(y)
    table_top = y + 20
    for description, values in rows:
        lines = _wrap(description, desc_chars)
        row_h = max(22, len(lines) * 11 + 10)
        ry = y - row_h
        if ry < FOOTER_LIMIT:
            _draw_col_borders(c, edges, widths, table_top, y, BORDER_CLR, 0.5)
            c.setFont("Helvetica", 8)
            c.setFillColor(MUTED_CLR)
            c.drawRightString(rm, 25, f"Page {page_num}")
            c.showPage()
            page_num += 1
            y = draw_table_header(height - 40)
            table_top = y + 20
            ry = y - row_h

        c.setFillColor(black)
        y_mid = ry + row_h / 2 - 3
        _draw_multiline(c, lines, edges[0], y, "Helvetica", 8)
        for offset, value in enumerate(values, start=1):
            _draw_cell_text(c, value, edges[offset], widths[offset], y_mid, columns[offset][3], "Helvetica", 9)
        c.setStrokeColor(ROW_LINE_CLR)
        c.setLineWidth(0.3)
        c.line(lm, ry, rm, ry)
        y = ry

    _draw_col_borders(c, edges, widths, table_top, y, BORDER_CLR, 0.5)
    c.setStrokeColor(black)
    c.setLineWidth(0.8)
    c.line(lm, y, rm, y)
    return y


def _draw_total_rows(c, y: float, width: float, rows: List[Tuple[str, str, bool]]) -> float:
    rm = width - 40
    tot_w = 230
    tot_x = rm - tot_w
    mid_x = rm - 110
    y -= 4
    for label, value, emphasized in rows:
        trh = 20
        y -= trh
        if emphasized:
            c.setFillColor(HEADER_BG)
            c.rect(tot_x, y, tot_w, trh, fill=1, stroke=0)
        c.setStrokeColor(HexColor("#999999"))
        c.setLineWidth(0.3)
        c.rect(tot_x, y, tot_w, trh, stroke=1, fill=0)
        c.line(mid_x, y, mid_x, y + trh)
        c.setFillColor(black)
        c.setFont("Helvetica-Bold", 9)
        c.drawRightString(mid_x - PAD, y + 6, label)
        c.setFont("Helvetica-Bold" if emphasized else "Helvetica", 10)
        c.drawRightString(rm - PAD, y + 6, value)
    return y


def _ensure_room(c, y: float, needed: float, height: float) -> float:
    if y - needed < FOOTER_LIMIT:
        c.showPage()
        return height - 40
    return y


def _parse_date(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            log.warning("Unparseable document date %r, using today", value)
    return datetime.now()


def generate_quote_pdf(
    output_path: str,
    *,
    quote: Dict[str, Any],
    items: List[Dict[str, Any]],
    client: Optional[Dict[str, Any]] = None,
    agent: Optional[Dict[str, Any]] = None,
    payment_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Render a quote ("DEVIS") with its lines, total and bank details.

    Line totals charge the setup fee once per line, matching the stored
    quote total.
    """
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    width, height = A4
    c = canvas.Canvas(output_path, pagesize=A4)
    reference = str(quote.get("id") or "")[:8]
    date_str = _parse_date(quote.get("created_at")).strftime("%d/%m/%Y")

    y = _draw_header(c, "DEVIS", f"#{reference}", date_str, width, height)
    y = _draw_parties(c, y, width, client, agent)
    c.setFont("Helvetica", 9)
    c.drawString(40, y, f"Statut : {STATUS_LABELS.get(quote.get('status'), quote.get('status') or '')}")
    c.drawString(310, y, f"Paiement : {quote.get('payment_status') or 'Non Payé'}")
    y -= 14

    rows = []
    for item in items:
        offer = item.get("offer") or {}
        quantity = int(item.get("quantity") or 0)
        monthly = float(offer.get("price_monthly") or 0)
        setup = float(offer.get("setup_fee") or 0)
        rows.append(
            (
                _item_label(item),
                [str(quantity), format_eur(monthly), format_eur(setup), format_eur(monthly * quantity + setup)],
            )
        )
    y = _draw_items_table(c, y, width, height, QUOTE_COLUMNS, rows)
    y = _ensure_room(c, y, 40, height)
    y = _draw_total_rows(c, y, width, [("TOTAL", format_eur(quote.get("total_amount")), True)])

    if payment_info:
        y = _ensure_room(c, y - 20, 60, height)
        c.setFillColor(black)
        c.setFont("Helvetica-Bold", 10)
        c.drawString(40, y, "Coordonnées bancaires")
        c.setFont("Helvetica", 9)
        details = [
            f"Banque : {payment_info.get('bank_name') or ''}",
            f"IBAN : {payment_info.get('iban') or ''}",
            f"BIC : {payment_info.get('bic') or ''}",
        ]
        for line in details:
            y -= 13
            c.drawString(40, y, line)

    c.setFont("Helvetica", 8)
    c.setFillColor(MUTED_CLR)
    c.drawRightString(width - 40, 25, f"Devis #{reference}")
    c.save()
    log.info("Rendered quote PDF %s (%d lines)", output_path, len(rows))
    return {"output_path": output_path, "reference": reference, "line_item_count": len(rows)}


def generate_offer_plate_pdf(
    output_path: str,
    *,
    plate: Dict[str, Any],
    client: Optional[Dict[str, Any]] = None,
    agent: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    width, height = A4
    c = canvas.Canvas(output_path, pagesize=A4)
    items = plate.get("items") or []
    totals = plate.get("totals") or {}
    date_str = _parse_date(plate.get("sent_at") or plate.get("created_at")).strftime("%d/%m/%Y")

    y = _draw_header(c, "PLAQUETTE", str(plate.get("id") or "")[:8], date_str, width, height)
    c.setFillColor(black)
    c.setFont("Helvetica-Bold", 12)
    c.drawString(40, y, plate.get("name") or "")
    y = _draw_parties(c, y - 20, width, client, agent)

    rows = []
    for item in items:
        offer = item.get("offer") or {}
        quantity = int(item.get("quantity") or 0)
        description = _item_label(item)
        if offer.get("description"):
            description = f"{description} - {offer['description']}"
        rows.append(
            (
                description,
                [
                    str(quantity),
                    f"{format_eur(float(offer.get('price_monthly') or 0) * quantity)}/mois",
                    format_eur(float(offer.get("setup_fee") or 0) * quantity),
                ],
            )
        )
    y = _draw_items_table(c, y, width, height, PLATE_COLUMNS, rows)
    y = _ensure_room(c, y, 50, height)
    _draw_total_rows(
        c,
        y,
        width,
        [
            ("TOTAL MENSUEL", format_eur(totals.get("monthly_total")), True),
            ("INSTALLATION", format_eur(totals.get("setup_total")), False),
        ],
    )

    c.setFont("Helvetica", 8)
    c.setFillColor(MUTED_CLR)
    c.drawRightString(width - 40, 25, plate.get("name") or "")
    c.save()
    log.info("Rendered offer plate PDF %s (%d lines)", output_path, len(rows))
    return {"output_path": output_path, "line_item_count": len(rows)}
