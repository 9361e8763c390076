"""
Summary Formatting

Text, share link and e-mail renderings of an AggregateSummary. Options
with zero portions are left out of every rendering.
"""

from datetime import date
from html import escape
from typing import Optional
from urllib.parse import quote

from weekly_orders.services.aggregator import AggregateSummary

WHATSAPP_URL = "https://wa.me/?text="


def format_share_text(summary: AggregateSummary, today: Optional[date] = None) -> str:
    """
    Plain text summary for chat apps.

    One block per day with the ordered options, the day total and the
    special notes, followed by the grand total.
    """
    today = today or date.today()
    title = "► Resumen de Pedidos"
    if summary.user:
        title += f" - {summary.user}"

    blocks = [title, f"► Fecha: {today.strftime('%d/%m/%y')}", ""]

    for day in summary.orders:
        lines = [f"► {day.day.upper()}"]
        for option, count in day.nonzero_counts().items():
            lines.append(f"  • {option}: {count}")
        lines.append(f"  ► Total del día: {day.total}")
        if day.comments:
            lines.extend(["", "  ► Notas especiales:"])
            lines.extend(f"    • {comment}" for comment in day.comments)
        blocks.append("\n".join(lines))

    blocks.extend(["", f"► TOTAL GENERAL: {summary.total} pedidos"])
    return "\n\n".join(blocks)


def whatsapp_link(text: str) -> str:
    return WHATSAPP_URL + quote(text, safe="")


def email_subject(week_start: str) -> str:
    return f"Resumen de Pedidos - Semana del {week_start}"


def format_email_html(summary: AggregateSummary) -> str:
    """HTML body of the weekly summary e-mail."""
    rows = []
    for day in summary.orders:
        counts = day.nonzero_counts()
        if not counts:
            continue
        options = ", ".join(f"{escape(option)} ({count})" for option, count in counts.items())
        rows.append(
            f"<tr><td style=\"padding: 6px 12px;\">{escape(day.day)}</td>"
            f"<td style=\"padding: 6px 12px;\">{options}</td>"
            f"<td style=\"padding: 6px 12px; text-align: right;\">{day.total}</td></tr>"
        )

    comments = [
        f"<li><strong>{escape(day.day)}:</strong> {escape(comment)}</li>"
        for day in summary.orders
        for comment in day.comments
    ]
    comments_html = (
        f"<h3>Comentarios:</h3><ul>{''.join(comments)}</ul>" if comments else ""
    )

    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h1 style="color: #2563eb; text-align: center;">{escape(email_subject(summary.week_start))}</h1>
        <p style="text-align: center; color: #666;">A continuación se presenta el resumen de los pedidos para esta semana.</p>
        <table style="width: 100%; border-collapse: collapse;">
            <thead>
                <tr><th align="left">Día</th><th align="left">Opciones</th><th align="right">Total</th></tr>
            </thead>
            <tbody>{''.join(rows)}</tbody>
        </table>
        <p><strong>Total general: {summary.total} pedidos</strong></p>
        {comments_html}
        <p style="text-align: center; color: #9ca3af; font-size: 14px; margin-top: 30px;">
            Este correo fue enviado automáticamente por el Sistema de Pedidos de Comida.
        </p>
    </div>
    """


def format_email_text(summary: AggregateSummary) -> str:
    """Plain text alternative of the e-mail."""
    lines = [email_subject(summary.week_start), ""]
    for day in summary.orders:
        counts = day.nonzero_counts()
        if not counts:
            continue
        lines.append(f"{day.day}: " + ", ".join(f"{o} ({c})" for o, c in counts.items()))
        lines.extend(f"  - {comment}" for comment in day.comments)
    lines.append(f"Total general: {summary.total}")
    return "\n".join(lines)
