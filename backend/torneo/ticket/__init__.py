"""Ticket aggregate, code generation, QR binding and application service."""

from torneo.ticket.codes import CODE_ALPHABET, TicketCodeGenerator
from torneo.ticket.models import (
    TICKET_TRANSITIONS,
    Ticket,
    TicketMetrics,
    TicketStatus,
)
from torneo.ticket.qr import QrSigner, build_qr_payload, render_qr_png_base64

__all__ = [
    "CODE_ALPHABET",
    "QrSigner",
    "TICKET_TRANSITIONS",
    "Ticket",
    "TicketCodeGenerator",
    "TicketMetrics",
    "TicketStatus",
    "build_qr_payload",
    "render_qr_png_base64",
]
