"""
QR binding for tickets.

The payload is derived data: a deterministic JSON document rebuilt from the
ticket whenever needed. Nothing here mutates the ticket or its state.
"""

import base64
import hashlib
import hmac
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from torneo.ticket.models import Ticket
from torneo.utils.errors import QrSignatureError
from torneo.utils.json_utils import json_dumps

QR_IMAGE_SIZE = 300
SIGNATURE_SEPARATOR = "."


def build_qr_payload(ticket: Ticket) -> str:
    """Deterministic JSON for ``{code, tournamentId, holderId, price, issuedAt}``."""
    return json_dumps(
        {
            "code": ticket.code,
            "tournamentId": ticket.tournament_id,
            "holderId": ticket.holder_id,
            "price": f"{ticket.price:.2f}",
            "issuedAt": ticket.issued_at.isoformat(),
        },
        sort_keys=True,
    )


class QrSigner:
    """HMAC-SHA256 signatures for QR payloads, checked at the venue door."""

    def __init__(self, key: str):
        if not key:
            raise ValueError("QR signing key must not be empty")
        self._key = key.encode()

    def _digest(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()

    def sign(self, payload: str) -> str:
        return f"{payload}{SIGNATURE_SEPARATOR}{self._digest(payload)}"

    def verify(self, signed: str) -> str:
        """Return the payload of a signed string.

        Raises:
            QrSignatureError: malformed input or signature mismatch
        """
        payload, sep, signature = signed.rpartition(SIGNATURE_SEPARATOR)
        if not sep or not payload:
            raise QrSignatureError("QR payload is not signed")
        if not hmac.compare_digest(self._digest(payload), signature):
            raise QrSignatureError()
        return payload


def render_qr_png_base64(content: str, size: int = QR_IMAGE_SIZE) -> str:
    """Render content as a PNG QR code and return it base64-encoded."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=10,
        border=1,
    )
    qr.add_data(content)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    img = img.resize((size, size))

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")
