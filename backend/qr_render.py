import io
from typing import Dict
from urllib.parse import urlencode

import qrcode

import config


def verification_urls(token: str, base_url: str | None = None) -> Dict[str, str]:
    origin = (base_url or config.PUBLIC_BASE_URL).rstrip("/")
    query = urlencode({"token": token})
    return {
        "verify_url": f"{origin}/verify?{query}",
        "ticket_url": f"{origin}/ticket?{query}",
    }


def render_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    image.save(buffer)
    return buffer.getvalue()
