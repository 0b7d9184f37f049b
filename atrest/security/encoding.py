"""웹 안전 base64 인코딩 (패딩 없음)."""

from __future__ import annotations

import base64


def encode_web_safe(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def decode_web_safe(text: str | bytes) -> bytes:
    """웹 안전 base64 디코딩. 알파벳 외 문자나 잘못된 길이는 ValueError."""
    if isinstance(text, str):
        text = text.encode("ascii")  # 비 ASCII는 UnicodeEncodeError (ValueError)
    text = text.rstrip(b"=")
    if len(text) % 4 == 1:
        raise ValueError("잘못된 base64 길이")
    padded = text + b"=" * (-len(text) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)
