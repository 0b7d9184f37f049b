"""암호화 계층 예외 정의."""

from __future__ import annotations


class CryptoError(Exception):
    """암호화 관련 오류의 기본 클래스."""


class BadVersionError(CryptoError):
    """암호문 헤더의 버전/형식이 맞지 않음 (평문일 가능성)."""


class KeyNotFoundError(CryptoError):
    """암호문의 키 해시에 해당하는 키 버전이 키링에 없음."""


class InvalidCiphertextError(CryptoError):
    """GCM 태그 검증 실패 (변조 또는 잘못된 키)."""


class KeyRingError(CryptoError):
    """키 메타데이터나 키 자료가 손상되었거나 용도가 맞지 않음."""
