"""마스터 키 로드, 생성 및 키링 래핑용 Crypter 구성."""

from __future__ import annotations

import secrets

from .encryption import Crypter, StaticKeyReader
from .keys import KeyMaterial, KeyType

MASTER_KEY_NAME = "master"


def load_master_key(hex_key: str) -> bytes:
    """64자리 hex 문자열을 32바이트 키로 변환."""
    if len(hex_key) != 64:
        raise ValueError("마스터 키는 64자리 hex 문자열이어야 합니다 (32바이트)")
    return bytes.fromhex(hex_key)


def generate_master_key() -> str:
    """새 마스터 키 생성 (64자리 hex)."""
    return secrets.token_hex(32)


def master_crypter(hex_key: str | None) -> Crypter | None:
    """마스터 키로 키링 메타데이터/키 자료를 감싸는 Crypter.

    마스터 키가 설정되지 않았으면 None (키링은 래핑 없이 저장된다).
    """
    if not hex_key:
        return None
    key = KeyMaterial(key_type=KeyType.AES, raw=load_master_key(hex_key))
    return Crypter(StaticKeyReader.single(MASTER_KEY_NAME, key))
