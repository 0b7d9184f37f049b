"""스코프별 Crypter 생성 (Crypto Provider)."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from .encryption import Crypter
from .errors import CryptoError
from .keys import KeyPurpose, KeyType

if TYPE_CHECKING:
    from ..db.models import KeyRing
    from ..db.repository import KeyRingRepository

log = logging.getLogger(__name__)


class ScopedKeyReader:
    """KeyRingRepository에 바인딩된 한 스코프의 KeyReader.

    키링은 처음 필요할 때 한 번만 읽고, 이후 메타데이터와 모든 버전의
    키 자료는 그 행에서 꺼낸다.
    """

    def __init__(
        self,
        repo: KeyRingRepository,
        scope: str,
        purpose: KeyPurpose,
        key_type: KeyType,
        key_size: int,
    ) -> None:
        self._repo = repo
        self._scope = scope
        self._purpose = purpose
        self._type = key_type
        self._size = key_size
        self._ring: KeyRing | None = None

    def _load(self) -> KeyRing:
        if self._ring is None:
            self._ring = self._repo.fetch_or_create(
                self._scope, self._purpose, self._type, self._size
            )
        return self._ring

    def get_metadata(self) -> str:
        return self._repo.ring_metadata(self._load())

    def get_key(self, version: int | None = None) -> str | None:
        if version is None:
            return self._repo.ring_primary_key(self._load())
        return self._repo.ring_key(self._load(), version)


class CrypterFactory:
    """스코프 → Crypter. 실패 시 예외 대신 None을 반환한다."""

    def __init__(self, key_rings: KeyRingRepository) -> None:
        self._key_rings = key_rings

    def create(
        self,
        scope: str,
        purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
        key_type: KeyType = KeyType.AES,
        key_size: int = 128,
    ) -> Crypter | None:
        reader = ScopedKeyReader(self._key_rings, scope, purpose, key_type, key_size)
        try:
            return Crypter(reader)
        except (CryptoError, sqlite3.Error, ValueError):
            log.exception("Crypter 로드 실패: scope=%s", scope)
            return None
