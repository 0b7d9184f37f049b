"""AES-GCM 기반 인증 암호화 (키링 단위 Crypter)."""

from __future__ import annotations

import os
from typing import Protocol

from Crypto.Cipher import AES

from .encoding import decode_web_safe, encode_web_safe
from .errors import (
    BadVersionError,
    InvalidCiphertextError,
    KeyNotFoundError,
    KeyRingError,
)
from .keys import (
    KEY_HASH_SIZE,
    KeyMaterial,
    KeyMetadata,
    KeyPurpose,
    KeyStatus,
    KeyType,
    KeyVersion,
)

FORMAT_VERSION = 0
NONCE_SIZE = 12  # 96비트
TAG_SIZE = 16    # 128비트
HEADER_SIZE = 1 + KEY_HASH_SIZE
MIN_CIPHERTEXT_SIZE = HEADER_SIZE + NONCE_SIZE + TAG_SIZE


class KeyReader(Protocol):
    """키링 하나에 대한 메타데이터/키 자료 조회 인터페이스."""

    def get_metadata(self) -> str: ...

    def get_key(self, version: int | None = None) -> str | None: ...


class StaticKeyReader:
    """메모리에 고정된 키링을 읽는 KeyReader (마스터 키용)."""

    def __init__(self, metadata: KeyMetadata, keys: dict[int, KeyMaterial]) -> None:
        self._metadata = metadata
        self._keys = keys

    @classmethod
    def single(cls, name: str, key: KeyMaterial) -> StaticKeyReader:
        metadata = KeyMetadata(name, KeyPurpose.DECRYPT_AND_ENCRYPT, key.key_type)
        metadata.add_version(KeyVersion(0, KeyStatus.PRIMARY))
        return cls(metadata, {0: key})

    def get_metadata(self) -> str:
        return self._metadata.to_json()

    def get_key(self, version: int | None = None) -> str | None:
        if version is None:
            primary = self._metadata.primary_version
            if primary is None:
                return None
            version = primary.version_number
        key = self._keys.get(version)
        return key.to_json() if key else None


class Crypter:
    """키링의 모든 버전을 적재한 암복호화기.

    암호화는 PRIMARY 버전으로만 수행하고, 복호화는 암호문 헤더의
    키 해시로 버전을 찾는다. 암호문 형식:
    version(1) + key hash(4) + nonce(12) + ciphertext + GCM tag(16).
    헤더는 GCM 연관 데이터로 함께 인증된다.
    """

    def __init__(self, reader: KeyReader) -> None:
        metadata = KeyMetadata.from_json(reader.get_metadata())
        if metadata.purpose is not KeyPurpose.DECRYPT_AND_ENCRYPT:
            raise KeyRingError(f"암호화 용도가 아닌 키링: {metadata.purpose.value}")
        if metadata.key_type is not KeyType.AES:
            raise KeyRingError(f"암호화할 수 없는 키 종류: {metadata.key_type.value}")
        primary = metadata.primary_version
        if primary is None:
            raise KeyRingError(f"PRIMARY 키 버전이 없음: {metadata.name}")

        self.name = metadata.name
        self._keys: dict[bytes, KeyMaterial] = {}
        self._primary: KeyMaterial | None = None
        for version in metadata.versions:
            raw = reader.get_key(version.version_number)
            if raw is None:
                raise KeyRingError(
                    f"키 자료 누락: {metadata.name} v{version.version_number}"
                )
            key = KeyMaterial.from_json(raw)
            self._keys[key.key_hash] = key
            if version.version_number == primary.version_number:
                self._primary = key
        if self._primary is None:
            raise KeyRingError(f"PRIMARY 키 자료가 없음: {metadata.name}")

    @property
    def version_count(self) -> int:
        return len(self._keys)

    def encrypt(self, plaintext: bytes) -> bytes:
        key = self._primary
        header = bytes([FORMAT_VERSION]) + key.key_hash
        nonce = os.urandom(NONCE_SIZE)
        cipher = AES.new(key.raw, AES.MODE_GCM, nonce=nonce)
        cipher.update(header)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return header + nonce + ciphertext + tag

    def decrypt(self, data: bytes) -> bytes:
        if len(data) < MIN_CIPHERTEXT_SIZE:
            raise BadVersionError("암호문이 너무 짧음")
        if data[0] != FORMAT_VERSION:
            raise BadVersionError(f"지원하지 않는 암호문 버전: {data[0]}")
        header = data[:HEADER_SIZE]
        key = self._keys.get(header[1:])
        if key is None:
            raise KeyNotFoundError(f"키 해시 {header[1:].hex()}에 해당하는 키 없음")
        nonce = data[HEADER_SIZE:HEADER_SIZE + NONCE_SIZE]
        ciphertext = data[HEADER_SIZE + NONCE_SIZE:-TAG_SIZE]
        tag = data[-TAG_SIZE:]
        cipher = AES.new(key.raw, AES.MODE_GCM, nonce=nonce)
        cipher.update(header)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as e:
            raise InvalidCiphertextError(str(e)) from e

    def encrypt_text(self, plaintext: str) -> str:
        """문자열을 암호화하여 웹 안전 base64로 반환."""
        return encode_web_safe(self.encrypt(plaintext.encode("utf-8")))

    def decrypt_text(self, encoded: str) -> str:
        """encrypt_text의 역. 형식이 맞지 않으면 BadVersionError."""
        try:
            data = decode_web_safe(encoded)
        except ValueError as e:
            raise BadVersionError(f"base64 형식 아님: {e}") from e
        try:
            return self.decrypt(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidCiphertextError(str(e)) from e
