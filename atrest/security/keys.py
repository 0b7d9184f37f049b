"""키 종류, 용도, 버전 메타데이터 및 키 자료 직렬화."""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .encoding import decode_web_safe, encode_web_safe
from .errors import KeyRingError

KEY_HASH_SIZE = 4


class KeyPurpose(str, Enum):
    DECRYPT_AND_ENCRYPT = "DECRYPT_AND_ENCRYPT"
    ENCRYPT = "ENCRYPT"
    SIGN_AND_VERIFY = "SIGN_AND_VERIFY"
    VERIFY = "VERIFY"
    TEST = "TEST"


class KeyStatus(str, Enum):
    PRIMARY = "PRIMARY"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class KeyType(str, Enum):
    """키 종류별 허용 크기(비트)와 기본 크기."""

    AES = "AES"
    HMAC_SHA256 = "HMAC_SHA256"

    @property
    def acceptable_sizes(self) -> tuple[int, ...]:
        if self is KeyType.AES:
            return (128, 192, 256)
        return (256,)

    @property
    def default_size(self) -> int:
        return self.acceptable_sizes[0]

    def is_acceptable_size(self, size: int) -> bool:
        return size in self.acceptable_sizes

    def clamp_size(self, size: int) -> int:
        """허용되지 않는 크기는 기본 크기로 대체."""
        return size if self.is_acceptable_size(size) else self.default_size


@dataclass
class KeyVersion:
    """키링 내 한 세대의 키 버전."""

    version_number: int
    status: KeyStatus = KeyStatus.PRIMARY
    exportable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "versionNumber": self.version_number,
            "status": self.status.value,
            "exportable": self.exportable,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> KeyVersion:
        return cls(
            version_number=int(d["versionNumber"]),
            status=KeyStatus(d.get("status", KeyStatus.ACTIVE.value)),
            exportable=bool(d.get("exportable", False)),
        )


@dataclass
class KeyMetadata:
    """키링 메타데이터: 이름(스코프), 용도, 종류, 버전 목록."""

    name: str
    purpose: KeyPurpose
    key_type: KeyType
    versions: list[KeyVersion] = field(default_factory=list)

    @property
    def primary_version(self) -> KeyVersion | None:
        for v in self.versions:
            if v.status is KeyStatus.PRIMARY:
                return v
        return None

    def next_version_number(self) -> int:
        if not self.versions:
            return 0
        return max(v.version_number for v in self.versions) + 1

    def add_version(self, version: KeyVersion) -> None:
        """새 버전 추가. PRIMARY면 기존 PRIMARY는 ACTIVE로 강등."""
        if version.status is KeyStatus.PRIMARY:
            for v in self.versions:
                if v.status is KeyStatus.PRIMARY:
                    v.status = KeyStatus.ACTIVE
        self.versions.append(version)

    def to_json(self) -> str:
        return json.dumps(
            {
                "name": self.name,
                "purpose": self.purpose.value,
                "type": self.key_type.value,
                "versions": [v.to_dict() for v in self.versions],
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> KeyMetadata:
        try:
            d = json.loads(raw)
            return cls(
                name=d["name"],
                purpose=KeyPurpose(d["purpose"]),
                key_type=KeyType(d["type"]),
                versions=[KeyVersion.from_dict(v) for v in d.get("versions", [])],
            )
        except (TypeError, ValueError, KeyError) as e:
            raise KeyRingError(f"키 메타데이터 파싱 실패: {e}") from e


@dataclass(frozen=True)
class KeyMaterial:
    """직렬화 가능한 대칭 키 자료."""

    key_type: KeyType
    raw: bytes

    @property
    def size(self) -> int:
        return len(self.raw) * 8

    @property
    def key_hash(self) -> bytes:
        return hashlib.sha1(self.raw).digest()[:KEY_HASH_SIZE]

    @classmethod
    def generate(cls, key_type: KeyType, size: int) -> KeyMaterial:
        size = key_type.clamp_size(size)
        return cls(key_type=key_type, raw=secrets.token_bytes(size // 8))

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.key_type.value,
                "size": self.size,
                "keyString": encode_web_safe(self.raw),
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> KeyMaterial:
        try:
            d = json.loads(raw)
            key_type = KeyType(d["type"])
            key_string = d["keyString"]
            if not isinstance(key_string, str):
                raise TypeError(f"keyString은 문자열이어야 함: {type(key_string).__name__}")
            key_bytes = decode_web_safe(key_string)
        except (TypeError, ValueError, KeyError) as e:
            raise KeyRingError(f"키 자료 파싱 실패: {e}") from e
        if not key_type.is_acceptable_size(len(key_bytes) * 8):
            raise KeyRingError(f"허용되지 않는 키 크기: {len(key_bytes) * 8}")
        return cls(key_type=key_type, raw=key_bytes)
