"""선언적 필드 마커와 레코드 타입 디스크립터 캐시.

레코드 타입은 dataclass로 선언하고, 필드 메타데이터로 다음을 표시한다.

    @dataclass
    class Message:
        id: str = document_id(default="")
        owner: str = scope_field(default="")
        body: str = encrypted_field(default="")

- scope_field: 암호화 스코프를 담는 필드 (타입당 하나)
- encrypted_field: 저장 시 암호화할 필드
- stored_field: 저장 이름 변경 또는 문서 ID 지정만 하는 일반 필드
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import types
import typing
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..security.keys import KeyPurpose, KeyType

log = logging.getLogger(__name__)

SCOPE_MARKER = "atrest.scope"
ENCRYPT_MARKER = "atrest.encrypt"
NAME_MARKER = "atrest.name"
ID_MARKER = "atrest.id"

# 문서 저장소의 기본 키 필드 이름
ID_STORAGE_NAME = "_id"


@dataclass(frozen=True)
class ScopeConfig:
    """스코프 선언 설정. scope가 비어 있으면 필드 값에서 스코프를 얻는다."""

    scope: str = ""
    purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT
    key_type: KeyType = KeyType.AES
    key_size: int | None = None


def _marked(
    markers: dict[str, Any],
    name: str | None,
    is_id: bool,
    field_kwargs: dict[str, Any],
) -> Any:
    metadata = dict(field_kwargs.pop("metadata", None) or {})
    metadata.update(markers)
    if name:
        metadata[NAME_MARKER] = name
    if is_id:
        metadata[ID_MARKER] = True
    return dataclasses.field(metadata=metadata, **field_kwargs)


def scope_field(
    scope: str = "",
    purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
    key_type: KeyType = KeyType.AES,
    key_size: int | None = None,
    *,
    name: str | None = None,
    is_id: bool = False,
    **field_kwargs: Any,
) -> Any:
    """암호화 스코프 필드 선언. 나머지 인자는 dataclasses.field로 전달."""
    config = ScopeConfig(scope=scope, purpose=purpose, key_type=key_type, key_size=key_size)
    return _marked({SCOPE_MARKER: config}, name, is_id, field_kwargs)


def encrypted_field(*, name: str | None = None, **field_kwargs: Any) -> Any:
    """저장 시 암호화할 필드 선언."""
    return _marked({ENCRYPT_MARKER: True}, name, False, field_kwargs)


def stored_field(*, name: str | None = None, is_id: bool = False, **field_kwargs: Any) -> Any:
    """저장 이름만 바꾸거나 문서 ID로 지정하는 필드."""
    return _marked({}, name, is_id, field_kwargs)


def document_id(**field_kwargs: Any) -> Any:
    return stored_field(is_id=True, **field_kwargs)


def storage_name(f: dataclasses.Field) -> str:
    """필드의 저장 이름. ID 필드는 항상 _id."""
    if f.metadata.get(ID_MARKER):
        return ID_STORAGE_NAME
    return f.metadata.get(NAME_MARKER) or f.name


class FieldKind(str, Enum):
    TEXT = "text"
    MAP = "map"
    STRUCTURE = "structure"


def unwrap_optional(tp: Any) -> Any:
    """Optional[X] → X. 그 외는 그대로."""
    if typing.get_origin(tp) in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def classify(tp: Any) -> FieldKind:
    tp = unwrap_optional(tp)
    if tp is str:
        return FieldKind.TEXT
    origin = typing.get_origin(tp) or tp
    if isinstance(origin, type) and issubclass(origin, Mapping):
        return FieldKind.MAP
    return FieldKind.STRUCTURE


@dataclass(frozen=True)
class FieldAccessor:
    """필드 이름, 저장 이름, 선언 타입과 접근 함수."""

    name: str
    storage_name: str
    declared_type: Any
    kind: FieldKind

    def get(self, record: Any) -> Any:
        return getattr(record, self.name)

    def set(self, record: Any, value: Any) -> None:
        setattr(record, self.name, value)


@dataclass(frozen=True)
class ScopeField:
    accessor: FieldAccessor
    config: ScopeConfig

    @property
    def key_size(self) -> int | None:
        return self.config.key_size


@dataclass(frozen=True)
class RecordTypeDescriptor:
    """레코드 타입 하나에 대한 불변 암호화 디스크립터."""

    record_type: type
    scope_field: ScopeField | None = None
    encrypted_fields: tuple[FieldAccessor, ...] = ()
    error: str | None = None

    @property
    def type_name(self) -> str:
        return self.record_type.__name__


class MetadataCache:
    """타입별 디스크립터를 한 번만 계산해 보관하는 프로세스 캐시.

    읽기는 잠금 없이 dict 조회로 끝나고, 미스일 때만 잠금 안에서
    다시 확인한 뒤 계산한다. 계산된 디스크립터는 완성된 후에만
    dict에 들어가므로 부분적으로 만들어진 값은 관찰되지 않는다.
    """

    def __init__(self, default_key_size: int = 128) -> None:
        self._default_key_size = default_key_size
        self._lock = threading.Lock()
        self._descriptors: dict[type, RecordTypeDescriptor] = {}

    def __len__(self) -> int:
        return len(self._descriptors)

    def describe(self, record_type: type) -> RecordTypeDescriptor:
        descriptor = self._descriptors.get(record_type)
        if descriptor is not None:
            return descriptor
        with self._lock:
            descriptor = self._descriptors.get(record_type)
            if descriptor is None:
                descriptor = self._build(record_type)
                self._descriptors[record_type] = descriptor
            return descriptor

    def _build(self, record_type: type) -> RecordTypeDescriptor:
        try:
            return self._scan(record_type)
        except Exception as e:
            log.exception("타입 분석 실패, 평문으로 취급: %s", getattr(record_type, "__name__", record_type))
            return RecordTypeDescriptor(record_type=record_type, error=f"{type(e).__name__}: {e}")

    def _scan(self, record_type: type) -> RecordTypeDescriptor:
        if not dataclasses.is_dataclass(record_type):
            return RecordTypeDescriptor(record_type=record_type)

        hints = typing.get_type_hints(record_type)
        scope: ScopeField | None = None
        encrypted: list[FieldAccessor] = []
        for f in dataclasses.fields(record_type):
            declared = hints.get(f.name, Any)
            accessor = FieldAccessor(
                name=f.name,
                storage_name=storage_name(f),
                declared_type=declared,
                kind=classify(declared),
            )
            config = f.metadata.get(SCOPE_MARKER)
            if config is not None:
                if scope is None:
                    if config.key_size is None:
                        config = dataclasses.replace(config, key_size=self._default_key_size)
                    scope = ScopeField(accessor=accessor, config=config)
                else:
                    log.warning(
                        "%s: 스코프 필드가 둘 이상 선언됨, %s 무시",
                        record_type.__name__, f.name,
                    )
            if f.metadata.get(ENCRYPT_MARKER):
                encrypted.append(accessor)

        return RecordTypeDescriptor(
            record_type=record_type,
            scope_field=scope,
            encrypted_fields=tuple(encrypted),
        )


DEFAULT_CACHE = MetadataCache()


def describe(record_type: type) -> RecordTypeDescriptor:
    """프로세스 전역 캐시로 타입을 분석."""
    return DEFAULT_CACHE.describe(record_type)
