"""저장 시 필드 암호화 인터셉터.

레코드 타입의 필드에 encrypted_field를 붙이면 저장 직전에 해당 필드를
스코프 키로 암호화하고, 조회 직후 복호화한다. 스코프는 scope_field로
표시한 필드 값(또는 정적 스코프)이며 스코프마다 별도의 키링을 쓴다.

동작 규칙:
- 스코프 값이 있는 새 문서는 암호화 대상 필드가 모두 암호화되어 저장된다.
- 암호화 이전에 저장된 평문 문서는 그대로 읽힌다.
- 암호화 필드가 있어도 스코프 필드나 스코프 값이 없으면 아무것도 하지 않는다.
- 스코프 필드만 있고 암호화 필드가 없어도 아무것도 하지 않는다.

스코프 필드 값은 문서 전체를 다시 저장할 때가 아니면 바꾸면 안 된다.
스코프가 바뀌면 다른 키링으로 복호화하게 되어 암호화 필드를 읽을 수 없다.

암호화 계층의 어떤 오류도 문서 저장/조회 자체를 중단시키지 않는다.
최악의 경우 필드 하나의 값이 None이 된다.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any

from ..db.mapper import DocumentMapper
from ..security.crypter_factory import CrypterFactory
from ..security.encoding import decode_web_safe, encode_web_safe
from ..security.encryption import Crypter
from ..security.errors import BadVersionError, CryptoError
from .events import EncryptionEvent, EventBus, EventKind
from .metadata import (
    DEFAULT_CACHE,
    FieldAccessor,
    FieldKind,
    MetadataCache,
    RecordTypeDescriptor,
    unwrap_optional,
)

log = logging.getLogger(__name__)


def _canonical_json(value: Any) -> bytes:
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


class EncryptionInterceptor:
    """문서 저장소의 pre_save / pre_load 훅."""

    def __init__(
        self,
        crypters: CrypterFactory,
        cache: MetadataCache | None = None,
        mapper: DocumentMapper | None = None,
        events: EventBus | None = None,
        legacy_plaintext_fallback: bool = True,
    ) -> None:
        self._crypters = crypters
        self._cache = cache or DEFAULT_CACHE
        self._mapper = mapper or DocumentMapper()
        self.events = events or EventBus()
        self._legacy_fallback = legacy_plaintext_fallback

    def _emit(
        self,
        kind: EventKind,
        descriptor: RecordTypeDescriptor,
        field: str | None = None,
        scope: str | None = None,
        detail: str = "",
    ) -> None:
        self.events.emit(EncryptionEvent(kind, descriptor.type_name, field, scope, detail))

    # ──────────────────────────────────
    # 스코프 → Crypter
    # ──────────────────────────────────

    def resolve_scope(
        self,
        descriptor: RecordTypeDescriptor,
        record: Any = None,
        document: dict[str, Any] | None = None,
    ) -> str | None:
        """스코프 식별자 결정.

        정적 스코프가 있으면 그것을 쓴다. 없으면 document가 주어진 경우
        저장 형식의 값을 먼저 보고 레코드 값으로 대체하며, document가
        없으면 레코드 값만 본다.
        """
        scope_field = descriptor.scope_field
        if scope_field is None:
            return None
        if scope_field.config.scope:
            return scope_field.config.scope

        value = None
        if document is not None:
            value = document.get(scope_field.accessor.storage_name)
        if value is None and record is not None:
            value = scope_field.accessor.get(record)
        if value is None:
            return None
        scope = str(value)
        return scope or None

    def _load_crypter(
        self,
        descriptor: RecordTypeDescriptor,
        record: Any = None,
        document: dict[str, Any] | None = None,
    ) -> tuple[Crypter | None, str | None]:
        if descriptor.error is not None:
            self._emit(EventKind.DESCRIBE_FAILED, descriptor, detail=descriptor.error)
            return None, None
        if descriptor.scope_field is None:
            self._emit(EventKind.NO_SCOPE_FIELD, descriptor)
            return None, None
        if not descriptor.encrypted_fields:
            return None, None

        scope = self.resolve_scope(descriptor, record, document)
        if scope is None:
            self._emit(EventKind.NO_SCOPE_VALUE, descriptor)
            return None, None

        config = descriptor.scope_field.config
        crypter = self._crypters.create(
            scope, config.purpose, config.key_type, descriptor.scope_field.key_size
        )
        if crypter is None:
            self._emit(EventKind.NO_CRYPTER, descriptor, scope=scope)
        return crypter, scope

    # ──────────────────────────────────
    # 저장 경로
    # ──────────────────────────────────

    def pre_save(self, record: Any, document: dict[str, Any]) -> None:
        """저장 직전: 암호화 대상 필드를 document 안에서 암호문으로 교체."""
        descriptor = self._cache.describe(type(record))
        crypter, scope = self._load_crypter(descriptor, record=record)
        if crypter is None:
            return

        for accessor in descriptor.encrypted_fields:
            key = accessor.storage_name
            if key not in document:
                continue
            document[key] = self._encrypt_field(descriptor, crypter, scope, accessor, document[key])

    def _encrypt_field(
        self,
        descriptor: RecordTypeDescriptor,
        crypter: Crypter,
        scope: str | None,
        accessor: FieldAccessor,
        value: Any,
    ) -> Any:
        if value is None:
            return None
        try:
            encoded = encode_web_safe(crypter.encrypt(self.encode_value(accessor, value)))
        except Exception as e:
            log.exception(
                "암호화 실패, 평문 유지: %s.%s", descriptor.type_name, accessor.name
            )
            self._emit(EventKind.ENCRYPT_FAILED, descriptor, accessor.name, scope, str(e))
            return value
        self._emit(EventKind.ENCRYPTED, descriptor, accessor.name, scope)
        return encoded

    def encode_value(self, accessor: FieldAccessor, value: Any) -> bytes:
        """필드 값을 암호화할 바이트로 변환. 형식은 값이 아니라 선언 타입으로 정한다."""
        if accessor.kind is FieldKind.TEXT:
            return value.encode("utf-8")
        if accessor.kind is FieldKind.MAP:
            return _canonical_json(value)
        return _canonical_json(self._mapper.to_storage_value(value))

    # ──────────────────────────────────
    # 조회 경로
    # ──────────────────────────────────

    def pre_load(
        self, record_type: type, document: dict[str, Any], record: Any = None
    ) -> None:
        """조회 직후, 레코드로 복원하기 전: 암호화된 필드를 document 안에서 복호화."""
        descriptor = self._cache.describe(record_type)
        crypter, scope = self._load_crypter(descriptor, record=record, document=document)
        if crypter is None:
            return

        for accessor in descriptor.encrypted_fields:
            key = accessor.storage_name
            if key not in document:
                continue
            document[key] = self._decrypt_field(descriptor, crypter, scope, accessor, document[key])

    def _decrypt_field(
        self,
        descriptor: RecordTypeDescriptor,
        crypter: Crypter,
        scope: str | None,
        accessor: FieldAccessor,
        value: Any,
    ) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            log.warning(
                "암호화되지 않은 값: %s.%s (%s)",
                descriptor.type_name, accessor.name, type(value).__name__,
            )
            self._emit(EventKind.UNENCRYPTED_VALUE, descriptor, accessor.name, scope)
            return value

        try:
            data = decode_web_safe(value)
        except ValueError:
            data = value.encode("utf-8")

        try:
            plaintext = crypter.decrypt(data)
        except BadVersionError as e:
            if self._legacy_fallback:
                log.warning(
                    "암호화 이전 평문으로 간주: %s.%s - %s",
                    descriptor.type_name, accessor.name, e,
                )
                self._emit(EventKind.LEGACY_PLAINTEXT, descriptor, accessor.name, scope, str(e))
                return value
            log.error("암호문 버전 불일치: %s.%s - %s", descriptor.type_name, accessor.name, e)
            self._emit(EventKind.DECRYPT_FAILED, descriptor, accessor.name, scope, str(e))
            return None
        except CryptoError as e:
            log.error(
                "복호화 실패: %s.%s scope=%s - %s: %s",
                descriptor.type_name, accessor.name, scope, type(e).__name__, e,
            )
            self._emit(EventKind.DECRYPT_FAILED, descriptor, accessor.name, scope, str(e))
            return None

        try:
            result = self.decode_value(descriptor, accessor, plaintext, scope)
        except ValueError as e:
            # UnicodeDecodeError, JSONDecodeError 모두 ValueError
            log.error("복호화된 값 복원 실패: %s.%s - %s", descriptor.type_name, accessor.name, e)
            self._emit(EventKind.DECRYPT_FAILED, descriptor, accessor.name, scope, str(e))
            return None
        self._emit(EventKind.DECRYPTED, descriptor, accessor.name, scope)
        return result

    def decode_value(
        self,
        descriptor: RecordTypeDescriptor,
        accessor: FieldAccessor,
        plaintext: bytes,
        scope: str | None = None,
    ) -> Any:
        """복호화된 바이트를 필드 타입으로 복원."""
        text = plaintext.decode("utf-8")
        if accessor.kind is FieldKind.TEXT:
            return text
        if accessor.kind is FieldKind.MAP:
            return json.loads(text)

        parsed = json.loads(text)
        target = unwrap_optional(accessor.declared_type)
        if not (isinstance(target, type) and dataclasses.is_dataclass(target)):
            return parsed
        log.debug("구조체 필드 복원: %s", target.__name__)
        try:
            return self._mapper.from_document(target, parsed)
        except (TypeError, ValueError, KeyError) as e:
            self._emit(EventKind.STRUCTURE_FALLBACK, descriptor, accessor.name, scope, str(e))
            return parsed
