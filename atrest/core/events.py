"""암호화 계층 이벤트 보고.

모든 폴백 경로는 로그와 별도로 이벤트를 발생시켜, 호출자나 테스트가
어떤 경로를 탔는지 관찰할 수 있게 한다.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

log = logging.getLogger(__name__)


class EventKind(str, Enum):
    DESCRIBE_FAILED = "describe_failed"
    NO_SCOPE_FIELD = "no_scope_field"
    NO_SCOPE_VALUE = "no_scope_value"
    NO_CRYPTER = "no_crypter"
    ENCRYPTED = "encrypted"
    ENCRYPT_FAILED = "encrypt_failed"
    DECRYPTED = "decrypted"
    UNENCRYPTED_VALUE = "unencrypted_value"
    LEGACY_PLAINTEXT = "legacy_plaintext"
    DECRYPT_FAILED = "decrypt_failed"
    STRUCTURE_FALLBACK = "structure_fallback"


@dataclass(frozen=True)
class EncryptionEvent:
    kind: EventKind
    record_type: str
    field: str | None = None
    scope: str | None = None
    detail: str = ""


Listener = Callable[[EncryptionEvent], None]


class EventBus:
    """이벤트 리스너 목록. 리스너 예외는 로그만 남기고 삼킨다."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """리스너 등록. 반환된 함수를 호출하면 등록 해제."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: EncryptionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log.exception("이벤트 리스너 오류: %s", event.kind.value)
