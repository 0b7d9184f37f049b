"""공용 픽스처: 임시 SQLite DB, 키 저장소, 인터셉터, 문서 저장소."""

from __future__ import annotations

import pytest

from atrest.core.events import EncryptionEvent, EventBus, EventKind
from atrest.core.interceptor import EncryptionInterceptor
from atrest.core.metadata import MetadataCache
from atrest.db.migrations import init_db
from atrest.db.repository import DocumentRepository, KeyRingRepository
from atrest.security.crypter_factory import CrypterFactory
from atrest.security.key_manager import master_crypter

MASTER_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


class EventLog:
    """EventBus 리스너로 등록되는 이벤트 기록기."""

    def __init__(self) -> None:
        self.events: list[EncryptionEvent] = []

    def __call__(self, event: EncryptionEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]

    def of(self, kind: EventKind) -> list[EncryptionEvent]:
        return [e for e in self.events if e.kind is kind]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "atrest.db")
    init_db(path)
    return path


@pytest.fixture
def master():
    return master_crypter(MASTER_KEY_HEX)


@pytest.fixture
def key_rings(db_path, master):
    return KeyRingRepository(db_path, master)


@pytest.fixture
def crypters(key_rings):
    return CrypterFactory(key_rings)


@pytest.fixture
def event_log():
    return EventLog()


@pytest.fixture
def interceptor(crypters, event_log):
    bus = EventBus()
    bus.subscribe(event_log)
    return EncryptionInterceptor(crypters, cache=MetadataCache(), events=bus)


@pytest.fixture
def ds(db_path, interceptor):
    """암호화 인터셉터를 거치는 문서 저장소."""
    return DocumentRepository(db_path, [interceptor])


@pytest.fixture
def raw_ds(db_path):
    """인터셉터 없이 저장된 원문을 그대로 다루는 문서 저장소."""
    return DocumentRepository(db_path)
