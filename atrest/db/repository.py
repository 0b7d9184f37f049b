"""키링 및 문서 데이터 접근 계층."""

from __future__ import annotations

import json
import logging
import threading
import uuid
import zlib
from collections.abc import Iterator, Sequence
from typing import Any, Protocol

from ..security.encryption import Crypter
from ..security.errors import CryptoError, KeyRingError
from ..security.keys import KeyMaterial, KeyMetadata, KeyPurpose, KeyStatus, KeyType, KeyVersion
from .mapper import DocumentMapper
from .migrations import connect
from .models import KeyRing

log = logging.getLogger(__name__)

# 스코프별 생성/회전 잠금 개수 (스코프 해시로 분산)
LOCK_STRIPES = 64


def _parse_secrets(scope: str, raw: Any) -> dict[str, str]:
    """secrets 컬럼 파싱. 버전 번호 문자열 → 키 자료 문자열 맵이 아니면 KeyRingError."""
    try:
        secrets = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise KeyRingError(f"키 자료 파싱 실패: {scope} - {e}") from e
    if not isinstance(secrets, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in secrets.items()
    ):
        raise KeyRingError(f"키 자료 형식 오류: {scope}")
    return secrets


class KeyRingRepository:
    """key_rings 테이블 CRUD (스코프별 키 저장소).

    메타데이터와 키 자료는 마스터 키가 있으면 래핑해서 저장하고,
    읽을 때는 래핑 해제를 먼저 시도한 뒤 실패하면 저장된 원문을 쓴다.
    래핑 없이 저장된 기존 키링은 wrap_unwrapped()로 옮긴다.
    """

    def __init__(self, db_path: str, master: Crypter | None = None) -> None:
        self._db_path = db_path
        self._master = master
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, scope: str) -> threading.Lock:
        return self._locks[zlib.crc32(scope.encode("utf-8")) % LOCK_STRIPES]

    # ──────────────────────────────────
    # 마스터 키 래핑
    # ──────────────────────────────────

    def _wrap_pair(self, metadata: str, secret: str) -> tuple[str, str]:
        """메타데이터와 키 자료를 함께 래핑. 실패하면 둘 다 원문."""
        if self._master is None:
            return metadata, secret
        try:
            return self._master.encrypt_text(metadata), self._master.encrypt_text(secret)
        except CryptoError:
            log.warning("마스터 키 래핑 실패, 원문으로 저장", exc_info=True)
            return metadata, secret

    def _unwrap(self, blob: str) -> str:
        if not isinstance(blob, str):
            raise KeyRingError(f"키링 값이 문자열이 아님: {type(blob).__name__}")
        if self._master is None:
            return blob
        try:
            return self._master.decrypt_text(blob)
        except CryptoError:
            return blob

    def _is_wrapped(self, blob: str) -> bool:
        try:
            self._master.decrypt_text(blob)
            return True
        except CryptoError:
            return False

    # ──────────────────────────────────
    # 조회 / 생성
    # ──────────────────────────────────

    def find(self, scope: str) -> KeyRing | None:
        """스코프로 키링 조회."""
        with connect(self._db_path) as db:
            row = db.execute(
                "SELECT scope, metadata, secrets FROM key_rings WHERE scope = ?", (scope,)
            ).fetchone()
        if row is None:
            return None
        return KeyRing(
            scope=row["scope"],
            metadata=row["metadata"],
            secrets=_parse_secrets(scope, row["secrets"]),
        )

    def exists(self, scope: str) -> bool:
        return self.find(scope) is not None

    def fetch_or_create(
        self,
        scope: str,
        purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
        key_type: KeyType = KeyType.AES,
        key_size: int = 128,
    ) -> KeyRing:
        """키링 조회, 없으면 PRIMARY 버전 하나로 새로 생성.

        INSERT OR IGNORE로 삽입하므로 다른 프로세스와 동시에 만들어도
        먼저 들어간 키링 하나만 남고, 항상 저장된 행을 다시 읽어 반환한다.
        """
        ring = self.find(scope)
        if ring is not None:
            return ring

        with self._lock_for(scope):
            ring = self.find(scope)
            if ring is not None:
                return ring

            metadata = KeyMetadata(scope, purpose, key_type)
            version = KeyVersion(metadata.next_version_number(), KeyStatus.PRIMARY)
            metadata.add_version(version)
            key = KeyMaterial.generate(key_type, key_size)
            meta_blob, secret_blob = self._wrap_pair(metadata.to_json(), key.to_json())

            with connect(self._db_path) as db:
                cursor = db.execute(
                    "INSERT OR IGNORE INTO key_rings (scope, metadata, secrets) VALUES (?, ?, ?)",
                    (scope, meta_blob, json.dumps({str(version.version_number): secret_blob})),
                )
                db.commit()
                if cursor.rowcount == 0:
                    log.info("키링 동시 생성 경합, 기존 키링 사용: %s", scope)
                else:
                    log.info("새 키링 생성: scope=%s type=%s size=%d", scope, key_type.value, key.size)

            ring = self.find(scope)
            if ring is None:
                raise KeyRingError(f"키링 생성 후 조회 실패: {scope}")
            return ring

    def get_metadata(
        self,
        scope: str,
        purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
        key_type: KeyType = KeyType.AES,
        key_size: int = 128,
    ) -> str:
        """래핑 해제된 메타데이터 JSON."""
        return self.ring_metadata(self.fetch_or_create(scope, purpose, key_type, key_size))

    def get_key(
        self,
        scope: str,
        purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
        key_type: KeyType = KeyType.AES,
        key_size: int = 128,
    ) -> str | None:
        """PRIMARY 버전의 키 자료 JSON."""
        return self.ring_primary_key(self.fetch_or_create(scope, purpose, key_type, key_size))

    def get_key_version(
        self,
        version: int,
        scope: str,
        purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
        key_type: KeyType = KeyType.AES,
        key_size: int = 128,
    ) -> str | None:
        """특정 버전의 키 자료 JSON (회전된 키로 쓴 데이터 복호화용)."""
        return self.ring_key(self.fetch_or_create(scope, purpose, key_type, key_size), version)

    # 이미 읽어 온 키링에서 값 꺼내기 (Crypter 하나를 만드는 동안 DB를 한 번만 읽도록)

    def ring_metadata(self, ring: KeyRing) -> str:
        return self._unwrap(ring.metadata)

    def ring_primary_key(self, ring: KeyRing) -> str | None:
        try:
            metadata = KeyMetadata.from_json(self._unwrap(ring.metadata))
        except KeyRingError:
            log.warning("키 메타데이터 손상: %s", ring.scope, exc_info=True)
            return None
        primary = metadata.primary_version
        if primary is None:
            log.warning("PRIMARY 키 버전 없음: %s", ring.scope)
            return None
        return self.ring_key(ring, primary.version_number)

    def ring_key(self, ring: KeyRing, version: int) -> str | None:
        secret = ring.secrets.get(str(version))
        return self._unwrap(secret) if secret is not None else None

    # ──────────────────────────────────
    # 관리 작업
    # ──────────────────────────────────

    def rotate(
        self,
        scope: str,
        purpose: KeyPurpose = KeyPurpose.DECRYPT_AND_ENCRYPT,
        key_type: KeyType = KeyType.AES,
        key_size: int = 128,
    ) -> int:
        """새 PRIMARY 버전 추가. 기존 PRIMARY는 ACTIVE로 남아 복호화에 쓰인다."""
        self.fetch_or_create(scope, purpose, key_type, key_size)
        with self._lock_for(scope):
            ring = self.find(scope)
            if ring is None:
                raise KeyRingError(f"회전 중 키링이 삭제됨: {scope}")
            metadata = KeyMetadata.from_json(self._unwrap(ring.metadata))
            version = KeyVersion(metadata.next_version_number(), KeyStatus.PRIMARY)
            metadata.add_version(version)
            key = KeyMaterial.generate(metadata.key_type, key_size)
            meta_blob, secret_blob = self._wrap_pair(metadata.to_json(), key.to_json())
            secrets = dict(ring.secrets)
            secrets[str(version.version_number)] = secret_blob

            with connect(self._db_path) as db:
                db.execute(
                    """UPDATE key_rings SET metadata = ?, secrets = ?, updated_at = CURRENT_TIMESTAMP
                       WHERE scope = ?""",
                    (meta_blob, json.dumps(secrets), scope),
                )
                db.commit()
        log.info("키 회전: scope=%s 새 PRIMARY 버전=%d", scope, version.version_number)
        return version.version_number

    def delete_by_scope(self, scope: str) -> bool:
        """스코프의 키링 삭제. 해당 스코프의 암호문은 영구히 읽을 수 없게 된다."""
        with connect(self._db_path) as db:
            cursor = db.execute("DELETE FROM key_rings WHERE scope = ?", (scope,))
            db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            log.warning("키링 삭제 (복구 불가): %s", scope)
        return deleted

    def list_scopes(self) -> list[str]:
        with connect(self._db_path) as db:
            rows = db.execute("SELECT scope FROM key_rings ORDER BY scope").fetchall()
        return [row["scope"] for row in rows]

    def get_all_metadata(self) -> Iterator[str]:
        """모든 키링의 메타데이터. 전체 테이블을 읽으므로 관리용으로만."""
        log.warning("모든 키링의 메타데이터 조회")
        with connect(self._db_path) as db:
            rows = db.execute("SELECT metadata FROM key_rings ORDER BY scope").fetchall()
        for row in rows:
            yield self._unwrap(row["metadata"])

    def wrap_unwrapped(self) -> int:
        """원문으로 저장된 메타데이터/키 자료를 마스터 키로 래핑. 갱신한 키링 수 반환."""
        if self._master is None:
            raise ValueError("마스터 키가 설정되지 않았습니다")
        updated = 0
        for scope in self.list_scopes():
            with self._lock_for(scope):
                ring = self.find(scope)
                if ring is None:
                    continue
                changed = False
                metadata = ring.metadata
                if not self._is_wrapped(metadata):
                    metadata = self._master.encrypt_text(metadata)
                    changed = True
                secrets: dict[str, str] = {}
                for version, secret in ring.secrets.items():
                    if not self._is_wrapped(secret):
                        secret = self._master.encrypt_text(secret)
                        changed = True
                    secrets[version] = secret
                if not changed:
                    continue
                with connect(self._db_path) as db:
                    db.execute(
                        """UPDATE key_rings SET metadata = ?, secrets = ?, updated_at = CURRENT_TIMESTAMP
                           WHERE scope = ?""",
                        (metadata, json.dumps(secrets), scope),
                    )
                    db.commit()
                updated += 1
        log.info("키링 래핑 마이그레이션 완료: %d개 갱신", updated)
        return updated


class DocumentInterceptor(Protocol):
    """저장 직전/조회 직후 문서를 가공하는 훅."""

    def pre_save(self, record: Any, document: dict[str, Any]) -> None: ...

    def pre_load(
        self, record_type: type, document: dict[str, Any], record: Any = None
    ) -> None: ...


class DocumentRepository:
    """documents 테이블 CRUD (레코드 타입당 컬렉션 하나).

    인터셉터 없이 만들면 저장된 원문을 그대로 읽고 쓰는 우회 경로가 된다.
    """

    def __init__(
        self,
        db_path: str,
        interceptors: Sequence[DocumentInterceptor] = (),
        mapper: DocumentMapper | None = None,
    ) -> None:
        self._db_path = db_path
        self._interceptors = list(interceptors)
        self._mapper = mapper or DocumentMapper()

    def save(self, record: Any) -> str:
        """레코드 저장 (있으면 덮어씀). 문서 ID 반환."""
        record_type = type(record)
        id_field = self._mapper.id_field(record_type)
        if id_field is not None and not getattr(record, id_field.name):
            setattr(record, id_field.name, uuid.uuid4().hex)

        document = self._mapper.to_document(record)
        for interceptor in self._interceptors:
            interceptor.pre_save(record, document)

        doc_id = document.get("_id")
        if not doc_id:
            doc_id = uuid.uuid4().hex
            document["_id"] = doc_id
        self._write(self._mapper.collection_name(record_type), str(doc_id), document)
        return str(doc_id)

    def _write(self, collection: str, doc_id: str, document: dict[str, Any]) -> None:
        with connect(self._db_path) as db:
            db.execute(
                """INSERT INTO documents (collection, doc_id, body) VALUES (?, ?, ?)
                   ON CONFLICT (collection, doc_id)
                   DO UPDATE SET body = excluded.body, updated_at = CURRENT_TIMESTAMP""",
                (collection, doc_id, json.dumps(document, ensure_ascii=False)),
            )
            db.commit()

    def get_raw(self, record_type: type, doc_id: str) -> dict[str, Any] | None:
        """저장된 문서를 가공 없이 조회."""
        with connect(self._db_path) as db:
            row = db.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                (self._mapper.collection_name(record_type), str(doc_id)),
            ).fetchone()
        return json.loads(row["body"]) if row else None

    def get(self, record_type: type, doc_id: str) -> Any | None:
        """문서 ID로 레코드 조회."""
        document = self.get_raw(record_type, doc_id)
        if document is None:
            return None
        return self._materialize(record_type, document)

    def find(self, record_type: type, **criteria: Any) -> list[Any]:
        """저장 이름 기준 동등 조건으로 조회. 암호화된 필드로는 찾을 수 없다."""
        with connect(self._db_path) as db:
            rows = db.execute(
                "SELECT body FROM documents WHERE collection = ? ORDER BY created_at, doc_id",
                (self._mapper.collection_name(record_type),),
            ).fetchall()
        results = []
        for row in rows:
            document = json.loads(row["body"])
            if all(document.get(k) == v for k, v in criteria.items()):
                results.append(self._materialize(record_type, document))
        return results

    def find_one(self, record_type: type, **criteria: Any) -> Any | None:
        found = self.find(record_type, **criteria)
        return found[0] if found else None

    def update_fields(self, record_type: type, doc_id: str, **fields: Any) -> bool:
        """저장된 문서의 필드를 직접 갱신 (인터셉터를 거치지 않음)."""
        document = self.get_raw(record_type, doc_id)
        if document is None:
            return False
        document.update(fields)
        self._write(self._mapper.collection_name(record_type), str(doc_id), document)
        return True

    def delete(self, record_type: type, doc_id: str) -> bool:
        with connect(self._db_path) as db:
            cursor = db.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (self._mapper.collection_name(record_type), str(doc_id)),
            )
            db.commit()
            return cursor.rowcount > 0

    def _materialize(self, record_type: type, document: dict[str, Any]) -> Any:
        for interceptor in self._interceptors:
            interceptor.pre_load(record_type, document)
        return self._mapper.from_document(record_type, document)
