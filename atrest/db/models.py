"""DB 테이블 DDL 및 키링 레코드 정의."""

from __future__ import annotations

from dataclasses import dataclass, field

KEY_RINGS_TABLE = """
CREATE TABLE IF NOT EXISTS key_rings (
    -- 스코프 하나당 키링 하나 (중복 생성 경합은 PRIMARY KEY로 차단)
    scope TEXT PRIMARY KEY,
    -- 키 메타데이터 JSON (마스터 키로 래핑될 수 있음)
    metadata TEXT NOT NULL,
    -- {"버전 번호": 키 자료} JSON (값은 마스터 키로 래핑될 수 있음)
    secrets TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

DOCUMENTS_TABLE = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    doc_id TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (collection, doc_id)
);
"""

ALL_TABLES = [KEY_RINGS_TABLE, DOCUMENTS_TABLE]


@dataclass
class KeyRing:
    """저장된 키링 한 건."""

    scope: str
    metadata: str
    secrets: dict[str, str] = field(default_factory=dict)
