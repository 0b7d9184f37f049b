"""환경변수 기반 설정 모듈."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .security.keys import KeyType


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """저장 시 암호화 설정 (환경변수에서 로드)."""

    # 보안
    master_key: str = ""  # 64자리 hex (32바이트), 비어 있으면 키링을 래핑하지 않음

    # DB
    db_path: str = "data/atrest.db"

    # 스코프 선언에 크기가 없을 때 쓰는 기본 키 크기 (비트)
    default_key_size: int = 128

    # 버전 불일치 암호문을 레거시 평문으로 간주할지 여부
    legacy_plaintext_fallback: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Config:
        """환경변수에서 Config 인스턴스 생성."""
        return cls(
            master_key=os.environ.get("ATREST_MASTER_KEY", ""),
            db_path=os.environ.get("ATREST_DB_PATH", "data/atrest.db"),
            default_key_size=int(os.environ.get("ATREST_DEFAULT_KEY_SIZE", "128")),
            legacy_plaintext_fallback=_env_bool("ATREST_LEGACY_FALLBACK", True),
            log_level=os.environ.get("ATREST_LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> list[str]:
        """설정 유효성 검사. 오류 목록 반환."""
        errors: list[str] = []
        if self.master_key:
            if len(self.master_key) != 64:
                errors.append("ATREST_MASTER_KEY는 64자리 hex 문자열이어야 합니다")
            else:
                try:
                    bytes.fromhex(self.master_key)
                except ValueError:
                    errors.append("ATREST_MASTER_KEY에 hex가 아닌 문자가 있습니다")
        if not KeyType.AES.is_acceptable_size(self.default_key_size):
            errors.append(
                f"ATREST_DEFAULT_KEY_SIZE는 {KeyType.AES.acceptable_sizes} 중 하나여야 합니다"
            )
        if not self.db_path:
            errors.append("ATREST_DB_PATH 누락")
        return errors

    def ensure_db_dir(self) -> None:
        """DB 파일 디렉토리가 존재하도록 생성."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
