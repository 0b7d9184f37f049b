"""키링 관리 CLI 진입점.

    python -m atrest.main generate-master-key
    python -m atrest.main init-db
    python -m atrest.main list-scopes
    python -m atrest.main rotate --scope SCOPE [--size 256]
    python -m atrest.main delete-scope --scope SCOPE
    python -m atrest.main wrap-legacy
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from dotenv import load_dotenv

from .config import Config
from .core.events import EventBus
from .core.interceptor import EncryptionInterceptor
from .core.metadata import MetadataCache
from .db.migrations import init_db
from .db.repository import DocumentRepository, KeyRingRepository
from .security.crypter_factory import CrypterFactory
from .security.key_manager import generate_master_key, master_crypter

log = logging.getLogger("atrest")


class AtRest:
    """설정 하나로 키 저장소, 인터셉터, 문서 저장소를 조립한다."""

    def __init__(self, config: Config, events: EventBus | None = None) -> None:
        self.config = config
        self.key_rings = KeyRingRepository(config.db_path, master_crypter(config.master_key))
        self.crypters = CrypterFactory(self.key_rings)
        self.interceptor = EncryptionInterceptor(
            self.crypters,
            cache=MetadataCache(default_key_size=config.default_key_size),
            events=events,
            legacy_plaintext_fallback=config.legacy_plaintext_fallback,
        )
        self.documents = DocumentRepository(config.db_path, [self.interceptor])
        # 인터셉터를 거치지 않는 원문 접근 경로
        self.raw_documents = DocumentRepository(config.db_path)

    def init_db(self) -> None:
        self.config.ensure_db_dir()
        init_db(self.config.db_path)
        log.info("DB 초기화 완료: %s", self.config.db_path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="atrest", description="스코프별 저장 시 암호화 키 관리")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("generate-master-key", help="새 마스터 키(64자리 hex) 출력")
    sub.add_parser("init-db", help="테이블 생성")
    sub.add_parser("list-scopes", help="키링이 있는 스코프 목록")

    rotate = sub.add_parser("rotate", help="스코프 키 회전")
    rotate.add_argument("--scope", required=True)
    rotate.add_argument("--size", type=int, default=None, help="새 키 크기(비트)")

    delete = sub.add_parser("delete-scope", help="스코프 키링 삭제 (복구 불가)")
    delete.add_argument("--scope", required=True)

    sub.add_parser("wrap-legacy", help="원문 저장된 키링을 마스터 키로 래핑")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "generate-master-key":
        print(generate_master_key())
        return 0

    load_dotenv()
    try:
        config = Config.from_env()
    except ValueError as e:
        print(f"설정 오류: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    errors = config.validate()
    if errors:
        for e in errors:
            log.error("설정 오류: %s", e)
        return 1

    app = AtRest(config)
    app.init_db()

    if args.command == "init-db":
        return 0

    if args.command == "list-scopes":
        for scope in app.key_rings.list_scopes():
            print(scope)
        return 0

    if args.command == "rotate":
        size = args.size or config.default_key_size
        version = app.key_rings.rotate(args.scope, key_size=size)
        print(f"{args.scope}: PRIMARY v{version}")
        return 0

    if args.command == "delete-scope":
        if not app.key_rings.delete_by_scope(args.scope):
            print(f"키링 없음: {args.scope}", file=sys.stderr)
            return 1
        print(f"삭제됨: {args.scope}")
        return 0

    if args.command == "wrap-legacy":
        try:
            count = app.key_rings.wrap_unwrapped()
        except ValueError as e:
            log.error("래핑 불가: %s", e)
            return 1
        print(f"래핑한 키링: {count}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
