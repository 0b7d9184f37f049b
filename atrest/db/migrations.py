"""DB 연결 및 초기화."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager

from .models import ALL_TABLES


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """작업 하나당 연결 하나. 블록이 끝나면 닫는다."""
    with closing(sqlite3.connect(db_path, timeout=30)) as db:
        db.row_factory = sqlite3.Row
        yield db


def init_db(db_path: str) -> None:
    """DB 초기화: 테이블이 없으면 생성."""
    with connect(db_path) as db:
        for ddl in ALL_TABLES:
            db.execute(ddl)
        db.commit()
