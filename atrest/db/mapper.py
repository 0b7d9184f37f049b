"""dataclass 레코드 ↔ 저장 문서(dict) 변환."""

from __future__ import annotations

import dataclasses
import typing
from enum import Enum
from typing import Any

from ..core.metadata import ID_STORAGE_NAME, storage_name, unwrap_optional


class DocumentMapper:
    """레코드를 JSON 호환 dict로, dict를 다시 레코드로 변환한다.

    중첩 dataclass, list, dict, Enum을 다룬다. 필드는 저장 이름
    (이름 변경 마커, ID 필드는 _id)으로 기록된다.
    """

    def collection_name(self, record_type: type) -> str:
        return getattr(record_type, "__collection__", record_type.__name__)

    def id_field(self, record_type: type) -> dataclasses.Field | None:
        for f in dataclasses.fields(record_type):
            if storage_name(f) == ID_STORAGE_NAME:
                return f
        return None

    def to_document(self, record: Any) -> dict[str, Any]:
        if not dataclasses.is_dataclass(record) or isinstance(record, type):
            raise TypeError(f"dataclass 인스턴스가 아님: {type(record).__name__}")
        return {
            storage_name(f): self.to_storage_value(getattr(record, f.name))
            for f in dataclasses.fields(record)
        }

    def to_storage_value(self, value: Any) -> Any:
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return self.to_document(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {str(k): self.to_storage_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self.to_storage_value(v) for v in value]
        return value

    def from_document(self, record_type: type, document: dict[str, Any]) -> Any:
        """문서를 record_type 인스턴스로 복원. 맞지 않으면 TypeError."""
        if not dataclasses.is_dataclass(record_type):
            raise TypeError(f"dataclass 타입이 아님: {record_type!r}")
        if not isinstance(document, dict):
            raise TypeError(f"문서는 dict여야 함: {type(document).__name__}")
        hints = typing.get_type_hints(record_type)
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(record_type):
            if not f.init:
                continue
            key = storage_name(f)
            if key in document:
                kwargs[f.name] = self.from_storage_value(hints.get(f.name, Any), document[key])
        return record_type(**kwargs)

    def from_storage_value(self, tp: Any, value: Any) -> Any:
        tp = unwrap_optional(tp)
        if value is None or tp is Any:
            return value
        origin = typing.get_origin(tp)
        args = typing.get_args(tp)
        if origin is None and isinstance(tp, type):
            if isinstance(value, tp):
                return value
            if dataclasses.is_dataclass(tp) and isinstance(value, dict):
                return self.from_document(tp, value)
            if issubclass(tp, Enum):
                return tp(value)
        if origin is list and args and isinstance(value, list):
            return [self.from_storage_value(args[0], v) for v in value]
        if origin is dict and len(args) == 2 and isinstance(value, dict):
            return {k: self.from_storage_value(args[1], v) for k, v in value.items()}
        return value
