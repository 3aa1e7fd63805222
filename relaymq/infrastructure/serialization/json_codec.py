"""JSON codec backed by pydantic's TypeAdapter (models, dataclasses, TypedDicts, plain JSON)."""
from __future__ import annotations

from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, from_json, to_json

from relaymq.exceptions import CodecError


class JsonCodec:
    """
    Encodes any value pydantic can serialise; decodes into `model_type` when given,
    otherwise into plain JSON values. A JSON `null` body is rejected on decode.
    """

    def __init__(self, model_type: Any = None) -> None:
        self._model_type = model_type
        self._adapter: TypeAdapter[Any] | None = TypeAdapter(model_type) if model_type is not None else None

    @property
    def content_type(self) -> str:
        return "application/json"

    def encode(self, value: Any) -> bytes:
        try:
            if self._adapter is not None:
                return self._adapter.dump_json(value)
            return to_json(value)
        except (PydanticSerializationError, ValueError, TypeError) as exc:
            raise CodecError(f"cannot encode {type(value).__name__}: {exc}") from exc

    def decode(self, data: bytes) -> Any:
        try:
            if self._adapter is not None:
                value = self._adapter.validate_json(data)
            else:
                value = from_json(data)
        except (ValidationError, ValueError) as exc:
            raise CodecError(f"cannot decode message body: {exc}") from exc
        if value is None:
            raise CodecError(f"decoded message is null body={data[:200]!r}")
        return value
