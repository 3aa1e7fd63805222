"""Port: message body codec. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Protocol


class Codec(Protocol):
    """Encode values to bytes and back. Both directions raise CodecError on failure."""

    @property
    def content_type(self) -> str: ...

    def encode(self, value: Any) -> bytes: ...

    def decode(self, data: bytes) -> Any: ...
