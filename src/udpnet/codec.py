"""Wire codecs for the discovery and data channels.

Application records are pydantic models carried as JSON, one record per
datagram. Heartbeats carry only the sender's peer id as UTF-8 text.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError

# Largest payload that fits in a single IPv4 UDP datagram
MAX_DATAGRAM_SIZE = 65507

ModelT = TypeVar("ModelT", bound=BaseModel)


class CodecError(Exception):
    """A record or peer id could not be encoded or decoded."""


class ModelCodec(Generic[ModelT]):
    """JSON codec for one pydantic record type.

    ``decode(encode(record)) == record`` holds for every valid record.
    """

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def encode(self, record: ModelT) -> bytes:
        if not isinstance(record, self.model):
            raise CodecError(
                f"expected {self.model.__name__}, got {type(record).__name__}"
            )
        try:
            data = record.model_dump_json().encode("utf-8")
        except (PydanticSerializationError, ValueError) as e:
            raise CodecError(f"cannot serialize {self.model.__name__}: {e}") from e
        if len(data) > MAX_DATAGRAM_SIZE:
            raise CodecError(
                f"{self.model.__name__} is {len(data)} bytes, "
                f"max datagram payload is {MAX_DATAGRAM_SIZE}"
            )
        return data

    def decode(self, data: bytes) -> ModelT:
        try:
            return self.model.model_validate_json(data)
        except ValidationError as e:
            raise CodecError(
                f"invalid {self.model.__name__} payload: {e.error_count()} error(s)"
            ) from e
        except ValueError as e:
            raise CodecError(f"invalid {self.model.__name__} payload: {e}") from e

    def __repr__(self) -> str:
        return f"ModelCodec({self.model.__name__})"


def encode_peer_id(peer_id: str) -> bytes:
    """Encode a heartbeat payload."""
    if not peer_id:
        raise CodecError("peer id must not be empty")
    data = peer_id.encode("utf-8")
    if len(data) > MAX_DATAGRAM_SIZE:
        raise CodecError(f"peer id is {len(data)} bytes, too long for a datagram")
    return data


def decode_peer_id(data: bytes) -> str:
    """Decode a heartbeat payload."""
    if not data:
        raise CodecError("empty heartbeat")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CodecError(f"heartbeat is not valid UTF-8: {e}") from e
