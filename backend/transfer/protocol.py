"""
Chunk transfer protocol messages.

Control messages travel as JSON text frames and are told apart by their
`type` field. Chunk data travels as binary frames:

    !B   transfer id length
    ...  transfer id (utf-8)
    !II  chunk index, total chunks
    ...  chunk bytes
"""

import struct
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class TransferProtocolError(Exception):
    """A message or chunk that violates the transfer protocol."""


class _Message(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    transfer_id: str

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class FileInfo(_Message):
    type: Literal["file-info"] = "file-info"
    name: str
    size: int = Field(ge=0)
    mime_type: str = "application/octet-stream"
    chunk_size: int = Field(ge=1)
    total_chunks: int = Field(ge=0)


class FileInfoReceived(_Message):
    type: Literal["file-info-received"] = "file-info-received"


class FileComplete(_Message):
    type: Literal["file-complete"] = "file-complete"


class RequestChunk(_Message):
    type: Literal["request-chunk"] = "request-chunk"
    index: int = Field(ge=0)


class TransferErrorMessage(_Message):
    type: Literal["transfer-error"] = "transfer-error"
    message: str = ""


ControlMessage = Annotated[
    Union[FileInfo, FileInfoReceived, FileComplete, RequestChunk, TransferErrorMessage],
    Field(discriminator="type"),
]

_control_adapter = TypeAdapter(ControlMessage)


def decode_control(raw: str | bytes) -> ControlMessage:
    try:
        return _control_adapter.validate_json(raw)
    except ValidationError as e:
        raise TransferProtocolError(f"Invalid control message: {e}") from e


# --- Binary chunk frames ---

_ID_LEN_FORMAT = "!B"
_CHUNK_HEADER_FORMAT = "!II"
_ID_LEN_SIZE = struct.calcsize(_ID_LEN_FORMAT)
_CHUNK_HEADER_SIZE = struct.calcsize(_CHUNK_HEADER_FORMAT)


class FileChunk(BaseModel):
    transfer_id: str
    index: int
    total_chunks: int
    data: bytes


def encode_chunk(transfer_id: str, index: int, total_chunks: int, data: bytes) -> bytes:
    id_bytes = transfer_id.encode("utf-8")
    if len(id_bytes) > 255:
        raise TransferProtocolError("Transfer id too long for chunk header")
    return (
        struct.pack(_ID_LEN_FORMAT, len(id_bytes))
        + id_bytes
        + struct.pack(_CHUNK_HEADER_FORMAT, index, total_chunks)
        + data
    )


def decode_chunk(frame: bytes) -> FileChunk:
    if len(frame) < _ID_LEN_SIZE:
        raise TransferProtocolError("Empty chunk frame")
    (id_len,) = struct.unpack_from(_ID_LEN_FORMAT, frame)
    header_end = _ID_LEN_SIZE + id_len + _CHUNK_HEADER_SIZE
    if len(frame) < header_end:
        raise TransferProtocolError("Truncated chunk header")
    try:
        transfer_id = frame[_ID_LEN_SIZE:_ID_LEN_SIZE + id_len].decode("utf-8")
    except UnicodeDecodeError as e:
        raise TransferProtocolError(f"Bad transfer id in chunk: {e}") from e
    index, total_chunks = struct.unpack_from(
        _CHUNK_HEADER_FORMAT, frame, _ID_LEN_SIZE + id_len
    )
    return FileChunk(
        transfer_id=transfer_id,
        index=index,
        total_chunks=total_chunks,
        data=frame[header_end:],
    )
