from __future__ import annotations
from enum import Enum
from io import BytesIO
from typing import Iterable, NamedTuple, Self
import logging
import struct
import zlib

from repeaty.errors import CancelCheck, MalformedStream, raise_if_cancelled

# https://www.w3.org/TR/png-3/#5Chunk-layout

logger = logging.getLogger(__name__)

PNG_SIGNATURE = bytes.fromhex("89504E470D0A1A0A")
MAX_CHUNK_LENGTH = 2**31 - 1


class ChunkKind(Enum):
    HEADER = b"IHDR"
    PALETTE = b"PLTE"
    PIXEL_DATA = b"IDAT"
    END = b"IEND"
    PHYSICAL_DIMENSIONS = b"pHYs"
    ICC_PROFILE = b"iCCP"
    CHROMATICITY = b"cHRM"
    GAMMA = b"gAMA"
    SRGB = b"sRGB"
    OPAQUE = None

    @classmethod
    def of(cls, chunk_type: bytes) -> ChunkKind:
        try:
            return cls(bytes(chunk_type))
        except ValueError:
            return cls.OPAQUE

    @property
    def is_structural(self) -> bool:
        return self in (ChunkKind.HEADER, ChunkKind.PALETTE, ChunkKind.PIXEL_DATA, ChunkKind.END)

    @property
    def is_print_metadata(self) -> bool:
        return self in PRINT_METADATA_KINDS


PRINT_METADATA_KINDS = (
    ChunkKind.PHYSICAL_DIMENSIONS,
    ChunkKind.ICC_PROFILE,
    ChunkKind.CHROMATICITY,
    ChunkKind.GAMMA,
    ChunkKind.SRGB,
)


class IHDRData(NamedTuple):
    width: int
    height: int
    bit_depth: int
    colour_type: int
    compression_method: int
    filter_method: int
    interlace_method: int

    def __bytes__(self) -> bytes:
        return struct.pack(">IIBBBBB", *self)

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        if len(data) != 13:
            raise MalformedStream(f"IHDR payload must be 13 bytes. Got {len(data)}")
        return cls(*struct.unpack(">IIBBBBB", data))

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height


class Chunk:
    length: int
    chunk_type: bytes
    chunk_data: bytes
    crc: int

    def __init__(self, length: int, chunk_type: bytes, chunk_data: bytes, crc: int) -> None:
        self.length = length
        self.chunk_type = chunk_type
        self.chunk_data = chunk_data
        self.crc = crc

    @classmethod
    def create(cls, chunk_type: bytes, chunk_data: bytes) -> Self:
        chunk_data = bytes(chunk_data)
        return cls(len(chunk_data), chunk_type, chunk_data, cls.calc_crc(chunk_data, chunk_type))

    def __bytes__(self) -> bytes:
        l = struct.pack(">I", self.length)
        ct = struct.pack(">4s", self.chunk_type)
        crc = struct.pack(">I", self.crc)
        return l + ct + self.chunk_data + crc

    def __repr__(self) -> str:
        return f"Chunk({self.chunk_type!r}, length={self.length}, crc={self.crc:#010x})"

    @property
    def kind(self) -> ChunkKind:
        return ChunkKind.of(self.chunk_type)

    @staticmethod
    def calc_crc(chunk_data, chunk_type) -> int:
        return zlib.crc32(
            chunk_data, zlib.crc32(struct.pack(">4s", chunk_type))
        )


def read_chunks(data: bytes, cancel: CancelCheck = None) -> list[Chunk]:
    """
    Splits a PNG datastream into its chunks, validating the signature, every chunk frame, and every checksum.
    Reading stops at the IEND chunk. Anything after it is ignored.

    Raises:
        MalformedStream: Missing signature, truncated or oversized chunk, bad chunk type, checksum failure,
                         or the data ran out before an IEND chunk was found.

    Returns:
        list[Chunk] in file order, ending with IEND.
    """
    if data[:8] != PNG_SIGNATURE:
        raise MalformedStream("That's not a PNG: signature bytes are missing.")

    buffer = BytesIO(data)
    buffer.seek(8)
    buffer_length = len(data)
    chunks = []
    while buffer.tell() < buffer_length:
        raise_if_cancelled(cancel, "chunk reading")
        offset = buffer.tell()
        if buffer_length - offset < 12:
            raise MalformedStream(f"Truncated chunk frame at offset {offset}")

        chunk_length, chunk_type = struct.unpack(">I4s", buffer.read(8))
        if chunk_length > MAX_CHUNK_LENGTH:
            raise MalformedStream(f"Chunk length {chunk_length} at offset {offset} exceeds the PNG maximum")

        if chunk_length + 4 + buffer.tell() > buffer_length:
            raise MalformedStream(
                f"Chunk length + checksum offset exceeds buffer length. {chunk_length=} {offset=} {buffer_length=}"
            )

        if not chunk_type.isalpha():
            raise MalformedStream(f"Invalid chunk type {chunk_type!r} at offset {offset}")

        chunk_data = buffer.read(chunk_length)
        expected_crc, = struct.unpack(">I", buffer.read(4))
        actual_crc = Chunk.calc_crc(chunk_data, chunk_type)
        if actual_crc != expected_crc:
            raise MalformedStream(
                f"Checksum failed on chunk type {chunk_type} with length {chunk_length}"
            )

        chunks.append(Chunk(chunk_length, chunk_type, chunk_data, expected_crc))

        if chunk_type == b"IEND":
            trailing = buffer_length - buffer.tell()
            if trailing:
                logger.debug("Ignoring %d bytes after IEND", trailing)
            logger.debug("Read %d chunks", len(chunks))
            return chunks

    raise MalformedStream("No IEND chunk was found but the data was fully read.")


def write_chunks(chunks: Iterable[Chunk], cancel: CancelCheck = None) -> bytes:
    out = bytearray(PNG_SIGNATURE)
    for chunk in chunks:
        raise_if_cancelled(cancel, "chunk writing")
        # length and checksum always follow the payload actually being written
        out.extend(bytes(Chunk.create(chunk.chunk_type, chunk.chunk_data)))

    return bytes(out)
