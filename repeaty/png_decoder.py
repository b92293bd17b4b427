from __future__ import annotations
from io import BytesIO
from pathlib import Path
from typing import Self
import logging
import zlib

from repeaty.chunks import IHDRData, Chunk, ChunkKind, read_chunks
from repeaty.errors import (
    CancelCheck,
    DecompressionError,
    MalformedStream,
    MissingHeader,
    UnsupportedFormat,
    raise_if_cancelled,
)
from repeaty.filters import FILTER_NAMES, Filters
from repeaty.image import MAX_DIMENSION, AncillaryMetadata, ColourType, PixelGrid, row_length

# https://pyokagan.name/blog/2019-10-14-png/
# https://www.w3.org/TR/png-3/#5Chunk-layout

logger = logging.getLogger(__name__)


class Transformer:
    def __init__(self, stride: int, height: int, bytes_per_pixel: int) -> None:
        self.bytes_per_pixel = bytes_per_pixel
        self.height = height
        self.stride = stride
        self.filter_bytes_index = []

    def reconstruct(self, filtered: bytes, cancel: CancelCheck = None) -> bytearray:
        """
        Reverses scanline filtering, top to bottom. Each line is rebuilt from the
        already reconstructed line above it, so lines cannot be processed out of order.

        Raises:
            MalformedStream: A scanline carries a filter type outside 0-4.
        """
        buf = BytesIO(filtered)
        prev_recon_line = bytes(self.stride)
        reconstructed = bytearray()
        for h in range(self.height):
            raise_if_cancelled(cancel, "filter reconstruction")
            filt_line = buf.read(self.stride + 1)
            filter_byte, filt_scan = filt_line[0], filt_line[1:]
            if filter_byte >= len(FILTER_NAMES):
                raise MalformedStream(f"Unknown filter type {filter_byte} on scanline {h}")
            self.filter_bytes_index.append(filter_byte)

            recon_line = Filters.reconstruct_line(filter_byte, filt_scan, prev_recon_line, self.bytes_per_pixel)
            reconstructed.extend(recon_line)
            prev_recon_line = recon_line

        return reconstructed

    def filter(self, source_data: bytes, filter_bytes: list[int], cancel: CancelCheck = None) -> bytearray:
        """Filters raw rows with the given per-line filter types, prefixing each line with its type byte."""
        filtered = bytearray()
        prev_line = bytes(self.stride)
        for h in range(self.height):
            raise_if_cancelled(cancel, "filtering")
            line = source_data[h * self.stride:(h + 1) * self.stride]
            filter_byte = filter_bytes[h % len(filter_bytes)]
            filtered.append(filter_byte)
            filtered.extend(Filters.filter_line(filter_byte, line, prev_line, self.bytes_per_pixel))
            prev_line = line

        return filtered


class PNGDecoder:
    chunks: list[Chunk]
    _ihdr: IHDRData

    def __init__(self, chunks: list[Chunk], cancel: CancelCheck = None) -> None:
        self.chunks = chunks
        self.cancel = cancel
        self._ihdr = self._extract_IHDR()
        self._validate_IHDR()
        self.colour_type = ColourType(self._ihdr.colour_type)
        self.palette: bytes | None = None
        self.metadata = AncillaryMetadata()
        self.idat_data = bytearray()
        self._classify_chunks()

    @classmethod
    def from_bytes(cls, data: bytes, cancel: CancelCheck = None) -> Self:
        return cls(read_chunks(data, cancel), cancel)

    @classmethod
    def from_file(cls, fp: str | Path, cancel: CancelCheck = None) -> Self:
        path = Path(fp)
        logger.info("Reading %s", path)
        return cls.from_bytes(path.read_bytes(), cancel)

    @property
    def ihdr(self) -> IHDRData:
        return self._ihdr

    @property
    def bits_per_pixel(self) -> int:
        return self.colour_type.samples_per_pixel * self._ihdr.bit_depth

    @property
    def stride(self) -> int:
        return row_length(self._ihdr.width, self.bits_per_pixel)

    def _extract_IHDR(self) -> IHDRData:
        """
        Finds the single IHDR chunk. The PNG spec puts it first, but any position is accepted here
        as long as there is exactly one.

        Raises:
            MissingHeader: No IHDR chunk.
            MalformedStream: More than one IHDR chunk, or an IHDR payload of the wrong size.
        """
        headers = [chunk for chunk in self.chunks if chunk.kind is ChunkKind.HEADER]
        if not headers:
            raise MissingHeader("No IHDR chunk found")
        if len(headers) > 1:
            raise MalformedStream(f"Expected exactly one IHDR chunk. Got {len(headers)}")

        return IHDRData.from_bytes(headers[0].chunk_data)

    def _validate_IHDR(self):
        """
        Ensures we aren't trying to decode PNGs that this pipeline has no facilities for.
        See the IHDR section of the PNG spec for details about these settings.

        Raises:
            MalformedStream: Width or height is 0 or beyond 2^31 - 1.
            UnsupportedFormat: Compression Method - The only valid value as defined by the PNG spec is 0.
            UnsupportedFormat: Filter Method - The only valid value as defined by the PNG spec is 0.
            UnsupportedFormat: Colour Type / Bit Depth - Only the combinations in the PNG spec table are accepted.
            UnsupportedFormat: Interlace Method - Interlaced images are not tiled.
        """
        ihdr = self._ihdr
        for name, value in (("width", ihdr.width), ("height", ihdr.height)):
            if not 0 < value <= MAX_DIMENSION:
                raise MalformedStream(f"Invalid image {name}: {value}")

        if ihdr.compression_method != 0:
            raise UnsupportedFormat(
                f"Invalid compression method: Expected 0, Got: {ihdr.compression_method}"
            )

        if ihdr.filter_method != 0:
            raise UnsupportedFormat(
                f"Invalid filter method: Expected 0, Got: {ihdr.filter_method}"
            )

        if ihdr.colour_type not in {colour_type.value for colour_type in ColourType}:
            raise UnsupportedFormat(f"Unknown colour type: {ihdr.colour_type}")

        if ihdr.bit_depth not in ColourType(ihdr.colour_type).allowed_bit_depths:
            raise UnsupportedFormat(
                f"Bit depth {ihdr.bit_depth} is not valid for colour type {ihdr.colour_type}"
            )

        if ihdr.interlace_method != 0:
            raise UnsupportedFormat(
                f"We only support no interlacing. Got {ihdr.interlace_method}"
            )

    def _classify_chunks(self):
        """
        Walks the chunks once: IDAT payloads are concatenated in file order, the palette is kept for indexed
        images, print-relevant ancillary chunks are copied into self.metadata and everything else is dropped.

        Raises:
            MalformedStream: Duplicate palette or ancillary chunk, or a palette of impossible size.
            MissingHeader: Indexed image without a palette, or no IDAT chunk at all.
        """
        captured = {}
        seen_idat = False
        for chunk in self.chunks:
            raise_if_cancelled(self.cancel, "chunk classification")
            match chunk.kind:
                case ChunkKind.HEADER | ChunkKind.END:
                    continue
                case ChunkKind.PIXEL_DATA:
                    seen_idat = True
                    self.idat_data.extend(chunk.chunk_data)
                case ChunkKind.PALETTE:
                    if self.palette is not None:
                        raise MalformedStream("Duplicate PLTE chunk")
                    self.palette = self._validate_palette(chunk.chunk_data)
                case kind if kind.is_print_metadata:
                    name = AncillaryMetadata.field_name(kind)
                    if name in captured:
                        raise MalformedStream(f"Duplicate {chunk.chunk_type.decode()} chunk")
                    captured[name] = bytes(chunk.chunk_data)
                case _:
                    logger.debug("Discarding %s chunk", chunk.chunk_type)

        if not seen_idat:
            raise MissingHeader("No IDAT chunk found")

        if self.colour_type is ColourType.INDEXED:
            if self.palette is None:
                raise MissingHeader("Indexed-colour image has no PLTE chunk")
        elif self.palette is not None:
            logger.debug("Discarding suggested palette on a non-indexed image")
            self.palette = None

        self.metadata = AncillaryMetadata(**captured)
        logger.debug("Captured ancillary chunks: %s", self.metadata.present)

    def _validate_palette(self, data: bytes) -> bytes:
        entries, remainder = divmod(len(data), 3)
        if remainder or not entries:
            raise MalformedStream(f"PLTE length must be a non-zero multiple of 3. Got {len(data)}")
        if self.colour_type is ColourType.INDEXED and entries > 2 ** self._ihdr.bit_depth:
            raise MalformedStream(
                f"PLTE has {entries} entries, more than bit depth {self._ihdr.bit_depth} can index"
            )
        return bytes(data)

    def inflate_IDAT_data(self) -> bytes:
        expected = self._ihdr.height * (self.stride + 1)
        try:
            inflated = zlib.decompress(bytes(self.idat_data))
        except zlib.error as e:
            raise DecompressionError(f"IDAT stream is corrupt: {e}") from e

        if len(inflated) != expected:
            raise DecompressionError(
                f"Inflated IDAT data is {len(inflated)} bytes, expected {expected}"
            )
        return inflated

    def decode(self) -> tuple[PixelGrid, AncillaryMetadata]:
        ihdr = self._ihdr
        reconstructor = Transformer(self.stride, ihdr.height, max(1, self.bits_per_pixel // 8))
        samples = reconstructor.reconstruct(self.inflate_IDAT_data(), self.cancel)
        grid = PixelGrid(
            width=ihdr.width,
            height=ihdr.height,
            colour_type=self.colour_type,
            bit_depth=ihdr.bit_depth,
            samples=bytes(samples),
            palette=self.palette,
        )
        logger.info(
            "Decoded %dx%d %s image, bit depth %d",
            ihdr.width, ihdr.height, self.colour_type.name.lower(), ihdr.bit_depth,
        )
        return grid, self.metadata
