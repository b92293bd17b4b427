from typing import Generator, NamedTuple
import logging
import zlib

from repeaty.chunks import MAX_CHUNK_LENGTH, IHDRData, Chunk, ChunkKind, write_chunks
from repeaty.errors import CancelCheck, EncodingError, raise_if_cancelled
from repeaty.filters import FILTER_NAMES, Filters
from repeaty.image import AncillaryMetadata, ColourType, PixelGrid
from repeaty.png_decoder import Transformer

logger = logging.getLogger(__name__)

ADAPTIVE = "adaptive"
FILTER_STRATEGIES = (*FILTER_NAMES, ADAPTIVE)

# Order matters: the colour space chunks must precede PLTE, pHYs only has to precede IDAT.
COLOUR_SPACE_KINDS = (ChunkKind.CHROMATICITY, ChunkKind.GAMMA, ChunkKind.ICC_PROFILE, ChunkKind.SRGB)


class EncoderConfig(NamedTuple):
    compression_level: int = 9
    filter_strategy: str = ADAPTIVE
    idat_chunk_size: int = 65536


def gen_line_pairs(grid: PixelGrid) -> Generator[tuple[bytes, bytes], None, None]:
    prev = bytes(grid.stride)
    for line in grid.rows():
        yield prev, line
        prev = line


def consume_lines(grid: PixelGrid, cancel: CancelCheck = None) -> Generator[tuple[int, bytearray], None, None]:
    """Yields (filter type, filtered line) per scanline, picking the filter with the lowest score."""
    for prev, current in gen_line_pairs(grid):
        raise_if_cancelled(cancel, "filtering")
        candidates = [
            Filters.filter_line(filter_byte, current, prev, grid.bytes_per_pixel)
            for filter_byte in range(len(FILTER_NAMES))
        ]
        scores = [Filters.sum_of_absolute_differences(candidate) for candidate in candidates]
        best = scores.index(min(scores))
        yield best, candidates[best]


class PNGEncoder:
    def __init__(self, grid: PixelGrid, metadata: AncillaryMetadata, config: EncoderConfig = EncoderConfig(), cancel: CancelCheck = None) -> None:
        self.grid = grid
        self.metadata = metadata
        self.config = config
        self.cancel = cancel
        self._validate()

    def _validate(self):
        """
        The grid arrives from the decoder and tiler, so a mismatch here is a defect rather than bad input.

        Raises:
            EncodingError: Buffer size, colour type, bit depth, palette or configuration is inconsistent.
        """
        grid = self.grid
        if grid.bit_depth not in ColourType(grid.colour_type).allowed_bit_depths:
            raise EncodingError(f"Bit depth {grid.bit_depth} is not valid for colour type {grid.colour_type}")

        if len(grid.samples) != grid.expected_size:
            raise EncodingError(
                f"Sample buffer is {len(grid.samples)} bytes, expected {grid.expected_size} "
                f"for {grid.width}x{grid.height} at {grid.bits_per_pixel} bits per pixel"
            )

        if grid.colour_type == ColourType.INDEXED and not grid.palette:
            raise EncodingError("Indexed-colour grid has no palette")

        if self.config.filter_strategy not in FILTER_STRATEGIES:
            raise EncodingError(f"Unknown filter strategy: {self.config.filter_strategy}")

        if not 0 < self.config.idat_chunk_size <= MAX_CHUNK_LENGTH:
            raise EncodingError(f"IDAT chunk size out of range: {self.config.idat_chunk_size}")

    def prepare_ihdr(self) -> Chunk:
        ihdr_data = IHDRData(
            width=self.grid.width,
            height=self.grid.height,
            bit_depth=self.grid.bit_depth,
            colour_type=int(self.grid.colour_type),
            compression_method=0,
            filter_method=0,
            interlace_method=0,
        )
        return Chunk.create(b"IHDR", bytes(ihdr_data))

    def apply_filtering(self) -> bytearray:
        strategy = self.config.filter_strategy
        if strategy != ADAPTIVE:
            transformer = Transformer(self.grid.stride, self.grid.height, self.grid.bytes_per_pixel)
            return transformer.filter(self.grid.samples, [FILTER_NAMES.index(strategy)], self.cancel)

        filtered = bytearray()
        for filter_byte, line in consume_lines(self.grid, self.cancel):
            filtered.append(filter_byte)
            filtered.extend(line)
        return filtered

    def _compress_to_idat_chunks(self, filtered_data: bytes) -> list[Chunk]:
        compressed = zlib.compress(bytes(filtered_data), self.config.compression_level)
        max_size = self.config.idat_chunk_size

        chunks = [
            Chunk.create(b"IDAT", compressed[i:i + max_size])
            for i in range(0, len(compressed), max_size)
        ]
        logger.debug("Compressed %d filtered bytes into %d IDAT chunks", len(filtered_data), len(chunks))
        return chunks

    def iend_chunk(self) -> Chunk:
        return Chunk.create(b"IEND", b"")

    def ancillary_chunks(self) -> tuple[list[Chunk], list[Chunk]]:
        """
        Rebuilds the captured metadata as chunks, split into those that go before PLTE and those that go after it.
        When both iCCP and sRGB were captured only iCCP is kept.
        """
        before_palette = []
        for kind in COLOUR_SPACE_KINDS:
            payload = self.metadata.payload(kind)
            if payload is None:
                continue
            if kind is ChunkKind.SRGB and self.metadata.icc_profile is not None:
                logger.warning("Source has both iCCP and sRGB chunks: keeping the ICC profile and dropping sRGB")
                continue
            before_palette.append(Chunk.create(kind.value, payload))

        after_palette = []
        if self.metadata.physical_dimensions is not None:
            after_palette.append(Chunk.create(b"pHYs", self.metadata.physical_dimensions))

        return before_palette, after_palette

    def final_chunks(self) -> list[Chunk]:
        before_palette, after_palette = self.ancillary_chunks()
        palette = []
        if self.grid.colour_type == ColourType.INDEXED:
            palette.append(Chunk.create(b"PLTE", self.grid.palette))

        return [
            self.prepare_ihdr(),
            *before_palette,
            *palette,
            *after_palette,
            *self._compress_to_idat_chunks(self.apply_filtering()),
            self.iend_chunk(),
        ]

    def final_datastream(self) -> bytes:
        return write_chunks(self.final_chunks(), self.cancel)
