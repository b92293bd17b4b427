from __future__ import annotations
from typing import Generator, NamedTuple, Self
import logging

from repeaty.errors import CancelCheck, UnsupportedFormat, raise_if_cancelled
from repeaty.image import MAX_DIMENSION, AncillaryMetadata, PixelGrid, row_length

logger = logging.getLogger(__name__)

PixelRow = list[int]


class TileSpec(NamedTuple):
    width: int
    height: int

    def validate(self):
        for name, value in (("width", self.width), ("height", self.height)):
            if not 0 < value <= MAX_DIMENSION:
                raise ValueError(f"Target {name} must be between 1 and {MAX_DIMENSION}. Got {value}")

    @classmethod
    def from_repeats(cls, grid: PixelGrid, across: int, down: int) -> Self:
        if across < 1 or down < 1:
            raise ValueError(f"Repeat counts must be positive. Got {across}x{down}")
        return cls(grid.width * across, grid.height * down)

    @classmethod
    def from_millimetres(cls, metadata: AncillaryMetadata, width_mm: float, height_mm: float) -> Self:
        """
        Converts a print size to pixels using the source's pHYs density, rounding to the nearest pixel.

        Raises:
            UnsupportedFormat: The source has no pHYs chunk in pixels per metre.
        """
        match metadata.pixels_per_unit:
            case (ppm_x, ppm_y, 1):
                return cls(round(width_mm / 1000 * ppm_x), round(height_mm / 1000 * ppm_y))
            case _:
                raise UnsupportedFormat("A print size needs a pHYs chunk with pixels per metre")


def unpack_row(row: bytes, width: int, bit_depth: int) -> PixelRow:
    mask = (1 << bit_depth) - 1
    per_byte = 8 // bit_depth
    values = []
    for byte in row:
        for i in range(per_byte):
            values.append((byte >> (8 - bit_depth * (i + 1))) & mask)
    return values[:width]


def pack_row(values: PixelRow, bit_depth: int) -> bytearray:
    packed = bytearray(row_length(len(values), bit_depth))
    for i, value in enumerate(values):
        bit_offset = i * bit_depth
        packed[bit_offset // 8] |= value << (8 - bit_depth - bit_offset % 8)
    return packed


def wrap(seq, length: int):
    repeats = -(-length // len(seq))
    return (seq * repeats)[:length]


def gen_tiled_rows(grid: PixelGrid, target_width: int) -> Generator[bytes, None, None]:
    """Yields each source row widened to target_width pixels by repeating it."""
    for row in grid.rows():
        if grid.bits_per_pixel >= 8:
            yield bytes(wrap(row, target_width * grid.bytes_per_pixel))
        else:
            pixels = unpack_row(row, grid.width, grid.bit_depth)
            yield bytes(pack_row(wrap(pixels, target_width), grid.bit_depth))


def tile(grid: PixelGrid, spec: TileSpec, cancel: CancelCheck = None) -> PixelGrid:
    """
    Repeats grid across and down to exactly spec's size: output pixel (x, y) is source pixel
    (x mod width, y mod height). A spec smaller than the source crops its top left corner.
    """
    spec.validate()
    tiled_rows = list(gen_tiled_rows(grid, spec.width))

    samples = bytearray()
    for y in range(spec.height):
        raise_if_cancelled(cancel, "tiling")
        samples.extend(tiled_rows[y % grid.height])

    logger.info(
        "Tiled %dx%d source to %dx%d (%.2f x %.2f repeats)",
        grid.width, grid.height, spec.width, spec.height,
        spec.width / grid.width, spec.height / grid.height,
    )
    return grid._replace(width=spec.width, height=spec.height, samples=bytes(samples))
