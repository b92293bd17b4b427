from __future__ import annotations
from enum import IntEnum
from typing import Generator, NamedTuple
import struct

from repeaty.chunks import ChunkKind

MAX_DIMENSION = 2**31 - 1
METRES_PER_INCH = 0.0254


class ColourType(IntEnum):
    GREYSCALE = 0
    TRUECOLOUR = 2
    INDEXED = 3
    GREYSCALE_ALPHA = 4
    TRUECOLOUR_ALPHA = 6

    @property
    def samples_per_pixel(self) -> int:
        return {
            ColourType.GREYSCALE: 1,
            ColourType.TRUECOLOUR: 3,
            ColourType.INDEXED: 1,
            ColourType.GREYSCALE_ALPHA: 2,
            ColourType.TRUECOLOUR_ALPHA: 4,
        }[self]

    @property
    def allowed_bit_depths(self) -> tuple[int, ...]:
        return {
            ColourType.GREYSCALE: (1, 2, 4, 8, 16),
            ColourType.TRUECOLOUR: (8, 16),
            ColourType.INDEXED: (1, 2, 4, 8),
            ColourType.GREYSCALE_ALPHA: (8, 16),
            ColourType.TRUECOLOUR_ALPHA: (8, 16),
        }[self]


class PixelGrid(NamedTuple):
    """
    Unfiltered image samples, one packed row after another.
    Rows are packed the way PNG scanlines are (without the filter byte): sub-byte pixels share bytes,
    most significant bits first, and each row is padded to a whole byte.
    """
    width: int
    height: int
    colour_type: ColourType
    bit_depth: int
    samples: bytes
    palette: bytes | None = None

    @property
    def bits_per_pixel(self) -> int:
        return self.colour_type.samples_per_pixel * self.bit_depth

    @property
    def bytes_per_pixel(self) -> int:
        # the filter unit: sub-byte pixels are filtered against the previous whole byte
        return max(1, self.bits_per_pixel // 8)

    @property
    def stride(self) -> int:
        return row_length(self.width, self.bits_per_pixel)

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def expected_size(self) -> int:
        return self.stride * self.height

    def row(self, y: int) -> bytes:
        return self.samples[y * self.stride:(y + 1) * self.stride]

    def rows(self) -> Generator[bytes, None, None]:
        for y in range(self.height):
            yield self.row(y)

    def pixel(self, x: int, y: int) -> tuple[int, ...]:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} grid")

        row = self.row(y)
        if self.bit_depth < 8:
            bit_offset = x * self.bit_depth
            shift = 8 - self.bit_depth - (bit_offset % 8)
            return ((row[bit_offset // 8] >> shift) & ((1 << self.bit_depth) - 1),)

        sample_bytes = self.bit_depth // 8
        start = x * self.bytes_per_pixel
        px = row[start:start + self.bytes_per_pixel]
        return tuple(
            int.from_bytes(px[i:i + sample_bytes], "big")
            for i in range(0, len(px), sample_bytes)
        )


def row_length(width: int, bits_per_pixel: int) -> int:
    return (width * bits_per_pixel + 7) // 8


class AncillaryMetadata(NamedTuple):
    """Raw payloads of the print-relevant chunks, copied verbatim from the source."""
    physical_dimensions: bytes | None = None
    icc_profile: bytes | None = None
    chromaticity: bytes | None = None
    gamma: bytes | None = None
    srgb: bytes | None = None

    @staticmethod
    def field_name(kind: ChunkKind) -> str:
        return {
            ChunkKind.PHYSICAL_DIMENSIONS: "physical_dimensions",
            ChunkKind.ICC_PROFILE: "icc_profile",
            ChunkKind.CHROMATICITY: "chromaticity",
            ChunkKind.GAMMA: "gamma",
            ChunkKind.SRGB: "srgb",
        }[kind]

    def payload(self, kind: ChunkKind) -> bytes | None:
        return getattr(self, self.field_name(kind))

    @property
    def present(self) -> list[str]:
        return [name for name, value in self._asdict().items() if value is not None]

    @property
    def pixels_per_unit(self) -> tuple[int, int, int] | None:
        """(x, y, unit) from pHYs. unit 1 is the metre, 0 means only the aspect ratio is known."""
        if self.physical_dimensions is None or len(self.physical_dimensions) != 9:
            return None
        return struct.unpack(">IIB", self.physical_dimensions)

    @property
    def dpi(self) -> tuple[float, float] | None:
        match self.pixels_per_unit:
            case (x, y, 1):
                return x * METRES_PER_INCH, y * METRES_PER_INCH
            case _:
                return None
