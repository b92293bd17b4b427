import struct

import pytest

from repeaty.errors import Cancelled, UnsupportedFormat
from repeaty.image import AncillaryMetadata, ColourType, PixelGrid
from repeaty.tiler import TileSpec, pack_row, tile, unpack_row
from pngdata import PHYS_300_DPI

A, B, C, D = (1, 1, 1), (2, 2, 2), (3, 3, 3), (4, 4, 4)


def rgb_grid(rows: list[list[tuple[int, int, int]]]) -> PixelGrid:
    return PixelGrid(
        width=len(rows[0]),
        height=len(rows),
        colour_type=ColourType.TRUECOLOUR,
        bit_depth=8,
        samples=b"".join(bytes(px) for row in rows for px in row),
    )


def grid_pixels(grid: PixelGrid) -> list[list[tuple[int, ...]]]:
    return [[grid.pixel(x, y) for x in range(grid.width)] for y in range(grid.height)]


def patterned_grid(colour_type: ColourType, bit_depth: int, width: int, height: int) -> PixelGrid:
    """A grid where every pixel differs from its neighbours, built from packed rows."""
    samples_per_pixel = colour_type.samples_per_pixel
    max_value = (1 << bit_depth) - 1
    rows = bytearray()
    for y in range(height):
        values = [(x * 7 + y * 3 + s) % (max_value + 1) for x in range(width) for s in range(samples_per_pixel)]
        if bit_depth < 8:
            rows.extend(pack_row(values, bit_depth))
        else:
            for value in values:
                rows.extend(value.to_bytes(bit_depth // 8, "big"))
    palette = bytes(3 * (max_value + 1)) if colour_type is ColourType.INDEXED else None
    return PixelGrid(width, height, colour_type, bit_depth, bytes(rows), palette)


def test_two_by_two_to_five_by_three():
    # Arrange
    grid = rgb_grid([[A, B], [C, D]])

    # Act
    tiled = tile(grid, TileSpec(5, 3))

    # Assert
    assert grid_pixels(tiled) == [
        [A, B, A, B, A],
        [C, D, C, D, C],
        [A, B, A, B, A],
    ]


def test_same_size_is_identity():
    grid = rgb_grid([[A, B, C], [D, C, B]])
    assert tile(grid, TileSpec(3, 2)) == grid


def test_smaller_target_crops_top_left():
    grid = rgb_grid([[A, B, C], [D, C, B], [B, B, A]])
    assert grid_pixels(tile(grid, TileSpec(2, 1))) == [[A, B]]


def test_crop_in_one_dimension_tiles_in_the_other():
    grid = rgb_grid([[A, B, C], [D, C, B]])
    assert grid_pixels(tile(grid, TileSpec(2, 5))) == [[A, B], [D, C], [A, B], [D, C], [A, B]]


@pytest.mark.parametrize(["colour_type", "bit_depth"], (
    (ColourType.GREYSCALE, 1),
    (ColourType.GREYSCALE, 2),
    (ColourType.GREYSCALE, 4),
    (ColourType.GREYSCALE, 8),
    (ColourType.GREYSCALE, 16),
    (ColourType.INDEXED, 1),
    (ColourType.INDEXED, 4),
    (ColourType.INDEXED, 8),
    (ColourType.TRUECOLOUR, 8),
    (ColourType.TRUECOLOUR, 16),
    (ColourType.GREYSCALE_ALPHA, 8),
    (ColourType.GREYSCALE_ALPHA, 16),
    (ColourType.TRUECOLOUR_ALPHA, 8),
    (ColourType.TRUECOLOUR_ALPHA, 16),
))
@pytest.mark.parametrize(["width", "height"], ((1, 1), (3, 2), (7, 5), (13, 3)))
def test_every_output_pixel_wraps_the_source(colour_type, bit_depth, width, height):
    # Arrange
    grid = patterned_grid(colour_type, bit_depth, 5, 3)

    # Act
    tiled = tile(grid, TileSpec(width, height))

    # Assert
    assert tiled.dimensions == (width, height)
    assert (tiled.colour_type, tiled.bit_depth, tiled.palette) == (grid.colour_type, grid.bit_depth, grid.palette)
    assert len(tiled.samples) == tiled.expected_size
    for y in range(height):
        for x in range(width):
            assert tiled.pixel(x, y) == grid.pixel(x % grid.width, y % grid.height), (x, y)


def test_sub_byte_rows_are_zero_padded():
    # 3 one-bit pixels set, tiled to 9: second byte holds only the ninth pixel
    grid = PixelGrid(3, 1, ColourType.GREYSCALE, 1, bytes([0b11100000]))
    assert tile(grid, TileSpec(9, 1)).samples == bytes([0xFF, 0b10000000])


def test_unpack_and_pack_row():
    assert unpack_row(bytes([0b00011011]), 4, 2) == [0, 1, 2, 3]
    assert unpack_row(bytes([0xAB, 0xC0]), 3, 4) == [0xA, 0xB, 0xC]
    assert pack_row([0xA, 0xB, 0xC], 4) == bytearray([0xAB, 0xC0])


@pytest.mark.parametrize("spec", (TileSpec(0, 1), TileSpec(1, 0), TileSpec(-3, 2), TileSpec(2**31, 1)))
def test_invalid_target(spec):
    with pytest.raises(ValueError):
        tile(rgb_grid([[A]]), spec)


def test_from_repeats():
    grid = rgb_grid([[A, B], [C, D]])
    assert TileSpec.from_repeats(grid, 20, 23) == TileSpec(40, 46)
    with pytest.raises(ValueError):
        TileSpec.from_repeats(grid, 0, 2)


def test_from_millimetres_uses_source_density():
    metadata = AncillaryMetadata(physical_dimensions=PHYS_300_DPI)
    # 100mm at 11811 pixels per metre
    assert TileSpec.from_millimetres(metadata, 100, 50.8) == TileSpec(1181, 600)


@pytest.mark.parametrize("physical_dimensions", (None, struct.pack(">IIB", 2, 1, 0)))
def test_from_millimetres_needs_metric_phys(physical_dimensions):
    metadata = AncillaryMetadata(physical_dimensions=physical_dimensions)
    with pytest.raises(UnsupportedFormat, match="pHYs"):
        TileSpec.from_millimetres(metadata, 10, 10)


def test_cancel_while_tiling():
    with pytest.raises(Cancelled):
        tile(rgb_grid([[A]]), TileSpec(2, 2), cancel=lambda: True)
