from io import BytesIO
import struct
import threading

import pytest
from PIL import Image, PngImagePlugin

from repeaty.chunks import read_chunks
from repeaty.errors import Cancelled, MalformedStream, UnsupportedFormat
from repeaty.pipeline import Services, encode, repeat_png, write_atomically
from repeaty.png_decoder import PNGDecoder
from repeaty.png_encoder import EncoderConfig
from repeaty.tiler import TileSpec
from pngdata import CHRM, GAMA, ICCP, PHYS_300_DPI, SRGB, WHITE, build_png, rgb_tile

FAKE_ICC = b"print shop profile" * 20


def pillow_png(image: Image.Image, **params) -> bytes:
    buf = BytesIO()
    image.save(buf, "PNG", **params)
    return buf.getvalue()


def checkerboard(mode: str, colours, size=(5, 3)) -> Image.Image:
    image = Image.new(mode, size)
    for y in range(size[1]):
        for x in range(size[0]):
            image.putpixel((x, y), colours[(x * 2 + y) % len(colours)])
    return image


def test_round_trip_without_tiling_is_lossless():
    # Arrange
    data = build_png(
        1, 1, [bytes(WHITE)],
        before_idat=[(b"cHRM", CHRM), (b"gAMA", GAMA), (b"iCCP", ICCP), (b"pHYs", PHYS_300_DPI)],
    )
    grid, metadata = PNGDecoder.from_bytes(data).decode()

    # Act
    output = repeat_png(data, TileSpec(*grid.dimensions))

    # Assert
    assert PNGDecoder.from_bytes(output).decode() == (grid, metadata)


def test_running_twice_gives_the_same_pixels():
    data = rgb_tile()
    first = PNGDecoder.from_bytes(repeat_png(data, TileSpec(7, 4))).decode()
    second = PNGDecoder.from_bytes(repeat_png(data, TileSpec(7, 4))).decode()
    assert first == second


def test_tiling_output_twice_matches_tiling_source_once():
    data = rgb_tile()
    once = PNGDecoder.from_bytes(repeat_png(data, TileSpec(9, 9))).decode()
    twice = PNGDecoder.from_bytes(repeat_png(repeat_png(data, TileSpec(6, 6)), TileSpec(9, 9))).decode()
    assert once == twice


def test_srgb_dropped_only_when_icc_present():
    data = build_png(1, 1, [bytes(WHITE)], before_idat=[(b"sRGB", SRGB), (b"iCCP", ICCP)])
    _, metadata = PNGDecoder.from_bytes(repeat_png(data, TileSpec(2, 2))).decode()
    assert metadata.srgb is None
    assert metadata.icc_profile == ICCP


def test_first_error_propagates_unchanged():
    data = bytearray(rgb_tile())
    data[40] ^= 0xFF
    with pytest.raises(MalformedStream):
        repeat_png(bytes(data), TileSpec(4, 4))


def test_interlaced_input_is_refused():
    data = build_png(1, 1, [bytes(WHITE)], interlace=1)
    with pytest.raises(UnsupportedFormat):
        repeat_png(data, TileSpec(4, 4))


def test_cancel_with_event():
    event = threading.Event()
    event.set()
    with pytest.raises(Cancelled):
        repeat_png(rgb_tile(), TileSpec(4, 4), cancel=event.is_set)


@pytest.mark.parametrize(["mode", "colours"], (
    ("RGB", [(255, 0, 0), (0, 128, 255), (10, 20, 30)]),
    ("RGBA", [(255, 0, 0, 255), (0, 128, 255, 40)]),
    ("L", [0, 77, 255]),
    ("LA", [(0, 255), (200, 100)]),
    ("1", [0, 255]),
))
def test_pillow_reads_tiled_output(mode, colours):
    # Arrange
    source = checkerboard(mode, colours)

    # Act
    output = repeat_png(pillow_png(source), TileSpec(12, 7))

    # Assert
    with Image.open(BytesIO(output)) as tiled:
        assert tiled.mode == source.mode
        assert tiled.size == (12, 7)
        for y in range(7):
            for x in range(12):
                assert tiled.getpixel((x, y)) == source.getpixel((x % 5, y % 3)), (x, y)


def test_pillow_reads_tiled_palette_image():
    # Arrange: four colours are saved with a bit depth of 2
    source = Image.new("P", (5, 3))
    source.putpalette([255, 0, 0, 0, 255, 0, 0, 0, 255, 255, 255, 255])
    for y in range(3):
        for x in range(5):
            source.putpixel((x, y), (x + y) % 4)
    data = pillow_png(source)
    grid, _ = PNGDecoder.from_bytes(data).decode()

    # Act
    output = repeat_png(data, TileSpec(11, 4))

    # Assert
    assert grid.bit_depth == 2
    with Image.open(BytesIO(output)) as tiled:
        assert tiled.mode == "P"
        assert tiled.getpalette()[:12] == source.getpalette()[:12]
        assert [tiled.getpixel((x, 3)) for x in range(11)] == [source.getpixel((x % 5, 0)) for x in range(11)]


def test_pillow_sees_the_same_print_metadata():
    # Arrange
    info = PngImagePlugin.PngInfo()
    info.add(b"gAMA", GAMA)
    info.add(b"cHRM", CHRM)
    source = pillow_png(
        checkerboard("RGB", [(1, 2, 3), (4, 5, 6)]),
        dpi=(300, 300),
        icc_profile=FAKE_ICC,
        pnginfo=info,
    )

    # Act
    output = repeat_png(source, TileSpec(40, 30))

    # Assert
    with Image.open(BytesIO(output)) as tiled:
        assert tiled.info["dpi"] == pytest.approx((300, 300), abs=0.01)
        assert tiled.info["icc_profile"] == FAKE_ICC
        assert tiled.info["gamma"] == pytest.approx(0.45455)

    source_chunks = {c.chunk_type: c.chunk_data for c in read_chunks(source)}
    output_chunks = {c.chunk_type: c.chunk_data for c in read_chunks(output)}
    for chunk_type in (b"pHYs", b"iCCP", b"gAMA", b"cHRM"):
        assert output_chunks[chunk_type] == source_chunks[chunk_type]


def test_pillow_filtered_input_decodes_like_pillow():
    # Pillow filters adaptively, so this covers reconstruction of real encoder output
    image = Image.new("RGB", (40, 20))
    for y in range(20):
        for x in range(40):
            image.putpixel((x, y), ((x * 13 + y) % 256, (y * 11) % 256, (x * y) % 256))

    grid, _ = PNGDecoder.from_bytes(pillow_png(image, optimize=True)).decode()

    assert all(grid.pixel(x, y) == image.getpixel((x, y)) for y in range(20) for x in range(40))


def test_sixteen_bit_output_keeps_bit_depth():
    rows = [struct.pack(">3H", 65535, 256, 1), struct.pack(">3H", 0, 4660, 43981)]
    data = build_png(1, 2, rows, bit_depth=16, colour_type=2)

    grid, _ = PNGDecoder.from_bytes(repeat_png(data, TileSpec(3, 3), EncoderConfig(filter_strategy="paeth"))).decode()

    assert grid.bit_depth == 16
    assert [grid.pixel(2, y) for y in range(3)] == [(65535, 256, 1), (0, 4660, 43981), (65535, 256, 1)]


def test_write_atomically_leaves_only_the_target(tmp_path):
    target = tmp_path / "out.png"
    write_atomically(target, b"data")
    assert target.read_bytes() == b"data"
    assert [p.name for p in tmp_path.iterdir()] == ["out.png"]


def test_write_atomically_cleans_up_on_failure(tmp_path, monkeypatch):
    def refuse(*_):
        raise OSError("disk full")

    monkeypatch.setattr("repeaty.pipeline.os.replace", refuse)
    with pytest.raises(OSError):
        write_atomically(tmp_path / "out.png", b"data")
    assert list(tmp_path.iterdir()) == []


def test_services_wire_the_stages(tmp_path):
    # Arrange
    path = tmp_path / "tile.png"
    path.write_bytes(rgb_tile())
    services = Services({"fp": path, "filter_strategy": "sub"})

    # Act
    encoder = services.png_encoder(TileSpec(6, 6))

    # Assert
    assert services.encoder_config == EncoderConfig(filter_strategy="sub")
    assert encoder.grid.dimensions == (6, 6)
    assert encoder.metadata.physical_dimensions == PHYS_300_DPI
    assert PNGDecoder.from_bytes(encoder.final_datastream()).decode()[0] == encoder.grid


def test_encode_helper_matches_encoder():
    grid, metadata = PNGDecoder.from_bytes(rgb_tile()).decode()
    assert PNGDecoder.from_bytes(encode(grid, metadata)).decode() == (grid, metadata)
