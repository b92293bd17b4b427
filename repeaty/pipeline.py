from __future__ import annotations
from functools import cached_property
from pathlib import Path
import logging
import os
import tempfile

from repeaty.errors import CancelCheck
from repeaty.image import AncillaryMetadata, PixelGrid
from repeaty.png_decoder import PNGDecoder
from repeaty.png_encoder import EncoderConfig, PNGEncoder
from repeaty.tiler import TileSpec, tile

logger = logging.getLogger(__name__)


def repeat_png(data: bytes, spec: TileSpec, config: EncoderConfig = EncoderConfig(), cancel: CancelCheck = None) -> bytes:
    """
    Decodes a PNG, tiles its pixels to spec's size and encodes the result with the source's
    print metadata (pHYs, iCCP, cHRM, gAMA, sRGB) reattached. Everything stays in memory;
    the first error raised by any stage propagates unchanged.
    """
    grid, metadata = PNGDecoder.from_bytes(data, cancel).decode()
    return encode(tile(grid, spec, cancel), metadata, config, cancel)


def encode(grid: PixelGrid, metadata: AncillaryMetadata, config: EncoderConfig = EncoderConfig(), cancel: CancelCheck = None) -> bytes:
    return PNGEncoder(grid, metadata, config, cancel).final_datastream()


def write_atomically(path: Path, data: bytes):
    """Writes data next to path under a temporary name and renames it into place, so a failed write leaves nothing behind."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as file:
            file.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Wrote %d bytes to %s", len(data), path)


class Services:
    """Lazily wires the pipeline stages from a plain config dict, as built by the command line driver."""

    def __init__(self, config: dict, cancel: CancelCheck = None) -> None:
        self.config = config
        self.cancel = cancel

    @cached_property
    def encoder_config(self) -> EncoderConfig:
        defaults = EncoderConfig()
        return EncoderConfig(
            compression_level=self.config.get("compression_level", defaults.compression_level),
            filter_strategy=self.config.get("filter_strategy", defaults.filter_strategy),
            idat_chunk_size=self.config.get("idat_chunk_size", defaults.idat_chunk_size),
        )

    @cached_property
    def png_decoder(self) -> PNGDecoder:
        return PNGDecoder.from_file(self.config["fp"], self.cancel)

    @cached_property
    def decoded(self) -> tuple[PixelGrid, AncillaryMetadata]:
        return self.png_decoder.decode()

    def tiled(self, spec: TileSpec) -> PixelGrid:
        grid, _ = self.decoded
        return tile(grid, spec, self.cancel)

    def png_encoder(self, spec: TileSpec) -> PNGEncoder:
        _, metadata = self.decoded
        return PNGEncoder(self.tiled(spec), metadata, self.encoder_config, self.cancel)
