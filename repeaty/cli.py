from argparse import ArgumentParser, ArgumentTypeError, Namespace
from pathlib import Path
import logging
import re
import sys

from repeaty.errors import RepeatyError
from repeaty.pipeline import Services, write_atomically
from repeaty.png_encoder import FILTER_STRATEGIES, EncoderConfig
from repeaty.printer import Printer
from repeaty.tiler import TileSpec

logger = logging.getLogger("repeaty")

SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*[xX]\s*(\d+(?:\.\d+)?)\s*(mm)?\s*$")


def pair(cast):
    def parse(value: str):
        match = SIZE_PATTERN.match(value)
        if not match:
            raise ArgumentTypeError(f"Expected WIDTHxHEIGHT, got {value!r}")
        try:
            return cast(match.group(1)), cast(match.group(2))
        except ValueError:
            raise ArgumentTypeError(f"Expected whole numbers, got {value!r}") from None
    return parse


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        "repeaty",
        description="Tile a PNG to a larger canvas, keeping its DPI, ICC profile and other print metadata.",
    )
    parser.add_argument("input", type=Path, help="source PNG file")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--size", type=pair(int), metavar="WxH", help="target size in pixels")
    target.add_argument("--repeat", type=pair(int), metavar="NxM", help="number of tiles across and down")
    target.add_argument("--print-size", type=pair(float), metavar="WxHmm", help="target size in millimetres, using the source DPI")
    parser.add_argument("-o", "--output", type=Path, default=None, help="output file (default: next to the input)")
    parser.add_argument("--filter", dest="filter_strategy", choices=FILTER_STRATEGIES, default=EncoderConfig().filter_strategy)
    parser.add_argument("--compression-level", type=int, choices=range(0, 10), default=EncoderConfig().compression_level, metavar="0-9")
    parser.add_argument("--preview", action="store_true", help="print the source tile to the terminal")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser


def configure_logging(verbosity: int):
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def resolve_target(args: Namespace, services: Services) -> tuple[TileSpec, str]:
    """Works out the tile spec and the output name suffix for whichever size option was given."""
    grid, metadata = services.decoded
    if args.size:
        spec = TileSpec(*args.size)
        return spec, f"__{spec.width}x{spec.height}px"
    if args.repeat:
        across, down = args.repeat
        return TileSpec.from_repeats(grid, across, down), f"__{across}x{down}"

    width_mm, height_mm = args.print_size
    return TileSpec.from_millimetres(metadata, width_mm, height_mm), f"__{width_mm:g}x{height_mm:g}mm"


def output_path(args: Namespace, suffix: str) -> Path:
    if args.output is not None:
        return args.output
    return args.input.with_name(args.input.stem + suffix + ".png")


def run(args: Namespace) -> Path:
    services = Services({
        "fp": args.input,
        "compression_level": args.compression_level,
        "filter_strategy": args.filter_strategy,
    })
    spec, suffix = resolve_target(args, services)
    spec.validate()

    if args.preview:
        grid, _ = services.decoded
        Printer().print(grid)

    data = services.png_encoder(spec).final_datastream()
    path = output_path(args, suffix)
    write_atomically(path, data)
    return path


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        path = run(args)
    except RepeatyError as e:
        print(f"{e.kind}: {e}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1

    print(f"Finished creating pattern: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
