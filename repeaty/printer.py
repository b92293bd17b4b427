from typing import Generator, TextIO
import sys

from repeaty.image import ColourType, PixelGrid

RGBA = tuple[int, int, int, int]
PixelStream = Generator[RGBA, None, None]
ScanLineStream = Generator[tuple[int, PixelStream], None, None]


def to_8bit(value: int, bit_depth: int) -> int:
    if bit_depth == 16:
        return value >> 8
    return value * 255 // ((1 << bit_depth) - 1)


def to_rgba(grid: PixelGrid, samples: tuple[int, ...]) -> RGBA:
    match grid.colour_type:
        case ColourType.INDEXED:
            entry = grid.palette[samples[0] * 3:samples[0] * 3 + 3]
            return (*entry, 255) if len(entry) == 3 else (0, 0, 0, 255)
        case ColourType.GREYSCALE:
            g = to_8bit(samples[0], grid.bit_depth)
            return g, g, g, 255
        case ColourType.GREYSCALE_ALPHA:
            g, a = (to_8bit(s, grid.bit_depth) for s in samples)
            return g, g, g, a
        case ColourType.TRUECOLOUR:
            r, g, b = (to_8bit(s, grid.bit_depth) for s in samples)
            return r, g, b, 255
        case _:
            r, g, b, a = (to_8bit(s, grid.bit_depth) for s in samples)
            return r, g, b, a


class Printer:
    ESC = "\x1B"
    CSI = f"{ESC}["

    @classmethod
    def paint(cls, s: str, r: int, g: int, b: int) -> str:
        return "".join(
            [
                f"{cls.CSI}38;2;{r};{g};{b}m",
                s,
                f"{cls.CSI}0m",
            ]
        )

    def __init__(self, max_columns: int = 64, out: TextIO | None = None):
        self.max_columns = max_columns
        self.out = out or sys.stdout

    def apply_rgb(self, s: str, rgba: RGBA) -> str:
        *rgb, a = rgba
        if a < 200:
            return " " * 2
        else:
            return self.paint(s, *rgb)

    def step(self, grid: PixelGrid) -> int:
        return -(-grid.width // self.max_columns)

    def enumerate_rows(self, grid: PixelGrid) -> ScanLineStream:
        step = self.step(grid)
        for y in range(0, grid.height, step):
            yield y, (to_rgba(grid, grid.pixel(x, y)) for x in range(0, grid.width, step))

    def print(self, grid: PixelGrid):
        step = self.step(grid)
        # column numbers, in source pixels
        print("\t" + "".join(f"{x % 100:>2d}" for x in range(0, grid.width, step)), file=self.out)

        for y, row in self.enumerate_rows(grid):
            print(f"{y=}", end="\t", file=self.out)
            for rgba in row:
                print(self.apply_rgb("██", rgba), end="", file=self.out)
            print("", file=self.out)
