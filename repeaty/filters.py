from typing import Callable

from repeaty.square import Square

FILTER_NAMES = ("none", "sub", "up", "average", "paeth")


class I8(int):
    def __new__(cls, val):
        i = int.__new__(cls, val) & 0xFF
        if i > 127:
            i = (i & 0b01111111) - 128
        return i


class Filters:
    @staticmethod
    def none_filter(square: Square) -> int:
        return square.x

    @staticmethod
    def none_recon(square: Square) -> int:
        return square.x

    @staticmethod
    def sub_filter(square: Square) -> int:
        return square.x - square.a

    @staticmethod
    def sub_recon(square: Square) -> int:
        return square.x + square.a

    @staticmethod
    def up_filter(square: Square) -> int:
        return square.x - square.b

    @staticmethod
    def up_recon(square: Square) -> int:
        return square.x + square.b

    @staticmethod
    def average_filter(square: Square) -> int:
        return square.x - (square.a + square.b) // 2

    @staticmethod
    def average_recon(square: Square) -> int:
        return square.x + (square.a + square.b) // 2

    @staticmethod
    def paeth_filter(square: Square) -> int:
        return square.x - Filters.paeth_predictor(square.a, square.b, square.c)

    @staticmethod
    def paeth_recon(square: Square) -> int:
        return square.x + Filters.paeth_predictor(square.a, square.b, square.c)

    @staticmethod
    def paeth_predictor(a, b, c):
        p = a + b - c
        pa = abs(p - a)
        pb = abs(p - b)
        pc = abs(p - c)
        if pa <= pb and pa <= pc:
            Pr = a
        elif pb <= pc:
            Pr = b
        else:
            Pr = c
        return Pr

    @staticmethod
    def select_filter_func(filter_byte: int) -> Callable[[Square], int]:
        return [
            Filters.none_filter,
            Filters.sub_filter,
            Filters.up_filter,
            Filters.average_filter,
            Filters.paeth_filter,
        ][filter_byte]

    @staticmethod
    def select_reconstruction_func(filter_byte: int) -> Callable[[Square], int]:
        return [
            Filters.none_recon,
            Filters.sub_recon,
            Filters.up_recon,
            Filters.average_recon,
            Filters.paeth_recon,
        ][filter_byte]

    @staticmethod
    def filter_line(filter_byte: int, line: bytes, previous_line: bytes, bytes_per_pixel: int) -> bytearray:
        """Filters one raw scanline. The returned bytes do not include the leading filter type byte."""
        if filter_byte == 0:
            return bytearray(line)

        filter_func = Filters.select_filter_func(filter_byte)
        return bytearray(
            filter_func(Square.sample_x(x, i, line, previous_line, bytes_per_pixel)) & 0xFF
            for i, x in enumerate(line)
        )

    @staticmethod
    def reconstruct_line(filter_byte: int, filtered_line: bytes, previous_line: bytes, bytes_per_pixel: int) -> bytearray:
        """
        Reverses the filter on one scanline. previous_line must already be reconstructed.
        Sub, average and paeth read the bytes reconstructed so far on this line, so it is built left to right.
        """
        if filter_byte == 0:
            return bytearray(filtered_line)

        recon_func = Filters.select_reconstruction_func(filter_byte)
        recon_line = bytearray()
        for i, x in enumerate(filtered_line):
            square = Square.sample_x(x, i, recon_line, previous_line, bytes_per_pixel)
            recon_line.append(recon_func(square) & 0xFF)

        return recon_line

    @staticmethod
    def sum_of_absolute_differences(filtered_line: bytes) -> int:
        return sum(abs(I8(b)) for b in filtered_line)
