from typing import NamedTuple, Self


class Square(NamedTuple):
    """
    The byte being filtered (x) and its neighbours as laid out in the PNG spec:

        c b
        a x

    a is one filter unit to the left, b is directly above, c is above a.
    Neighbours falling outside the image are 0.
    """
    x: int
    a: int
    b: int
    c: int

    @classmethod
    def sample_x(cls, x: int, x_idx: int, current_scanline: bytes, previous_scanline: bytes, bytes_per_pixel: int) -> Self:
        left = x_idx - bytes_per_pixel
        return cls(
            x=x,
            a=current_scanline[left] if left >= 0 else 0,
            b=previous_scanline[x_idx],
            c=previous_scanline[left] if left >= 0 else 0,
        )
