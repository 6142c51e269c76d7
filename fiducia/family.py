"""Tag families, code rotation and fast error-correcting code lookup."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import combinations

import numpy as np

MAX_SUPPORTED_HAMMING = 3
MAX_CODES = 65536


def rotate90(w: int, nbits: int) -> int:
    """Rotate a square tag code by 90 degrees.

    The code is read one quadrant at a time; when ``nbits % 4 == 1`` the
    lowest bit is the centre pixel and stays in place.
    """
    p = nbits
    centre = 0
    if nbits % 4 == 1:
        p = nbits - 1
        centre = 1
    w = ((w >> centre) << (p // 4 + centre)) | (w >> (3 * p // 4 + centre) << centre) | (w & centre)
    return w & ((1 << nbits) - 1)


@dataclass(frozen=True, eq=False)
class TagFamily:
    """A family of tag codes and the layout of their data bits."""

    name: str
    codes: tuple[int, ...]
    width_at_border: int
    total_width: int
    reversed_border: bool
    nbits: int
    bit_x: tuple[int, ...]
    bit_y: tuple[int, ...]
    h: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "codes", tuple(self.codes))
        object.__setattr__(self, "bit_x", tuple(self.bit_x))
        object.__setattr__(self, "bit_y", tuple(self.bit_y))
        if len(self.bit_x) != self.nbits or len(self.bit_y) != self.nbits:
            raise ValueError("bit_x and bit_y must each hold nbits entries")

    @property
    def ncodes(self) -> int:
        return len(self.codes)

    def to_image(self, idx: int) -> np.ndarray:
        """Render tag ``idx`` as a square uint8 image (0 black, 255 white)."""
        if not 0 <= idx < self.ncodes:
            raise IndexError(f"tag index {idx} out of range for family {self.name!r}")
        code = self.codes[idx]
        size = self.total_width
        im = np.zeros((size, size), dtype=np.uint8)

        white_width = self.width_at_border + (0 if self.reversed_border else 2)
        start = (size - white_width) // 2
        far = size - 1 - start
        for i in range(white_width - 1):
            im[start, start + i] = 255
            im[start + i, far] = 255
            im[far, start + i + 1] = 255
            im[start + 1 + i, start] = 255

        border_start = (size - self.width_at_border) // 2
        for i, (bx, by) in enumerate(zip(self.bit_x, self.bit_y)):
            if code & (1 << (self.nbits - i - 1)):
                im[by + border_start, bx + border_start] = 255
        return im


@dataclass(frozen=True)
class DecodeEntry:
    """Result of looking up a sampled code word."""

    rcode: int
    id: int
    hamming: int
    rotation: int


class QuickDecode:
    """Lookup table of every code word within ``max_hamming`` bit errors."""

    def __init__(self, family: TagFamily, max_hamming: int) -> None:
        if family.ncodes >= MAX_CODES:
            raise ValueError("tag families are limited to fewer than 65536 codes")
        if max_hamming > MAX_SUPPORTED_HAMMING:
            raise ValueError(f"max_hamming beyond {MAX_SUPPORTED_HAMMING} not supported")
        self.family = family
        self.max_hamming = max_hamming
        self._table: dict[int, tuple[int, int]] = {}

        bits = [1 << j for j in range(family.nbits)]
        for tag_id, code in enumerate(family.codes):
            for hamming in range(max_hamming + 1):
                for flips in combinations(bits, hamming):
                    variant = code
                    for bit in flips:
                        variant ^= bit
                    # The first code to claim a word keeps it.
                    self._table.setdefault(variant, (tag_id, hamming))

    def __len__(self) -> int:
        return len(self._table)

    def decode(self, rcode: int) -> DecodeEntry | None:
        """Find ``rcode`` under any of the four rotations, or return None."""
        for rotation in range(4):
            hit = self._table.get(rcode)
            if hit is not None:
                tag_id, hamming = hit
                return DecodeEntry(rcode=rcode, id=tag_id, hamming=hamming, rotation=rotation)
            rcode = rotate90(rcode, self.family.nbits)
        return None