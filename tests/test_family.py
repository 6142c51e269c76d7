import numpy as np
import pytest

from fiducia.family import DecodeEntry, QuickDecode, TagFamily, rotate90

CODE = 0b101100111


def make_family(codes=(CODE,), reversed_border=False):
    return TagFamily(
        name="demo9",
        codes=codes,
        width_at_border=5,
        total_width=7,
        reversed_border=reversed_border,
        nbits=9,
        bit_x=(1, 2, 3, 1, 2, 3, 1, 2, 3),
        bit_y=(1, 1, 1, 2, 2, 2, 3, 3, 3),
        h=1,
    )


def rotate_n(w, n, nbits=9):
    for _ in range(n):
        w = rotate90(w, nbits)
    return w


@pytest.mark.parametrize("nbits", [9, 16])
def test_rotate90_four_times_is_identity(nbits):
    for w in range(0, 2 ** nbits, 7):
        assert rotate_n(w, 4, nbits) == w


@pytest.mark.parametrize("nbits", [9, 16, 36])
def test_rotate90_stays_within_mask(nbits):
    w = (1 << nbits) - 1
    assert rotate90(w, nbits) == w
    assert rotate90(1, nbits) < (1 << nbits)


def test_rotate90_keeps_centre_bit():
    assert rotate90(1, 9) == 1


def test_exact_code_decodes():
    qd = QuickDecode(make_family(), 2)
    entry = qd.decode(CODE)
    assert entry == DecodeEntry(rcode=CODE, id=0, hamming=0, rotation=0)


def test_single_bit_error_is_corrected():
    qd = QuickDecode(make_family(), 1)
    entry = qd.decode(CODE ^ (1 << 3))
    assert entry.id == 0
    assert entry.hamming == 1


def test_two_bit_error_needs_hamming_two():
    noisy = CODE ^ 0b11
    assert QuickDecode(make_family(), 2).decode(noisy).hamming == 2
    entry = QuickDecode(make_family(), 1).decode(noisy)
    assert entry is None or entry.hamming <= 1


@pytest.mark.parametrize("turns", [0, 1, 2, 3])
def test_rotation_reported_restores_code(turns):
    qd = QuickDecode(make_family(), 0)
    rotated = rotate_n(CODE, turns)
    entry = qd.decode(rotated)
    assert entry.id == 0
    assert rotate_n(rotated, entry.rotation) == CODE


def test_unknown_code_returns_none():
    qd = QuickDecode(make_family(), 0)
    rotations = {rotate_n(CODE, k) for k in range(4)}
    unknown = next(w for w in range(512) if w not in rotations)
    assert qd.decode(unknown) is None


def test_first_code_wins_on_collision():
    other = CODE ^ 1
    qd = QuickDecode(make_family(codes=(CODE, other)), 1)
    assert qd.decode(other).id == 0
    assert qd.decode(CODE).id == 0


def test_table_size_without_collisions():
    qd = QuickDecode(make_family(), 1)
    assert len(qd) == 1 + 9


def test_hamming_beyond_three_rejected():
    with pytest.raises(ValueError):
        QuickDecode(make_family(), 4)


def test_too_many_codes_rejected():
    with pytest.raises(ValueError):
        QuickDecode(make_family(codes=tuple(range(65536))), 0)


def test_bit_layout_length_checked():
    with pytest.raises(ValueError):
        TagFamily("bad", (1,), 5, 7, False, 9, (1, 2), (1, 2), 1)


def test_to_image_border_and_bits():
    family = make_family()
    im = family.to_image(0)
    assert im.shape == (7, 7)
    assert im.dtype == np.uint8
    ring = np.concatenate([im[0, :], im[-1, :], im[:, 0], im[:, -1]])
    assert np.all(ring == 255)
    inner = np.concatenate([im[1, 1:6], im[5, 1:6], im[1:6, 1], im[1:6, 5]])
    assert np.all(inner == 0)
    for i, (bx, by) in enumerate(zip(family.bit_x, family.bit_y)):
        expected = 255 if CODE & (1 << (8 - i)) else 0
        assert im[by + 1, bx + 1] == expected


def test_to_image_rejects_bad_index():
    with pytest.raises(IndexError):
        make_family().to_image(1)
    with pytest.raises(IndexError):
        make_family().to_image(-1)