from enum import Enum

import torch

__all__ = [
    "RoundingMode",
    "NumericTag",
    "ReducedFloat16",
]


class RoundingMode(str, Enum):
    r"""Rounding policies applied when a real value is converted to an integer.

    Members compare equal to their string values, so ``"half_up"`` can be
    passed anywhere a :class:`RoundingMode` is expected.

    ======================= ===== ====== ==================================
    mode                    2.5   -2.5   rule
    ======================= ===== ====== ==================================
    ``HALF_AWAY_FROM_ZERO`` 3     -3     ties move away from zero
    ``HALF_UP``             3     -2     :math:`\lfloor x + 0.5 \rfloor`
    ``TOWARDS_ZERO``        2     -2     truncation
    ``HALF_TO_EVEN``        2     -2     ties go to the even neighbour
    ======================= ===== ====== ==================================
    """

    HALF_AWAY_FROM_ZERO = "half_away_from_zero"
    HALF_UP = "half_up"
    TOWARDS_ZERO = "towards_zero"
    HALF_TO_EVEN = "half_to_even"

    def __str__(self):
        return self.value


class NumericTag(Enum):
    """Element type tag of a caller supplied buffer.

    The set is closed: ``FLOAT32``, ``INT32``, ``INT8`` and ``UINT8``. The
    numeric core never infers a tag from data, callers always pass one.
    """

    FLOAT32 = "float32"
    INT32 = "int32"
    INT8 = "int8"
    UINT8 = "uint8"

    def __str__(self):
        return self.value

    def __repr__(self):
        return "NumericTag.{}".format(self.name)

    @property
    def dtype(self) -> torch.dtype:
        """The torch dtype holding elements of this tag."""
        return _TORCH_DTYPES[self]

    @property
    def itemsize(self) -> int:
        """Size of one element in bytes."""
        return 1 if self in (NumericTag.INT8, NumericTag.UINT8) else 4

    @property
    def is_float(self) -> bool:
        return self is NumericTag.FLOAT32

    @property
    def is_signed(self) -> bool:
        return self is not NumericTag.UINT8

    @property
    def qmin(self) -> int:
        """Smallest representable integer (integer tags only)."""
        if self.is_float:
            raise AttributeError("{} has no integer range".format(self))
        return _RANGES[self][0]

    @property
    def qmax(self) -> int:
        """Largest representable integer (integer tags only)."""
        if self.is_float:
            raise AttributeError("{} has no integer range".format(self))
        return _RANGES[self][1]

    @classmethod
    def from_dtype(cls, dtype: torch.dtype) -> "NumericTag":
        for tag, tag_dtype in _TORCH_DTYPES.items():
            if tag_dtype == dtype:
                return tag
        raise KeyError("no numeric tag for dtype {}".format(dtype))


_TORCH_DTYPES = {
    NumericTag.FLOAT32: torch.float32,
    NumericTag.INT32: torch.int32,
    NumericTag.INT8: torch.int8,
    NumericTag.UINT8: torch.uint8,
}

_RANGES = {
    NumericTag.INT32: (-(2**31), 2**31 - 1),
    NumericTag.INT8: (-128, 127),
    NumericTag.UINT8: (0, 255),
}


class ReducedFloat16:
    r"""
    Reduced-precision 16-bit scalar used by the hardware scale multiplier.

    A value holds the upper half of a ``binary32`` bit pattern: 1 sign bit,
    8 exponent bits and 7 stored mantissa bits, i.e. the ``bfloat16`` layout.
    Values are carried around as ``torch.bfloat16`` tensors, whose storage is
    exactly this bit pattern; the conversion *into* the format is never left to
    torch since the hardware rounding differs from the IEEE-754 cast.

    The hardware never produces infinities when it rounds, so overflowing
    products saturate to :attr:`max_finite`.
    """

    exp = 8
    man = 7
    # sign bit cleared, largest exponent below all-ones, full mantissa
    max_finite_bits = 0x7F7F
    max_finite = 2.0**127 * (2.0 - 2.0**-7)
    sign_mask = 0x8000
    exp_mask = 0x7F80
    man_mask = 0x007F

    def __str__(self):
        return "ReducedFloat16 (exponent={:d}, mantissa={:d})".format(
            self.exp, self.man
        )

    def __repr__(self):
        return self.__str__()
