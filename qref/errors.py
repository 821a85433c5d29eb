__all__ = ["UnsupportedTypeError", "InvalidShiftError"]


class UnsupportedTypeError(NotImplementedError):
    """A numeric tag, or a pair of tags, outside the supported set."""


class InvalidShiftError(ValueError):
    """A shift amount outside the range of the selected rounding path.

    Paths that add a ``1 << (shift - 1)`` rounding bias need ``shift >= 1``;
    the two-stage multiply-high path also accepts ``shift == 0``, which skips
    its second stage.
    """
