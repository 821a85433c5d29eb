from .number import *
from .errors import *

__version__ = "0.1.0"

__all__ = [
    "RoundingMode",
    "NumericTag",
    "ReducedFloat16",
    "UnsupportedTypeError",
    "InvalidShiftError",
]
