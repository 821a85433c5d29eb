from .requantizer import Requantizer
from .conv import QConv2d
from .add import QAdd

__all__ = [
    "Requantizer",
    "QConv2d",
    "QAdd",
]
