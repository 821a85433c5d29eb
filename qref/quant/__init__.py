from .quant_function import *
from .quant_format import *
from .functional import *
from .launch import *
from .dispatch import *
from .modules import *

__all__ = [
    "round_to",
    "saturate",
    "quantize",
    "dequantize",
    "to_reduced",
    "reduced_to_float",
    "reduced_mul",
    "reduced_bits",
    "reduced_scale_mul",
    "multiply_shift",
    "requantize",
    "requantize_per_channel",
    "quantize_multiplier",
    "add_requant",
    "add_requant_sequential",
    "qconv2d",
    "float_mm",
    "permute4d",
    "insert_slice",
    "QRequantFormats",
    "QAddFormats",
    "make_requant_function",
    "make_add_function",
    "parallel_launch",
    "parallel_for",
    "Status",
    "launch_cast",
    "launch_requantize",
    "launch_requantize_per_channel",
    "launch_add_requant",
    "launch_reduced_scale_mul",
    "launch_conv2d",
    "launch_matmul",
    "launch_permute",
    "launch_insert_slice",
    "Requantizer",
    "QConv2d",
    "QAdd",
]
