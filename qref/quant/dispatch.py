"""
Buffer-level entry points for validation harnesses.

Every entry point takes opaque buffers (torch tensors, or any writable object
exposing the buffer protocol such as ``bytearray`` or ``numpy.ndarray``),
caller supplied numeric tags, element counts or shapes and plain scalar or
flat array parameters. It returns a :class:`Status`. Results are computed into
scratch storage and copied to the output buffer only once the whole call has
succeeded, so a rejected call never writes anything.
"""

import functools
import logging
import math
from enum import Enum
from typing import Sequence

import torch

from ..number import NumericTag, RoundingMode
from ..errors import UnsupportedTypeError
from .quant_function import (
    add_requant,
    add_requant_sequential,
    as_param,
    check_multiplier,
    check_shift,
    get_rounding,
    get_tag,
    reduced_scale_mul,
    requantize,
    requantize_per_channel,
    round_to,
)
from .functional import (
    channel_param,
    check_window,
    float_mm,
    insert_slice,
    permute4d,
    qconv2d,
)
from .launch import parallel_launch, parallel_for

__all__ = [
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
]

logger = logging.getLogger(__name__)

_ELEMENT_DTYPES = {1: torch.uint8, 2: torch.int16, 4: torch.int32}


class Status(Enum):
    SUCCESS = 0
    UNSUPPORTED = 1
    INVALID_ARGUMENT = 2

    def __bool__(self):
        return self is Status.SUCCESS


def _guarded(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            fn(*args, **kwargs)
        except UnsupportedTypeError as e:
            logger.warning("%s: unsupported: %s", fn.__name__, e)
            return Status.UNSUPPORTED
        except (ValueError, AssertionError) as e:
            logger.warning("%s: invalid argument: %s", fn.__name__, e)
            return Status.INVALID_ARGUMENT
        return Status.SUCCESS

    return wrapper


def _view(buf, dtype: torch.dtype, count: int) -> torch.Tensor:
    """Reinterpret the first ``count`` elements of ``buf`` as a flat ``dtype`` tensor."""
    if count < 0:
        raise ValueError("negative element count: {}".format(count))
    if isinstance(buf, torch.Tensor):
        if not buf.is_contiguous():
            raise ValueError("buffer tensors must be contiguous")
        flat = buf.view(-1)
        if flat.dtype != dtype:
            if flat.element_size() != torch.empty(0, dtype=dtype).element_size():
                raise UnsupportedTypeError(
                    "buffer holds {}, expected {}".format(flat.dtype, dtype)
                )
            flat = flat.view(dtype)
        if flat.numel() < count:
            raise ValueError("buffer holds {} elements, need {}".format(flat.numel(), count))
        return flat[:count]
    return torch.frombuffer(buf, dtype=dtype, count=count)


def _typed(buf, tag: NumericTag | str, count: int) -> torch.Tensor:
    tag = get_tag(tag)
    if isinstance(buf, torch.Tensor) and buf.dtype != tag.dtype:
        raise UnsupportedTypeError("buffer holds {}, tagged {}".format(buf.dtype, tag))
    return _view(buf, tag.dtype, count)


def _shape(shape: Sequence[int], dims: int) -> tuple[int, ...]:
    shape = tuple(int(d) for d in shape)
    if len(shape) != dims or any(d < 0 for d in shape):
        raise ValueError("invalid {}-D shape: {}".format(dims, shape))
    return shape


def _rows_grain(row_size: int) -> int:
    return max(1, parallel_launch.grain // max(row_size, 1))


def _elementwise(src: torch.Tensor, out: torch.Tensor, fn):
    def task(start, end):
        out[start:end] = fn(src[start:end])

    parallel_for(src.numel(), task)


@_guarded
def launch_cast(
    src,
    src_tag: NumericTag | str,
    dst,
    dst_tag: NumericTag | str,
    count: int,
    rounding: RoundingMode | str = RoundingMode.HALF_AWAY_FROM_ZERO,
):
    """
    Convert ``count`` elements between numeric tags.

    Supported pairs are ``FLOAT32`` to any integer tag (through the rounding
    primitive), any integer tag to ``FLOAT32`` and any tag to itself. 8-bit
    values convert to ``FLOAT32`` exactly; ``INT32`` magnitudes above
    :math:`2^{24}` round to nearest even.
    """
    src_tag, dst_tag = get_tag(src_tag), get_tag(dst_tag)
    if src_tag is dst_tag:
        fn = lambda x: x
    elif src_tag.is_float:
        get_rounding(rounding)
        fn = lambda x: round_to(x, dst_tag, rounding)
    elif dst_tag.is_float:
        fn = lambda x: x.to(torch.float32)
    else:
        raise UnsupportedTypeError("no conversion from {} to {}".format(src_tag, dst_tag))
    if count == 0:
        return
    x = _typed(src, src_tag, count)
    y = _typed(dst, dst_tag, count)
    out = torch.empty_like(y)
    _elementwise(x, out, fn)
    y.copy_(out)


@_guarded
def launch_requantize(
    src,
    dst,
    count: int,
    multiplier: int,
    shift: int,
    qdm: bool = False,
    out_signed: bool = True,
    relu: bool = False,
    src_tag: NumericTag | str = NumericTag.INT32,
):
    """Per-tensor requantization of ``count`` int32 accumulators to int8/uint8."""
    if get_tag(src_tag) is not NumericTag.INT32:
        raise UnsupportedTypeError("requantize reads INT32 accumulators, got {}".format(src_tag))
    check_multiplier(as_param(multiplier))
    check_shift(as_param(shift), qdm)
    if count == 0:
        return
    dst_tag = NumericTag.INT8 if out_signed else NumericTag.UINT8
    x = _typed(src, NumericTag.INT32, count)
    y = _typed(dst, dst_tag, count)
    out = torch.empty_like(y)
    _elementwise(
        x, out, lambda a: requantize(a, multiplier, shift, qdm, out_signed, relu)
    )
    y.copy_(out)


@_guarded
def launch_requantize_per_channel(
    src,
    dst,
    shape: Sequence[int],
    multipliers: Sequence[int],
    shifts: Sequence[int],
    qdm: bool = False,
    out_signed: bool = True,
    relu: bool = False,
    axis: int = 1,
):
    """
    Per-channel requantization of a 4-D int32 tensor.

    ``shape`` is the logical 4-D shape of the buffers and ``axis`` the
    channel axis (1 for NCHW, 3 for NHWC).
    """
    shape = _shape(shape, 4)
    if not -4 <= axis < 4:
        raise ValueError("invalid channel axis: {}".format(axis))
    multipliers = as_param(multipliers).reshape(-1)
    shifts = as_param(shifts).reshape(-1)
    if multipliers.numel() != shape[axis] or shifts.numel() != shape[axis]:
        raise ValueError("expected {} per-channel parameters".format(shape[axis]))
    check_multiplier(multipliers)
    check_shift(shifts, qdm)
    count = math.prod(shape)
    if count == 0:
        return
    dst_tag = NumericTag.INT8 if out_signed else NumericTag.UINT8
    x = _typed(src, NumericTag.INT32, count).view(shape)
    y = _typed(dst, dst_tag, count).view(shape)
    out = torch.empty_like(y)
    # tasks split axis 0; when it is the channel axis, so are the parameters
    split_channels = axis % 4 == 0

    def task(start, end):
        m = multipliers[start:end] if split_channels else multipliers
        s = shifts[start:end] if split_channels else shifts
        out[start:end] = requantize_per_channel(
            x[start:end], m, s, qdm, out_signed, relu, axis
        )

    parallel_for(shape[0], task, grain=_rows_grain(count // shape[0]))
    y.copy_(out)


@_guarded
def launch_add_requant(
    a,
    b,
    dst,
    count: int,
    mul0: int,
    mul1: int,
    shift0: int,
    shift1: int | None = None,
    out_signed: bool = True,
    in_tag: NumericTag | str = NumericTag.INT8,
):
    """
    Saturating elementwise add of two 8-bit buffers.

    ``shift1=None`` selects the single combined shift form (using
    ``shift0``); otherwise each operand is requantized with its own shift
    before the sum.
    """
    in_tag = get_tag(in_tag)
    if in_tag not in (NumericTag.INT8, NumericTag.UINT8):
        raise UnsupportedTypeError("add reads 8-bit operands, got {}".format(in_tag))
    check_multiplier(as_param([mul0, mul1]))
    check_shift(as_param([shift0] if shift1 is None else [shift0, shift1]), qdm=False)
    if count == 0:
        return
    dst_tag = NumericTag.INT8 if out_signed else NumericTag.UINT8
    x0 = _typed(a, in_tag, count)
    x1 = _typed(b, in_tag, count)
    y = _typed(dst, dst_tag, count)
    out = torch.empty_like(y)

    def task(start, end):
        if shift1 is None:
            out[start:end] = add_requant(
                x0[start:end], x1[start:end], mul0, mul1, shift0, out_signed
            )
        else:
            out[start:end] = add_requant_sequential(
                x0[start:end], x1[start:end], mul0, mul1, shift0, shift1, out_signed
            )

    parallel_for(count, task)
    y.copy_(out)


@_guarded
def launch_reduced_scale_mul(
    src, dst, count: int, scale: float, round_inputs: bool = False
):
    """Scale ``count`` float32 values through the reduced-precision multiplier."""
    if count == 0:
        return
    x = _typed(src, NumericTag.FLOAT32, count)
    y = _typed(dst, NumericTag.FLOAT32, count)
    out = torch.empty_like(y)
    _elementwise(x, out, lambda v: reduced_scale_mul(v, scale, round_inputs))
    y.copy_(out)


@_guarded
def launch_conv2d(
    x,
    weight,
    bias,
    dst,
    shape: Sequence[int],
    kernel_shape: Sequence[int],
    multipliers: Sequence[int] | int,
    shifts: Sequence[int] | int,
    stride: int | tuple[int, int] = 1,
    padding: int | tuple[int, int] = 0,
    saturate: bool = False,
):
    """
    Reference quantized convolution over flat buffers.

    Args:
        x: int8 input buffer holding ``shape`` = (N, C, H, W)
        weight: int8 filter buffer holding (K, C, R, S)
        bias: int32 buffer of K values, or ``None``
        dst: int8 output buffer holding (N, K, H_out, W_out)
        shape: input shape (N, C, H, W)
        kernel_shape: filter shape (K, R, S)
        multipliers: Q31 multiplier, one per output channel or a scalar
        shifts: second stage shift, one per output channel or a scalar
        stride: convolution stride
        padding: zero padding
        saturate: clamp instead of truncating the int8 output
    """
    n, c, h, w = _shape(shape, 4)
    k, r, s = _shape(kernel_shape, 3)
    (stride_h, stride_w), (pad_h, pad_w) = check_window(stride, padding)
    h_out = (h + 2 * pad_h - r) // stride_h + 1
    w_out = (w + 2 * pad_w - s) // stride_w + 1
    if h_out <= 0 or w_out <= 0:
        raise ValueError("kernel larger than the padded input")
    multipliers = channel_param(multipliers, k)
    shifts = channel_param(shifts, k)
    check_multiplier(multipliers)
    check_shift(shifts, qdm=True)
    count = n * k * h_out * w_out
    if count == 0:
        return
    xs = _typed(x, NumericTag.INT8, n * c * h * w).view(n, c, h, w)
    ws = _typed(weight, NumericTag.INT8, k * c * r * s).view(k, c, r, s)
    bs = None if bias is None else _typed(bias, NumericTag.INT32, k)
    y = _typed(dst, NumericTag.INT8, count).view(n, k, h_out, w_out)
    out = torch.empty_like(y)

    # one task per block of output channels
    def task(start, end):
        out[:, start:end] = qconv2d(
            xs,
            ws[start:end],
            None if bs is None else bs[start:end],
            multipliers[start:end],
            shifts[start:end],
            (stride_h, stride_w),
            (pad_h, pad_w),
            saturate,
        )

    parallel_for(k, task, grain=_rows_grain(n * h_out * w_out * c * r * s))
    y.copy_(out)


@_guarded
def launch_matmul(a, b, dst, m: int, k: int, n: int):
    """Float32 GEMM ``dst[m, n] = a[m, k] @ b[k, n]`` over flat row-major buffers."""
    if min(m, k, n) < 0:
        raise ValueError("invalid GEMM sizes ({}, {}, {})".format(m, k, n))
    if m * n == 0:
        return
    xa = _typed(a, NumericTag.FLOAT32, m * k).view(m, k)
    xb = _typed(b, NumericTag.FLOAT32, k * n).view(k, n)
    y = _typed(dst, NumericTag.FLOAT32, m * n).view(m, n)
    out = torch.empty_like(y)

    def task(start, end):
        out[start:end] = float_mm(xa[start:end], xb)

    parallel_for(m, task, grain=_rows_grain(k * n))
    y.copy_(out)


def _element_dtype(elem_bytes: int) -> torch.dtype:
    try:
        return _ELEMENT_DTYPES[elem_bytes]
    except KeyError:
        raise UnsupportedTypeError(
            "element width must be 1, 2 or 4 bytes, got {}".format(elem_bytes)
        ) from None


@_guarded
def launch_permute(
    src, dst, shape: Sequence[int], dims: Sequence[int], elem_bytes: int
):
    """Transpose a 4-D tensor of ``elem_bytes`` wide elements; ``dst`` gets the permuted layout."""
    dtype = _element_dtype(elem_bytes)
    shape = _shape(shape, 4)
    count = math.prod(shape)
    if sorted(int(d) for d in dims) != [0, 1, 2, 3]:
        raise ValueError("invalid 4-D permutation: {}".format(tuple(dims)))
    if count == 0:
        return
    x = _view(src, dtype, count).view(shape)
    y = _view(dst, dtype, count)
    y.copy_(permute4d(x, dims).view(-1))


@_guarded
def launch_insert_slice(
    src,
    dst,
    src_shape: Sequence[int],
    dst_shape: Sequence[int],
    axis: int,
    offset: int,
    elem_bytes: int,
):
    """Copy the ``src`` tensor into ``dst`` along ``axis`` at ``offset``; the rest of ``dst`` is kept."""
    dtype = _element_dtype(elem_bytes)
    src_shape = tuple(int(d) for d in src_shape)
    dst_shape = tuple(int(d) for d in dst_shape)
    if len(src_shape) != len(dst_shape) or not src_shape:
        raise ValueError("rank mismatch: {} vs {}".format(src_shape, dst_shape))
    src_count, dst_count = math.prod(src_shape), math.prod(dst_shape)
    if src_count == 0:
        return
    x = _view(src, dtype, src_count).view(src_shape)
    y = _view(dst, dtype, dst_count)
    out = insert_slice(y.clone().view(dst_shape), x, axis, offset)
    y.copy_(out.view(-1))
