from typing import Sequence

import torch

from ..errors import UnsupportedTypeError
from .quant_function import (
    ScalarOrTensor,
    as_param,
    check_multiplier,
    check_shift,
    wrap_bits,
    _multiply_shift,
)

__all__ = [
    "qconv2d",
    "float_mm",
    "permute4d",
    "insert_slice",
]


def _pair(value: int | tuple[int, int]) -> tuple[int, int]:
    if isinstance(value, int):
        return (value, value)
    return tuple(value)


def check_window(
    stride: int | tuple[int, int], padding: int | tuple[int, int]
) -> tuple[tuple[int, int], tuple[int, int]]:
    stride, padding = _pair(stride), _pair(padding)
    if len(stride) != 2 or min(stride) < 1:
        raise ValueError("stride must be at least 1, got {}".format(stride))
    if len(padding) != 2 or min(padding) < 0:
        raise ValueError("padding must be non-negative, got {}".format(padding))
    return stride, padding


def channel_param(value: ScalarOrTensor, channels: int, device=None) -> torch.Tensor:
    param = as_param(value, device).reshape(-1)
    if param.numel() == 1:
        return param.repeat(channels)
    if param.numel() != channels:
        raise ValueError(
            "expected 1 or {} per-channel values, got {}".format(channels, param.numel())
        )
    return param


def conv2d_accumulate(
    x: torch.Tensor,
    weight: torch.Tensor,
    stride: int | tuple[int, int] = 1,
    padding: int | tuple[int, int] = 0,
) -> torch.Tensor:
    """
    Direct int8 convolution accumulating in 32 bits.

    Each kernel tap (kh, kw) adds its contribution over all input channels;
    out of bounds taps read the zero padding. The accumulator wraps like a
    32-bit register. Returns an int64 tensor holding the int32 values.
    """
    n, c, h, w = x.shape
    k, _, r, s = weight.shape
    (stride_h, stride_w), (pad_h, pad_w) = check_window(stride, padding)
    h_out = (h + 2 * pad_h - r) // stride_h + 1
    w_out = (w + 2 * pad_w - s) // stride_w + 1
    assert h_out > 0 and w_out > 0, "kernel larger than the padded input"

    padded = torch.zeros(
        n, c, h + 2 * pad_h, w + 2 * pad_w, dtype=torch.int64, device=x.device
    )
    padded[:, :, pad_h : pad_h + h, pad_w : pad_w + w] = x.to(torch.int64)
    w64 = weight.to(torch.int64)

    acc = torch.zeros(n, k, h_out, w_out, dtype=torch.int64, device=x.device)
    for kh in range(r):
        for kw in range(s):
            window = padded[
                :,
                :,
                kh : kh + stride_h * (h_out - 1) + 1 : stride_h,
                kw : kw + stride_w * (w_out - 1) + 1 : stride_w,
            ]
            tap = w64[:, :, kh, kw].reshape(1, k, c, 1, 1)
            acc += (window.unsqueeze(1) * tap).sum(dim=2)
    return wrap_bits(acc, 32)


def qconv2d(
    x: torch.Tensor,
    weight: torch.Tensor,
    bias: torch.Tensor | None = None,
    multiplier: ScalarOrTensor = 1 << 31,
    shift: ScalarOrTensor = 0,
    stride: int | tuple[int, int] = 1,
    padding: int | tuple[int, int] = 0,
    saturate: bool = False,
) -> torch.Tensor:
    r"""
    Reference quantized 2D convolution.

    Accumulates int8 products in 32 bits, adds the optional int32 bias and
    requantizes every output channel through the two-stage ``qdm`` path
    (multiply-high with the fixed 31-bit shift, then a half-away-from-zero
    shift by the channel's ``shift``; a shift of 0 stops after the first
    stage).

    Unlike every other requantization in this package, the result is *not*
    saturated by default: it is truncated to its low 8 bits, which is what the
    hardware does. Pass ``saturate=True`` to clamp to :math:`[-128, 127]`
    instead.

    Args:
        x: input of shape :math:`(N, C, H, W)`, int8
        weight: filters of shape :math:`(K, C, R, S)`, int8
        bias: optional per-output-channel bias of shape :math:`(K)`, int32
        multiplier: Q31 multiplier, scalar or one per output channel
            (the default, :math:`2^{31}`, is the identity)
        shift: second stage shift, scalar or one per output channel
        stride: convolution stride (h, w)
        padding: zero padding (h, w)
        saturate: clamp the output instead of truncating it

    Returns:
        int8 tensor of shape :math:`(N, K, H_{out}, W_{out})`
    """
    assert x.dim() == 4 and weight.dim() == 4
    assert x.shape[1] == weight.shape[1], "channel mismatch: {} vs {}".format(
        x.shape[1], weight.shape[1]
    )
    assert x.device == weight.device
    if x.dtype != torch.int8 or weight.dtype != torch.int8:
        raise UnsupportedTypeError(
            "qconv2d expects int8 input and weight, got {} and {}".format(
                x.dtype, weight.dtype
            )
        )
    k = weight.shape[0]
    if bias is not None:
        if bias.dtype != torch.int32:
            raise UnsupportedTypeError("qconv2d expects an int32 bias, got {}".format(bias.dtype))
        assert bias.numel() == k
    multiplier = channel_param(multiplier, k, x.device)
    shift = channel_param(shift, k, x.device)
    check_multiplier(multiplier)
    check_shift(shift, qdm=True)

    acc = conv2d_accumulate(x, weight, stride, padding)
    if bias is not None:
        acc = wrap_bits(acc + bias.to(torch.int64).view(1, k, 1, 1), 32)
    out = _multiply_shift(
        acc, multiplier.view(1, k, 1, 1), shift.view(1, k, 1, 1), qdm=True
    )
    if saturate:
        return out.clamp(-128, 127).to(torch.int8)
    return wrap_bits(out, 8).to(torch.int8)


def float_mm(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """
    Plain float32 GEMM baseline, ``a @ b``.

    Products are accumulated one ``k`` index at a time, in order, with a
    rounding after every multiply and every add, so results do not depend on
    the BLAS backend.

    Args:
        a: the input of GEMM, with shape (M, K)
        b: the input of GEMM, with shape (K, N)

    Returns:
        the float32 result of shape (M, N)
    """
    assert len(a.shape) == 2
    assert len(b.shape) == 2
    assert a.shape[1] == b.shape[0]
    assert a.device == b.device
    if a.dtype != torch.float32 or b.dtype != torch.float32:
        raise UnsupportedTypeError("float_mm expects float32 inputs")
    c = torch.zeros(a.shape[0], b.shape[1], dtype=torch.float32, device=a.device)
    for i in range(a.shape[1]):
        c += a[:, i : i + 1] * b[i : i + 1, :]
    return c


def permute4d(x: torch.Tensor, dims: Sequence[int]) -> torch.Tensor:
    """Reorder the axes of a 4-D tensor; ``out.shape[i] == x.shape[dims[i]]``."""
    assert x.dim() == 4, "permute4d expects a 4-D tensor, got {} dims".format(x.dim())
    dims = tuple(int(d) for d in dims)
    if sorted(dims) != [0, 1, 2, 3]:
        raise ValueError("invalid 4-D permutation: {}".format(dims))
    return x.permute(dims).contiguous()


def insert_slice(
    dst: torch.Tensor, src: torch.Tensor, axis: int, offset: int
) -> torch.Tensor:
    """
    Copy ``src`` into ``dst`` along ``axis``, starting at index ``offset``.

    All other axes must have the same extent in both tensors. ``dst`` is
    modified in place and returned.
    """
    assert dst.dim() == src.dim()
    if dst.dtype != src.dtype:
        raise UnsupportedTypeError("dtype mismatch: {} vs {}".format(dst.dtype, src.dtype))
    if not -dst.dim() <= axis < dst.dim():
        raise ValueError("invalid axis {} for a {}-D tensor".format(axis, dst.dim()))
    axis = axis % dst.dim()
    for d in range(dst.dim()):
        if d != axis and dst.shape[d] != src.shape[d]:
            raise ValueError(
                "shapes {} and {} differ outside axis {}".format(
                    tuple(dst.shape), tuple(src.shape), axis
                )
            )
    length = src.shape[axis]
    if offset < 0 or offset + length > dst.shape[axis]:
        raise ValueError(
            "slice [{}, {}) outside axis of size {}".format(
                offset, offset + length, dst.shape[axis]
            )
        )
    dst.narrow(axis, offset, length).copy_(src)
    return dst
