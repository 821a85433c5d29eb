import logging
import math
from typing import Sequence

import torch

from ..number import NumericTag, ReducedFloat16, RoundingMode
from ..errors import InvalidShiftError, UnsupportedTypeError

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
]

logger = logging.getLogger(__name__)

# fixed parameters of the multiply-high stage of the qdm path
QDM_SHIFT = 31
QDM_BIAS = 1 << (QDM_SHIFT - 1)
# Q31 1.0 is the largest accepted multiplier magnitude
MAX_MULTIPLIER = 1 << 31
# keeps (1 << (shift - 1)) and the shifted int64 product in range
MAX_SHIFT = 62

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

ScalarOrTensor = int | Sequence[int] | torch.Tensor


def get_rounding(rounding: RoundingMode | str) -> RoundingMode:
    try:
        return RoundingMode(rounding)
    except ValueError:
        raise ValueError("invalid rounding mode: {}".format(rounding)) from None


def get_tag(tag: NumericTag | str) -> NumericTag:
    try:
        return NumericTag(tag)
    except ValueError:
        raise UnsupportedTypeError("unsupported numeric tag: {}".format(tag)) from None


def wrap_bits(x: torch.Tensor, bits: int) -> torch.Tensor:
    """Two's complement wrap of an int64 tensor to ``bits`` bits (result stays int64)."""
    half = 1 << (bits - 1)
    return ((x + half) & ((1 << bits) - 1)) - half


# ---------------------------------------------------------------------------
# Rounding primitive
# ---------------------------------------------------------------------------


def _round_half_to_even(x: torch.Tensor) -> torch.Tensor:
    a = x.abs()
    i = torch.floor(a)
    f = a - i
    up = (f > 0.5) | ((f == 0.5) & (torch.fmod(i, 2.0) == 1.0))
    return torch.copysign(torch.where(up, i + 1.0, i), x)


def _round(x: torch.Tensor, rounding: RoundingMode) -> torch.Tensor:
    # float64 keeps x + 0.5 exact for every binary32 input
    x = torch.nan_to_num(x.to(torch.float64), nan=0.0)
    if rounding is RoundingMode.HALF_AWAY_FROM_ZERO:
        return torch.sign(x) * torch.floor(x.abs() + 0.5)
    elif rounding is RoundingMode.HALF_UP:
        return torch.floor(x + 0.5)
    elif rounding is RoundingMode.TOWARDS_ZERO:
        return torch.trunc(x)
    return _round_half_to_even(x)


def saturate(
    x: torch.Tensor, tag: NumericTag | str = NumericTag.INT8, relu: bool = False
) -> torch.Tensor:
    """
    Clamp a tensor into the representable range of an integer tag and cast it.

    Args:
        x: integer (or already integral float) tensor
        tag: destination integer tag
        relu: raise the lower bound to zero

    Returns:
        the clamped tensor, with the dtype of ``tag``
    """
    tag = get_tag(tag)
    if tag.is_float:
        raise UnsupportedTypeError("cannot saturate to {}".format(tag))
    lo = 0 if relu else tag.qmin
    return x.clamp(lo, tag.qmax).to(tag.dtype)


def round_to(
    x: torch.Tensor,
    tag: NumericTag | str = NumericTag.INT8,
    rounding: RoundingMode | str = RoundingMode.HALF_AWAY_FROM_ZERO,
) -> torch.Tensor:
    """
    Round a floating-point tensor to an integer tag.

    The rounding step is the same for every destination, only saturation
    differs: 8-bit destinations are clamped to their range while ``INT32``
    passes through unclamped (out of range values wrap modulo :math:`2^{32}`).
    NaN rounds to 0.

    Args:
        x: the floating-point tensor to convert
        tag: destination tag, one of ``INT8``, ``UINT8`` or ``INT32``
        rounding: one of the :class:`RoundingMode` policies

    Returns:
        a tensor with the dtype of ``tag``
    """
    assert isinstance(x, torch.Tensor)
    tag = get_tag(tag)
    rounding = get_rounding(rounding)
    if tag.is_float:
        raise UnsupportedTypeError("round_to needs an integer tag, got {}".format(tag))
    if not x.is_floating_point():
        raise UnsupportedTypeError("round_to expects a float tensor, got {}".format(x.dtype))

    r = _round(x, rounding)
    if tag is NumericTag.INT32:
        r = r.clamp(-(2.0**62), 2.0**62).to(torch.int64)
        return wrap_bits(r, 32).to(torch.int32)
    return saturate(r, tag)


def quantize(
    x: torch.Tensor,
    scale: float,
    tag: NumericTag | str = NumericTag.INT8,
    rounding: RoundingMode | str = RoundingMode.HALF_AWAY_FROM_ZERO,
) -> torch.Tensor:
    """Linear symmetric quantization, ``round_to(x / scale)``."""
    if not scale > 0.0:
        raise ValueError("invalid quantization scale: {}".format(scale))
    return round_to(x.to(torch.float32) / scale, tag, rounding)


def dequantize(q: torch.Tensor, scale: float) -> torch.Tensor:
    return q.to(torch.float32) * scale


# ---------------------------------------------------------------------------
# Reduced-precision (16-bit) scale multiplier
# ---------------------------------------------------------------------------


def _float_bits(x: torch.Tensor) -> torch.Tensor:
    x = x.to(torch.float32).contiguous()
    return x.view(torch.int32).to(torch.int64) & 0xFFFFFFFF


def _reduced_from_bits(bits: torch.Tensor) -> torch.Tensor:
    signed = torch.where(bits >= 0x8000, bits - 0x10000, bits)
    return signed.to(torch.int16).view(torch.bfloat16)


def to_reduced(x: torch.Tensor, round_up: bool = False) -> torch.Tensor:
    """
    Convert a float tensor to the reduced 16-bit representation.

    Without rounding the upper 16 bits of each ``binary32`` pattern are kept
    verbatim, which truncates the magnitude towards zero. With rounding,
    ``0x7fff + lsb`` (``lsb`` being bit 16 of the pattern) is added before
    truncation, giving round to nearest even; results that read as infinity
    are then replaced by the largest finite magnitude of the same sign.

    Args:
        x: the tensor to convert (promoted to float32 first)
        round_up: select the rounding variant

    Returns:
        a ``torch.bfloat16`` tensor whose storage holds the reduced bit patterns
    """
    assert isinstance(x, torch.Tensor)
    if not x.is_floating_point():
        raise UnsupportedTypeError("to_reduced expects a float tensor, got {}".format(x.dtype))
    bits = _float_bits(x)
    if round_up:
        lsb = (bits >> 16) & 1
        bits = bits + 0x7FFF + lsb
    upper = (bits >> 16) & 0xFFFF
    if round_up:
        is_inf = (upper & ~ReducedFloat16.sign_mask) == ReducedFloat16.exp_mask
        upper = torch.where(
            is_inf,
            (upper & ReducedFloat16.sign_mask) | ReducedFloat16.max_finite_bits,
            upper,
        )
    return _reduced_from_bits(upper)


def reduced_to_float(r: torch.Tensor) -> torch.Tensor:
    if r.dtype != torch.bfloat16:
        raise UnsupportedTypeError("expected a reduced (bfloat16) tensor, got {}".format(r.dtype))
    return r.to(torch.float32)


def reduced_bits(r: torch.Tensor) -> torch.Tensor:
    """The 16-bit patterns of a reduced tensor, as int32 values in ``[0, 0xffff]``."""
    if r.dtype != torch.bfloat16:
        raise UnsupportedTypeError("expected a reduced (bfloat16) tensor, got {}".format(r.dtype))
    return r.contiguous().view(torch.int16).to(torch.int32) & 0xFFFF


def reduced_mul(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Multiply two reduced tensors: promote, multiply in float32, round back."""
    return to_reduced(reduced_to_float(a) * reduced_to_float(b), round_up=True)


def reduced_scale_mul(
    x: torch.Tensor, scale: float | torch.Tensor, round_inputs: bool = False
) -> torch.Tensor:
    """
    Emulate the hardware scale multiplication in reduced precision.

    Both operands are reduced (truncated, or rounded if ``round_inputs``),
    multiplied with :func:`reduced_mul` and promoted back to float32.
    """
    scale = torch.as_tensor(scale, dtype=torch.float32, device=x.device)
    product = reduced_mul(to_reduced(x, round_inputs), to_reduced(scale, round_inputs))
    return reduced_to_float(product)


# ---------------------------------------------------------------------------
# Fixed-point requantization
# ---------------------------------------------------------------------------


def as_param(value: ScalarOrTensor, device=None) -> torch.Tensor:
    return torch.as_tensor(value, dtype=torch.int64, device=device)


def check_accumulator(acc: torch.Tensor):
    assert isinstance(acc, torch.Tensor)
    if acc.is_floating_point() or acc.is_complex() or acc.dtype == torch.bool:
        raise UnsupportedTypeError("expected an integer accumulator, got {}".format(acc.dtype))
    if acc.dtype == torch.int64 and acc.numel() > 0:
        if acc.min().item() < INT32_MIN or acc.max().item() > INT32_MAX:
            raise ValueError("accumulator values exceed the int32 range")


def check_multiplier(multiplier: torch.Tensor):
    if multiplier.numel() > 0 and multiplier.abs().max().item() > MAX_MULTIPLIER:
        raise ValueError(
            "multiplier magnitude above 2^31: {}".format(multiplier.abs().max().item())
        )


def check_shift(shift: torch.Tensor, qdm: bool):
    if shift.numel() == 0:
        return
    lowest = 0 if qdm else 1
    lo, hi = shift.min().item(), shift.max().item()
    if lo < lowest or hi > MAX_SHIFT:
        raise InvalidShiftError(
            "shift must lie in [{}, {}] for the {} path, got [{}, {}]".format(
                lowest, MAX_SHIFT, "qdm" if qdm else "direct", lo, hi
            )
        )


def rounding_bias(shift: torch.Tensor) -> torch.Tensor:
    """``1 << (shift - 1)``, or 0 where ``shift`` is 0."""
    one = torch.ones_like(shift)
    return torch.where(shift > 0, one << (shift - 1).clamp(min=0), torch.zeros_like(shift))


def _multiply_shift(
    acc: torch.Tensor, multiplier: torch.Tensor, shift: torch.Tensor, qdm: bool
) -> torch.Tensor:
    prod = acc.to(torch.int64) * multiplier
    if not qdm:
        return (prod + rounding_bias(shift)) >> shift
    # multiply-high emulation, then a sign-aware half-away-from-zero shift
    high = (prod + QDM_BIAS) >> QDM_SHIFT
    negative = high < 0
    mag = (high.abs() + rounding_bias(shift)) >> shift
    return torch.where(negative, -mag, mag)


def multiply_shift(
    acc: torch.Tensor,
    multiplier: ScalarOrTensor,
    shift: ScalarOrTensor,
    qdm: bool = False,
) -> torch.Tensor:
    r"""
    Apply the fixed-point scale to an accumulator, without saturation.

    The direct path computes :math:`(acc \cdot m + 2^{s-1}) \gg s` in 64 bits
    (round half up). The ``qdm`` path first emulates a 32x32 multiply-high,
    :math:`t = (acc \cdot m + 2^{30}) \gg 31`, then shifts :math:`|t|` by
    :math:`s` with a :math:`2^{s-1}` bias and reapplies the sign (round half
    away from zero). The two roundings of the ``qdm`` path are intentional and
    must not be merged into one shift. A ``qdm`` shift of 0 skips the second
    stage.

    Args:
        acc: integer accumulator tensor (int32 range)
        multiplier: fixed-point multiplier, scalar or broadcastable tensor
        shift: right shift, scalar or broadcastable tensor
        qdm: select the two-stage multiply-high path

    Returns:
        int64 tensor holding the scaled values
    """
    check_accumulator(acc)
    multiplier = as_param(multiplier, acc.device)
    shift = as_param(shift, acc.device)
    check_multiplier(multiplier)
    check_shift(shift, qdm)
    return _multiply_shift(acc, multiplier, shift, qdm)


def requantize(
    acc: torch.Tensor,
    multiplier: ScalarOrTensor,
    shift: ScalarOrTensor,
    qdm: bool = False,
    out_signed: bool = True,
    relu: bool = False,
) -> torch.Tensor:
    """
    Requantize a 32-bit accumulator tensor to 8 bits.

    Args:
        acc: integer accumulator tensor (int32 range)
        multiplier: fixed-point multiplier
        shift: right shift, at least 1 (at least 0 when ``qdm``)
        qdm: use the two-stage quantized-down-multiply path
        out_signed: produce int8 in ``[-128, 127]``, otherwise uint8 in ``[0, 255]``
        relu: raise the lower bound of a signed output to 0

    Returns:
        int8 or uint8 tensor with the shape of ``acc``
    """
    scaled = multiply_shift(acc, multiplier, shift, qdm)
    if out_signed:
        return saturate(scaled, NumericTag.INT8, relu=relu)
    return saturate(scaled, NumericTag.UINT8)


def requantize_per_channel(
    acc: torch.Tensor,
    multipliers: ScalarOrTensor,
    shifts: ScalarOrTensor,
    qdm: bool = False,
    out_signed: bool = True,
    relu: bool = False,
    axis: int = 1,
) -> torch.Tensor:
    """
    Requantize a 4-D accumulator with one (multiplier, shift) pair per channel.

    ``multipliers`` and ``shifts`` hold one entry per slice of ``acc`` along
    ``axis`` (the channel axis, 1 for NCHW and 3 for NHWC layouts).
    """
    assert isinstance(acc, torch.Tensor)
    assert acc.dim() == 4, "per-channel requantization expects a 4-D tensor"
    channels = acc.shape[axis]
    multipliers = as_param(multipliers, acc.device).reshape(-1)
    shifts = as_param(shifts, acc.device).reshape(-1)
    if multipliers.numel() != channels or shifts.numel() != channels:
        raise ValueError(
            "expected {} per-channel parameters, got {} multipliers and {} shifts".format(
                channels, multipliers.numel(), shifts.numel()
            )
        )
    view = [1, 1, 1, 1]
    view[axis] = channels
    return requantize(
        acc, multipliers.view(view), shifts.view(view), qdm, out_signed, relu
    )


def quantize_multiplier(scale: float) -> tuple[int, int]:
    """
    Express a real scale in ``(0, 1)`` as a Q31 multiplier and a right shift.

    The pair reproduces ``scale`` through the ``qdm`` path of
    :func:`requantize`: ``scale ~= multiplier / 2**31 / 2**shift``. Scales too
    small to be represented flush to ``(0, 0)``.
    """
    if not 0.0 < scale < 1.0:
        raise ValueError("scale must lie in (0, 1), got {}".format(scale))
    q, exponent = math.frexp(scale)
    multiplier = math.floor(q * (1 << 31) + 0.5)
    if multiplier == 1 << 31:
        multiplier //= 2
        exponent += 1
    shift = -exponent
    if shift < 0:
        # scale rounded up to exactly 1.0
        return MAX_MULTIPLIER, 0
    if shift > MAX_SHIFT:
        logger.debug("scale %g flushed to zero multiplier", scale)
        return 0, 0
    return multiplier, shift


# ---------------------------------------------------------------------------
# Saturating elementwise add
# ---------------------------------------------------------------------------


def _check_add_operands(a: torch.Tensor, b: torch.Tensor):
    assert isinstance(a, torch.Tensor) and isinstance(b, torch.Tensor)
    assert a.shape == b.shape, "operand shapes differ: {} vs {}".format(a.shape, b.shape)
    for t in (a, b):
        if t.dtype not in (torch.int8, torch.uint8):
            raise UnsupportedTypeError("add expects int8/uint8 operands, got {}".format(t.dtype))


def add_requant(
    a: torch.Tensor,
    b: torch.Tensor,
    mul0: int,
    mul1: int,
    shift: int,
    out_signed: bool = True,
) -> torch.Tensor:
    r"""
    Saturating add with a single combined scaling shift.

    Computes :math:`(a \cdot m_0 + b \cdot m_1 + 2^{s-1}) \gg s` and
    saturates once to the output range.
    """
    _check_add_operands(a, b)
    mul0, mul1, shift = (as_param(v, a.device) for v in (mul0, mul1, shift))
    check_multiplier(torch.stack([mul0, mul1]))
    check_shift(shift, qdm=False)
    acc = a.to(torch.int64) * mul0 + b.to(torch.int64) * mul1
    out = (acc + rounding_bias(shift)) >> shift
    return saturate(out, NumericTag.INT8 if out_signed else NumericTag.UINT8)


def add_requant_sequential(
    a: torch.Tensor,
    b: torch.Tensor,
    mul0: int,
    mul1: int,
    shift0: int,
    shift1: int,
    out_signed: bool = True,
) -> torch.Tensor:
    """
    Saturating add with independent per-operand rescaling.

    Each operand is scaled by its own ``(multiplier, shift)`` pair and
    saturated to the signed 8-bit range; the two saturated values are summed
    and saturated again to the output range. This is not equivalent to
    :func:`add_requant`, the intermediate saturation and the extra rounding
    step change the result near range boundaries and rounding ties.
    """
    _check_add_operands(a, b)
    mul0, mul1, shift0, shift1 = (
        as_param(v, a.device) for v in (mul0, mul1, shift0, shift1)
    )
    check_multiplier(torch.stack([mul0, mul1]))
    check_shift(torch.stack([shift0, shift1]), qdm=False)
    qa = saturate(_multiply_shift(a, mul0, shift0, qdm=False), NumericTag.INT8)
    qb = saturate(_multiply_shift(b, mul1, shift1, qdm=False), NumericTag.INT8)
    total = qa.to(torch.int64) + qb.to(torch.int64)
    return saturate(total, NumericTag.INT8 if out_signed else NumericTag.UINT8)
