from typing import Callable, Sequence

import torch

from .quant_function import (
    add_requant,
    add_requant_sequential,
    as_param,
    check_multiplier,
    check_shift,
    requantize,
    requantize_per_channel,
)

__all__ = [
    "QRequantFormats",
    "QAddFormats",
    "make_requant_function",
    "make_add_function",
]


class QRequantFormats:
    r"""
    Parameter record of a fixed-point requantization.

    A scalar ``multiplier``/``shift`` pair describes a per-tensor scale; a
    sequence (or 1-D tensor) of pairs describes a per-channel scale along
    ``axis``. Parameters are validated on construction, so an invalid shift
    is reported where the record is built rather than on first use.

    Args:
        multiplier: fixed-point multiplier(s), magnitude at most :math:`2^{31}`
        shift: right shift(s); at least 1, or at least 0 on the ``qdm`` path
        qdm: use the two-stage quantized-down-multiply path
        out_signed: produce int8 (otherwise uint8)
        relu: raise the lower saturation bound of a signed output to 0
        axis: channel axis of per-channel parameters
    """

    def __init__(
        self,
        multiplier: int | Sequence[int] | torch.Tensor,
        shift: int | Sequence[int] | torch.Tensor,
        qdm: bool = False,
        out_signed: bool = True,
        relu: bool = False,
        axis: int = 1,
    ) -> None:
        multiplier = as_param(multiplier)
        shift = as_param(shift)
        assert multiplier.dim() == shift.dim() <= 1, "mixed per-tensor and per-channel parameters"
        assert multiplier.shape == shift.shape
        check_multiplier(multiplier)
        check_shift(shift, qdm)
        self.multiplier = multiplier
        self.shift = shift
        self.qdm = qdm
        self.out_signed = out_signed
        self.relu = relu
        self.axis = axis

    @property
    def per_channel(self) -> bool:
        return self.multiplier.dim() == 1

    def __repr__(self) -> str:
        return (
            f"QRequantFormats (multiplier={self.multiplier.tolist()}, shift={self.shift.tolist()}, "
            f"qdm={self.qdm}, out_signed={self.out_signed}, relu={self.relu})"
        )


class QAddFormats:
    r"""
    Parameter record of a saturating elementwise add.

    With ``shift1=None`` the operands are scaled and summed before a single
    combined shift by ``shift0``; otherwise each operand is requantized with
    its own shift before the sum.

    Args:
        mul0: multiplier of the first operand
        mul1: multiplier of the second operand
        shift0: combined shift, or shift of the first operand
        shift1: shift of the second operand (selects the sequential form)
        out_signed: produce int8 (otherwise uint8)
    """

    def __init__(
        self,
        mul0: int,
        mul1: int,
        shift0: int,
        shift1: int | None = None,
        out_signed: bool = True,
    ) -> None:
        check_multiplier(as_param([mul0, mul1]))
        check_shift(as_param([shift0] if shift1 is None else [shift0, shift1]), qdm=False)
        self.mul0 = mul0
        self.mul1 = mul1
        self.shift0 = shift0
        self.shift1 = shift1
        self.out_signed = out_signed

    @property
    def sequential(self) -> bool:
        return self.shift1 is not None

    def __repr__(self) -> str:
        return (
            f"QAddFormats (mul0={self.mul0}, mul1={self.mul1}, shift0={self.shift0}, "
            f"shift1={self.shift1}, out_signed={self.out_signed})"
        )


def make_requant_function(fmt: QRequantFormats) -> Callable[[torch.Tensor], torch.Tensor]:
    if fmt.per_channel:
        return lambda acc: requantize_per_channel(
            acc,
            fmt.multiplier.to(acc.device),
            fmt.shift.to(acc.device),
            fmt.qdm,
            fmt.out_signed,
            fmt.relu,
            fmt.axis,
        )
    return lambda acc: requantize(
        acc, fmt.multiplier, fmt.shift, fmt.qdm, fmt.out_signed, fmt.relu
    )


def make_add_function(
    fmt: QAddFormats,
) -> Callable[[torch.Tensor, torch.Tensor], torch.Tensor]:
    if fmt.sequential:
        return lambda a, b: add_requant_sequential(
            a, b, fmt.mul0, fmt.mul1, fmt.shift0, fmt.shift1, fmt.out_signed
        )
    return lambda a, b: add_requant(
        a, b, fmt.mul0, fmt.mul1, fmt.shift0, fmt.out_signed
    )
