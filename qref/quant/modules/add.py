import torch
import torch.nn as nn

from ..quant_format import QAddFormats
from ..quant_function import add_requant, add_requant_sequential

__all__ = ["QAdd"]


class QAdd(nn.Module):
    r"""Saturating elementwise add of two 8-bit tensors with per-operand rescaling.

    ``multiplier`` holds ``(mul0, mul1)`` and ``shift`` holds ``(shift0,)`` or
    ``(shift0, shift1)``, both as buffers.
    """

    def __init__(self, formats: QAddFormats):
        super(QAdd, self).__init__()
        self.formats = formats
        shifts = [formats.shift0] if formats.shift1 is None else [formats.shift0, formats.shift1]
        self.register_buffer(
            "multiplier", torch.tensor([formats.mul0, formats.mul1], dtype=torch.int64)
        )
        self.register_buffer("shift", torch.tensor(shifts, dtype=torch.int64))

    def forward(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        mul0, mul1 = self.multiplier
        if self.formats.sequential:
            shift0, shift1 = self.shift
            return add_requant_sequential(
                a, b, mul0, mul1, shift0, shift1, self.formats.out_signed
            )
        return add_requant(a, b, mul0, mul1, self.shift[0], self.formats.out_signed)

    def extra_repr(self) -> str:
        return repr(self.formats)
