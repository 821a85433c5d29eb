import torch
import torch.nn as nn

from ..quant_format import QRequantFormats
from ..quant_function import requantize, requantize_per_channel

__all__ = ["Requantizer"]


class Requantizer(nn.Module):
    r"""Requantizes int32 accumulators to 8 bits with a fixed-point scale.

    The module wraps a :class:`QRequantFormats` record, so per-tensor and
    per-channel scales, the ``qdm`` path and the ReLU floor are all chosen at
    construction time. The multipliers and shifts are copied into the
    ``multiplier`` and ``shift`` buffers; they follow the module across
    devices and are saved in its ``state_dict``.

    Shape:
        - Input: any shape for per-tensor scales, :math:`(N, C, H, W)` (or the
          layout selected by ``formats.axis``) for per-channel scales
        - Output: same shape as the input, int8 or uint8
    """

    def __init__(self, formats: QRequantFormats):
        r"""
        Args:
            formats: the requantization parameters
        """
        super(Requantizer, self).__init__()
        self.formats = formats
        self.register_buffer("multiplier", formats.multiplier.clone())
        self.register_buffer("shift", formats.shift.clone())

    def forward(self, acc: torch.Tensor) -> torch.Tensor:
        fmt = self.formats
        if fmt.per_channel:
            return requantize_per_channel(
                acc,
                self.multiplier,
                self.shift,
                fmt.qdm,
                fmt.out_signed,
                fmt.relu,
                fmt.axis,
            )
        return requantize(
            acc, self.multiplier, self.shift, fmt.qdm, fmt.out_signed, fmt.relu
        )

    def extra_repr(self) -> str:
        return repr(self.formats)
