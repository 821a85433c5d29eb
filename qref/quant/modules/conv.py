import torch
import torch.nn as nn

from ..functional import qconv2d

__all__ = ["QConv2d"]


def _pair(value: int | tuple[int, int]) -> tuple[int, int]:
    return (value, value) if isinstance(value, int) else tuple(value)


class QConv2d(nn.Module):
    r"""Reference quantized 2D convolution holding int8 filters.

    All tensors of the layer are buffers, not parameters: the layer is a
    bit-exact inference reference and is never trained. Freshly built layers
    hold zero filters and bias and the identity requantization
    (multiplier :math:`2^{31}`, shift 0); load real values with
    :meth:`load_quantized`.

    The output is computed by :func:`qconv2d`, which truncates the
    requantized values to 8 bits instead of saturating them unless
    ``saturate`` is set.

    Args:
        in_channels: number of channels in the input
        out_channels: number of channels produced by the convolution
        kernel_size: size of the convolving kernel
        stride: stride of the convolution
        padding: zero padding added to both sides of the input
        bias: whether the layer adds an int32 bias
        saturate: clamp the output to :math:`[-128, 127]` instead of truncating

    Shape:
        - Input: :math:`(N, C_{in}, H_{in}, W_{in})`, int8
        - Output: :math:`(N, C_{out}, H_{out}, W_{out})`, int8
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int | tuple[int, int],
        stride: int | tuple[int, int] = 1,
        padding: int | tuple[int, int] = 0,
        bias: bool = True,
        saturate: bool = False,
    ):
        super(QConv2d, self).__init__()
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = _pair(kernel_size)
        self.stride = _pair(stride)
        self.padding = _pair(padding)
        self.saturate = saturate
        self.register_buffer(
            "weight",
            torch.zeros(out_channels, in_channels, *self.kernel_size, dtype=torch.int8),
        )
        self.register_buffer(
            "bias", torch.zeros(out_channels, dtype=torch.int32) if bias else None
        )
        self.register_buffer(
            "multiplier", torch.full((out_channels,), 1 << 31, dtype=torch.int64)
        )
        self.register_buffer("shift", torch.zeros(out_channels, dtype=torch.int64))

    def load_quantized(
        self,
        weight: torch.Tensor,
        bias: torch.Tensor | None = None,
        multiplier: int | torch.Tensor | None = None,
        shift: int | torch.Tensor | None = None,
    ):
        r"""Copies quantized filters and requantization parameters into the layer.

        Args:
            weight: int8 filters, same shape as :attr:`weight`
            bias: int32 bias, requires a layer built with ``bias=True``
            multiplier: Q31 multiplier(s), scalar or one per output channel
            shift: second stage shift(s), scalar or one per output channel
        """
        assert weight.shape == self.weight.shape
        self.weight.copy_(weight.to(torch.int8))
        if bias is not None:
            assert self.bias is not None, "layer was built without bias"
            self.bias.copy_(bias.to(torch.int32))
        if multiplier is not None:
            self.multiplier.copy_(torch.as_tensor(multiplier, dtype=torch.int64))
        if shift is not None:
            self.shift.copy_(torch.as_tensor(shift, dtype=torch.int64))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return qconv2d(
            x,
            self.weight,
            self.bias,
            self.multiplier,
            self.shift,
            self.stride,
            self.padding,
            self.saturate,
        )

    def extra_repr(self) -> str:
        return (
            "{in_channels}, {out_channels}, kernel_size={kernel_size}, "
            "stride={stride}, padding={padding}, saturate={saturate}".format(**self.__dict__)
        )
