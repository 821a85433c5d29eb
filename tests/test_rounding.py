import torch
import pytest
from qref import NumericTag, RoundingMode, UnsupportedTypeError
from qref.quant import round_to, saturate, quantize, dequantize
from tests.markers import available_devices

values = [2.5, -2.5, 3.5, -3.5, 0.4, 0.6, -0.6, 1.5, -1.5]


def assert_round(x_arr, expected_arr, tag, rounding, device):
    x = torch.tensor(x_arr, dtype=torch.float32, device=device)
    out = round_to(x, tag, rounding)
    assert out.dtype == tag.dtype
    assert out.cpu().tolist() == expected_arr


@pytest.mark.parametrize("device", available_devices)
@pytest.mark.parametrize(
    "rounding,expected",
    [
        (RoundingMode.HALF_AWAY_FROM_ZERO, [3, -3, 4, -4, 0, 1, -1, 2, -2]),
        (RoundingMode.HALF_UP, [3, -2, 4, -3, 0, 1, -1, 2, -1]),
        (RoundingMode.TOWARDS_ZERO, [2, -2, 3, -3, 0, 0, 0, 1, -1]),
        (RoundingMode.HALF_TO_EVEN, [2, -2, 4, -4, 0, 1, -1, 2, -2]),
    ],
)
def test_half_boundaries(device, rounding, expected):
    assert_round(values, expected, NumericTag.INT8, rounding, device)
    assert_round(values, expected, NumericTag.INT32, rounding, device)


@pytest.mark.parametrize("device", available_devices)
@pytest.mark.parametrize("rounding", list(RoundingMode))
def test_saturation(device, rounding):
    assert_round([200.0, -300.0], [127, -128], NumericTag.INT8, rounding, device)
    assert_round([300.0, -7.0], [255, 0], NumericTag.UINT8, rounding, device)


@pytest.mark.parametrize("device", available_devices)
def test_int32_passthrough(device):
    # 1000000.5 is exact in binary32
    assert_round([1000000.5], [1000001], NumericTag.INT32, "half_up", device)
    assert_round([-1000000.5], [-1000001], NumericTag.INT32, "half_away_from_zero", device)
    # out of range values wrap instead of saturating
    assert_round([2147483648.0], [-2147483648], NumericTag.INT32, "towards_zero", device)


@pytest.mark.parametrize("device", available_devices)
def test_no_double_rounding(device):
    # the largest binary32 value below 0.5 must not round up
    assert_round([0.49999997], [0], NumericTag.INT8, "half_up", device)
    assert_round([0.49999997], [0], NumericTag.INT8, "half_away_from_zero", device)


@pytest.mark.parametrize("device", available_devices)
def test_nan_rounds_to_zero(device):
    assert_round([float("nan")], [0], NumericTag.INT8, "half_up", device)
    assert_round([float("nan")], [0], NumericTag.INT32, "half_to_even", device)


def test_string_arguments():
    x = torch.tensor([2.5, -2.5])
    assert round_to(x, "uint8", "half_up").tolist() == [3, 0]
    assert round_to(x, "int8", "half_to_even").tolist() == [2, -2]


def test_invalid_arguments():
    x = torch.tensor([1.0])
    with pytest.raises(ValueError):
        round_to(x, NumericTag.INT8, "nearest")
    with pytest.raises(UnsupportedTypeError):
        round_to(x, NumericTag.FLOAT32)
    with pytest.raises(UnsupportedTypeError):
        round_to(x, "int16")
    with pytest.raises(UnsupportedTypeError):
        round_to(torch.tensor([1], dtype=torch.int32), NumericTag.INT8)


@pytest.mark.parametrize("device", available_devices)
def test_saturate(device):
    x = torch.tensor([-1000, -5, 0, 5, 1000], dtype=torch.int64, device=device)
    assert saturate(x, NumericTag.INT8).tolist() == [-128, -5, 0, 5, 127]
    assert saturate(x, NumericTag.INT8, relu=True).tolist() == [0, 0, 0, 5, 127]
    assert saturate(x, NumericTag.UINT8).tolist() == [0, 0, 0, 5, 255]
    with pytest.raises(UnsupportedTypeError):
        saturate(x, NumericTag.FLOAT32)


@pytest.mark.parametrize("device", available_devices)
def test_quantize_dequantize(device):
    x = torch.tensor([1.25, -1.25, 100.0], device=device)
    q = quantize(x, 0.5)
    assert q.dtype == torch.int8
    assert q.tolist() == [3, -3, 127]
    assert dequantize(q, 0.5).tolist() == [1.5, -1.5, 63.5]
    assert quantize(x, 0.5, rounding="half_to_even").tolist() == [2, -2, 127]
    with pytest.raises(ValueError):
        quantize(x, 0.0)
