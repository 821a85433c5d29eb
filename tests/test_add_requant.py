import torch
import pytest
from qref import InvalidShiftError, UnsupportedTypeError
from qref.quant import add_requant, add_requant_sequential
from tests.markers import available_devices, parametrize_seed
from tests.quant import random_int8


def int8(values, device):
    return torch.tensor(values, dtype=torch.int8, device=device)


@parametrize_seed(0, 7, 1234)
@pytest.mark.parametrize("device", available_devices)
def test_commutative(device):
    a = random_int8(16, 16, device=device)
    b = random_int8(16, 16, device=device)
    assert torch.equal(add_requant(a, b, 3, 3, 2), add_requant(b, a, 3, 3, 2))
    assert torch.equal(
        add_requant_sequential(a, b, 5, 5, 2, 2),
        add_requant_sequential(b, a, 5, 5, 2, 2),
    )


@pytest.mark.parametrize("device", available_devices)
def test_single_shift(device):
    a, b = int8([100, -100, 1], device), int8([100, -100, 1], device)
    assert add_requant(a, b, 1, 1, 1).tolist() == [100, -100, 1]
    assert add_requant(a, b, 2, 2, 1).tolist() == [127, -128, 2]


@pytest.mark.parametrize("device", available_devices)
def test_sequential_differs(device):
    # intermediate saturation
    a, b = int8([127], device), int8([-127], device)
    assert add_requant(a, b, 4, 4, 1).tolist() == [0]
    assert add_requant_sequential(a, b, 4, 4, 1, 1).tolist() == [-1]
    # extra rounding step
    a, b = int8([1], device), int8([1], device)
    assert add_requant(a, b, 1, 1, 1).tolist() == [1]
    assert add_requant_sequential(a, b, 1, 1, 1, 1).tolist() == [2]


@pytest.mark.parametrize("device", available_devices)
def test_unsigned_output(device):
    out = add_requant(int8([-10, 100], device), int8([5, 100], device), 1, 1, 1, out_signed=False)
    assert out.dtype == torch.uint8
    assert out.tolist() == [0, 100]
    a = torch.tensor([200], dtype=torch.uint8, device=device)
    out = add_requant_sequential(a, a, 1, 1, 1, 1, out_signed=False)
    assert out.tolist() == [200]


def test_invalid_operands():
    a = int8([1, 2], "cpu")
    with pytest.raises(AssertionError):
        add_requant(a, int8([1], "cpu"), 1, 1, 1)
    with pytest.raises(UnsupportedTypeError):
        add_requant(a, a.to(torch.int32), 1, 1, 1)
    with pytest.raises(InvalidShiftError):
        add_requant(a, a, 1, 1, 0)
    with pytest.raises(InvalidShiftError):
        add_requant_sequential(a, a, 1, 1, 1, 0)
