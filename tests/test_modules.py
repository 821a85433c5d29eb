import torch
import pytest
import qref.quant as qt
from qref import InvalidShiftError
from tests.markers import available_devices
from tests.quant import random_int8


@pytest.mark.parametrize("device", available_devices)
def test_requantizer_per_tensor(device):
    acc = torch.randint(-(2**20), 2**20, (4, 8), dtype=torch.int32, device=device)
    formats = qt.QRequantFormats(1 << 30, 12, qdm=True, relu=True)
    assert not formats.per_channel
    layer = qt.Requantizer(formats)
    assert torch.equal(layer(acc), qt.requantize(acc, 1 << 30, 12, qdm=True, relu=True))
    assert "qdm=True" in repr(layer)


@pytest.mark.parametrize("device", available_devices)
def test_requantizer_per_channel(device):
    acc = torch.randint(-(2**20), 2**20, (2, 4, 3, 3), dtype=torch.int32, device=device)
    multipliers, shifts = [1, 2, 3, 4], [8, 9, 10, 11]
    formats = qt.QRequantFormats(multipliers, shifts, out_signed=False)
    assert formats.per_channel
    layer = qt.Requantizer(formats)
    expected = qt.requantize_per_channel(acc, multipliers, shifts, out_signed=False)
    assert torch.equal(layer(acc), expected)


def test_requant_formats_validation():
    with pytest.raises(InvalidShiftError):
        qt.QRequantFormats(1, 0)
    qt.QRequantFormats(1 << 31, 0, qdm=True)
    with pytest.raises(ValueError):
        qt.QRequantFormats(1 << 32, 1)
    with pytest.raises(AssertionError):
        qt.QRequantFormats([1, 2], 1)


@pytest.mark.parametrize("device", available_devices)
def test_qadd(device):
    a = random_int8(8, 8, device=device)
    b = random_int8(8, 8, device=device)
    single = qt.QAdd(qt.QAddFormats(3, 5, 2))
    assert not single.formats.sequential
    assert torch.equal(single(a, b), qt.add_requant(a, b, 3, 5, 2))
    sequential = qt.QAdd(qt.QAddFormats(3, 5, 2, 3, out_signed=False))
    assert sequential.formats.sequential
    assert torch.equal(
        sequential(a, b), qt.add_requant_sequential(a, b, 3, 5, 2, 3, out_signed=False)
    )
    with pytest.raises(InvalidShiftError):
        qt.QAddFormats(1, 1, 1, 0)


@pytest.mark.parametrize("device", available_devices)
def test_requantizer_buffers(device):
    formats = qt.QRequantFormats([1, 2, 3], [4, 5, 6], qdm=True)
    layer = qt.Requantizer(formats).to(device)
    state = layer.state_dict()
    assert set(state) == {"multiplier", "shift"}
    assert state["multiplier"].device.type == torch.device(device).type
    assert state["shift"].tolist() == [4, 5, 6]

    acc = torch.randint(-(2**20), 2**20, (2, 3, 2, 2), dtype=torch.int32, device=device)
    layer.load_state_dict(
        {"multiplier": torch.tensor([7, 8, 9]), "shift": torch.tensor([1, 2, 3])}
    )
    expected = qt.requantize_per_channel(acc, [7, 8, 9], [1, 2, 3], qdm=True)
    assert torch.equal(layer(acc), expected)


@pytest.mark.parametrize("device", available_devices)
def test_qadd_buffers(device):
    layer = qt.QAdd(qt.QAddFormats(3, 5, 2, 4)).to(device)
    state = layer.state_dict()
    assert state["multiplier"].tolist() == [3, 5]
    assert state["shift"].tolist() == [2, 4]
    assert state["shift"].device.type == torch.device(device).type
    single = qt.QAdd(qt.QAddFormats(3, 5, 2))
    assert single.state_dict()["shift"].tolist() == [2]


def test_make_functions():
    acc = torch.randint(-(2**20), 2**20, (2, 3, 2, 2), dtype=torch.int32)
    per_tensor = qt.make_requant_function(qt.QRequantFormats(5, 7))
    assert torch.equal(per_tensor(acc), qt.requantize(acc, 5, 7))
    per_channel = qt.make_requant_function(qt.QRequantFormats([1, 2], [3, 4], axis=3))
    assert torch.equal(per_channel(acc[..., :2]), qt.requantize_per_channel(acc[..., :2], [1, 2], [3, 4], axis=3))
    a = random_int8(4, 4)
    add = qt.make_add_function(qt.QAddFormats(2, 3, 1))
    assert torch.equal(add(a, a), qt.add_requant(a, a, 2, 3, 1))
