import itertools

import torch
import pytest
from qref import UnsupportedTypeError
from qref.quant import permute4d, insert_slice
from tests.markers import available_devices


@pytest.mark.parametrize("device", available_devices)
@pytest.mark.parametrize("dtype", [torch.int8, torch.int16, torch.float32])
def test_identity_permutation(device, dtype):
    x = torch.randn(2, 3, 4, 5, device=device).mul(50).clamp(-128, 127).to(dtype)
    out = permute4d(x, (0, 1, 2, 3))
    assert torch.equal(out.view(-1), x.view(-1))


@pytest.mark.parametrize("device", available_devices)
def test_all_permutations(device):
    x = torch.arange(120, dtype=torch.int32, device=device).view(2, 3, 4, 5)
    for dims in itertools.permutations(range(4)):
        out = permute4d(x, dims)
        assert out.is_contiguous()
        assert out.shape == tuple(x.shape[d] for d in dims)
        assert torch.equal(out, x.permute(dims))
        inverse = [dims.index(d) for d in range(4)]
        assert torch.equal(permute4d(out, inverse), x)


def test_invalid_permutation():
    x = torch.zeros(1, 2, 3, 4)
    with pytest.raises(ValueError):
        permute4d(x, (0, 1, 1, 3))
    with pytest.raises(AssertionError):
        permute4d(torch.zeros(2, 3), (1, 0))


@pytest.mark.parametrize("device", available_devices)
def test_insert_slice(device):
    dst = torch.zeros(2, 5, 3, dtype=torch.int8, device=device)
    src = torch.ones(2, 2, 3, dtype=torch.int8, device=device)
    out = insert_slice(dst, src, axis=1, offset=2)
    assert out is dst
    assert dst[:, 2:4].eq(1).all()
    assert dst[:, :2].eq(0).all() and dst[:, 4:].eq(0).all()
    # negative axes count from the end
    insert_slice(dst, torch.full((2, 5, 1), 7, dtype=torch.int8, device=device), -1, 2)
    assert dst[:, :, 2].eq(7).all()


def test_insert_slice_invalid():
    dst = torch.zeros(2, 5, 3)
    with pytest.raises(ValueError):
        insert_slice(dst, torch.ones(2, 2, 3), 1, 4)
    with pytest.raises(ValueError):
        insert_slice(dst, torch.ones(2, 2, 4), 1, 0)
    with pytest.raises(ValueError):
        insert_slice(dst, torch.ones(2, 2, 3), 3, 0)
    with pytest.raises(UnsupportedTypeError):
        insert_slice(dst, torch.ones(2, 2, 3, dtype=torch.int32), 1, 0)
