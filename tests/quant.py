import struct

import torch


def bits_to_float(bits):
    s = struct.pack(">I", bits)
    return struct.unpack(">f", s)[0]


def floats_from_bits(bits, device="cpu"):
    return torch.tensor(
        [bits_to_float(b) for b in bits], dtype=torch.float32, device=device
    )


def random_int8(*shape, low=-128, high=128, device="cpu"):
    return torch.randint(low, high, shape, dtype=torch.int8, device=device)
