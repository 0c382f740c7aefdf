import pytest
import torch


def conv_record(outputs, inputs, kernel, gen, *, bias=True, affine=True):
    """Random ConvBlock record laid out like a serialized legacy net."""
    rec = {
        "weights": torch.randn(outputs, inputs, kernel, kernel, generator=gen),
        "bn_means": torch.randn(outputs, generator=gen),
        "bn_stddivs": torch.rand(outputs, generator=gen) + 0.5,
    }
    if bias:
        rec["biases"] = torch.randn(outputs, generator=gen)
    if affine:
        rec["bn_gammas"] = torch.randn(outputs, generator=gen)
        rec["bn_betas"] = torch.randn(outputs, generator=gen)
    return rec


def net_record(filters=8, blocks=2, se=False, conv_policy=False, seed=0):
    gen = torch.Generator().manual_seed(seed)
    residual = []
    for _ in range(blocks):
        res = {
            "conv1": conv_record(filters, filters, 3, gen),
            "conv2": conv_record(filters, filters, 3, gen),
        }
        if se:
            res["se"] = {
                "w1": torch.randn(filters // 2, filters, generator=gen),
                "b1": torch.randn(filters // 2, generator=gen),
                "w2": torch.randn(2 * filters, filters // 2, generator=gen),
                "b2": torch.randn(2 * filters, generator=gen),
            }
        residual.append(res)

    rec = {
        "input": conv_record(filters, 12, 3, gen),
        "residual": residual,
        "value": conv_record(32, filters, 1, gen),
        "ip1_val_w": torch.randn(16, 32 * 4, generator=gen),
        "ip1_val_b": torch.randn(16, generator=gen),
        "ip2_val_w": torch.randn(1, 16, generator=gen),
        "ip2_val_b": torch.randn(1, generator=gen),
    }
    if conv_policy:
        rec["policy1"] = conv_record(filters, filters, 3, gen)
        # Final policy conv has a bias but no batch-norm.
        rec["policy"] = {
            "weights": torch.randn(80, filters, 3, 3, generator=gen),
            "biases": torch.randn(80, generator=gen),
        }
    else:
        rec["policy"] = conv_record(32, filters, 1, gen)
        rec["ip_pol_w"] = torch.randn(24, 32 * 4, generator=gen)
        rec["ip_pol_b"] = torch.randn(24, generator=gen)
    return rec


@pytest.fixture
def gen():
    return torch.Generator().manual_seed(0)
