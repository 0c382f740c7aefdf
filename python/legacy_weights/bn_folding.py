"""BatchNorm folding utilities.

This implements inference-time folding of a batch-norm layer into the
convolution that feeds it.

Given:
  y = BN(conv(x; W, b))
We produce W', b' such that:
  y == conv(x; W', b')

The legacy weights format stores BN statistics as (gamma, beta, mean,
stddiv) where `stddiv` actually holds the variance:

  BN(z) = (z - mean) / sqrt(stddiv + eps) * gamma + beta

All arithmetic is float32 with a fixed per-element order, so folded
weights are reproducible bit for bit:

  gamma *= 1 / sqrt(stddiv + eps); stddiv = 1; mean -= b; b = 0
  W[o, c, p] *= gamma[o]
  b[o] = -gamma[o] * mean[o] + beta[o]; mean = beta = 0
"""

from __future__ import annotations

import torch

from legacy_weights.errors import PreconditionError

EPSILON = 1e-5


def inverted_stddev(stddivs: torch.Tensor, eps: float = EPSILON) -> torch.Tensor:
    """Return 1 / sqrt(stddiv + eps) per channel; `stddivs` is left untouched."""
    out = stddivs.detach().to(dtype=torch.float32).clone()
    return 1.0 / torch.sqrt(out + eps)


def offset_means(means: torch.Tensor, biases: torch.Tensor) -> torch.Tensor:
    """Return mean - bias per channel; neither input is modified."""
    if means.numel() != biases.numel():
        raise PreconditionError(
            f"Cannot offset {means.numel()} means by {biases.numel()} biases"
        )
    out = means.detach().to(dtype=torch.float32).clone()
    out.sub_(biases.to(dtype=torch.float32))
    return out


def check_foldable(
    weights: torch.Tensor,
    biases: torch.Tensor,
    gammas: torch.Tensor,
    betas: torch.Tensor,
    means: torch.Tensor,
    stddivs: torch.Tensor,
    spatial_size: int,
) -> int:
    """Validate fold arguments and return the number of input channels."""

    if spatial_size < 1:
        raise PreconditionError(f"spatial size must be positive, got {spatial_size}")

    outputs = biases.numel()
    if outputs == 0:
        raise PreconditionError("Cannot fold a block with no output channels")

    for name, t in (("bn_gammas", gammas), ("bn_betas", betas), ("bn_means", means), ("bn_stddivs", stddivs)):
        if t.numel() != outputs:
            raise PreconditionError(f"{name} has {t.numel()} entries, expected {outputs}")

    per_input = outputs * spatial_size
    if weights.numel() % per_input != 0:
        raise PreconditionError(
            f"{weights.numel()} weights do not split into {outputs} outputs x "
            f"{spatial_size} spatial positions"
        )
    return weights.numel() // per_input


def fold_bn_(
    weights: torch.Tensor,
    biases: torch.Tensor,
    gammas: torch.Tensor,
    betas: torch.Tensor,
    means: torch.Tensor,
    stddivs: torch.Tensor,
    spatial_size: int,
    eps: float = EPSILON,
) -> None:
    """Fold BN statistics into `weights`/`biases` in place.

    All tensors must be contiguous 1-D float32. `weights` is laid out as
    [output][input][spatial]. Nothing is modified if validation fails.
    """

    inputs = check_foldable(weights, biases, gammas, betas, means, stddivs, spatial_size)
    outputs = biases.numel()

    # Variance to gamma.
    gammas.mul_(1.0 / torch.sqrt(stddivs + eps))
    stddivs.fill_(1.0)
    means.sub_(biases)
    biases.zero_()

    weights.view(outputs, inputs * spatial_size).mul_(gammas.unsqueeze(1))

    biases.copy_(-gammas * means + betas)
    means.zero_()
    betas.zero_()


def fold_conv_bn_weights(
    conv_w: torch.Tensor,
    conv_b: torch.Tensor | None,
    bn_weight: torch.Tensor | None,
    bn_bias: torch.Tensor | None,
    running_mean: torch.Tensor,
    running_var: torch.Tensor,
    eps: float = EPSILON,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Return (folded_w, folded_b) without modifying any argument.

    Shapes:
      conv_w: [out_channels, in_channels, kH, kW]
      conv_b: [out_channels] or None
      bn_weight (gamma): [out_channels] or None
      bn_bias (beta): [out_channels] or None
      running_mean/var: [out_channels]
    """

    if conv_w.dim() != 4:
        raise PreconditionError(f"conv weight must be 4-D, got shape {tuple(conv_w.shape)}")

    def vec(t: torch.Tensor) -> torch.Tensor:
        return t.detach().to(dtype=torch.float32).flatten().clone()

    w = vec(conv_w)
    mean = vec(running_mean)
    var = vec(running_var)

    if conv_b is None:
        b = torch.zeros_like(mean)
    else:
        b = vec(conv_b)

    if bn_weight is None:
        gamma = torch.ones_like(mean)
    else:
        gamma = vec(bn_weight)

    if bn_bias is None:
        beta = torch.zeros_like(mean)
    else:
        beta = vec(bn_bias)

    spatial = conv_w.shape[2] * conv_w.shape[3]
    fold_bn_(w, b, gamma, beta, mean, var, spatial, eps)

    return w.reshape(conv_w.shape), b
