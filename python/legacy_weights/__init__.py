"""Legacy network weights: build the in-memory weight tree and fold batch-norm.

Typical use:

    weights = LegacyWeights.from_record(parsed_weights)
    weights.fold_bn()
"""

from __future__ import annotations

from legacy_weights.adapter import Layer, LayerAdapter, as_vector
from legacy_weights.bn_folding import EPSILON, fold_conv_bn_weights
from legacy_weights.errors import (
    AlreadyFoldedError,
    FormatError,
    LegacyWeightsError,
    PreconditionError,
)
from legacy_weights.weights import (
    ConvBlock,
    FoldState,
    KernelSizes,
    LegacyWeights,
    Residual,
    SEUnit,
)

__all__ = [
    "AlreadyFoldedError",
    "ConvBlock",
    "EPSILON",
    "FoldState",
    "FormatError",
    "KernelSizes",
    "Layer",
    "LayerAdapter",
    "LegacyWeights",
    "LegacyWeightsError",
    "PreconditionError",
    "Residual",
    "SEUnit",
    "as_vector",
    "fold_conv_bn_weights",
]
