"""In-memory tree of legacy network weights.

`LegacyWeights.from_record` turns an already-parsed weights container into a
tree of ConvBlock / Residual / SEUnit objects holding flat float32 vectors.
Records can be mappings (e.g. a dict loaded with torch.load) or objects
exposing the fields as attributes (e.g. protobuf messages). Each tensor field
is flattened by a `LayerAdapter`, `as_vector` unless another one is given.

Older nets lack some BN fields. Those are filled with neutral values when the
block is built:
  - no bn_betas -> beta = 0, gamma = 1 for every channel
  - no biases   -> bias = 0 for every channel
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Tuple

import torch

from legacy_weights.adapter import LayerAdapter, as_vector, empty_vector
from legacy_weights.bn_folding import fold_bn_, inverted_stddev, offset_means
from legacy_weights.errors import AlreadyFoldedError, FormatError, PreconditionError

logger = logging.getLogger(__name__)


def _field(record: Any, *names: str) -> Any:
    """Return the first present field among `names`, or None."""
    for name in names:
        if isinstance(record, Mapping):
            value = record.get(name)
        else:
            value = getattr(record, name, None)
        if value is not None:
            return value
    return None


class FoldState(enum.Enum):
    UNFOLDED = "unfolded"
    FOLDED = "folded"


@dataclass(eq=False)
class ConvBlock:
    """One convolution followed by batch normalization.

    `weights` is laid out [output][input][kernel_row][kernel_col]; the other
    vectors hold one entry per output channel.
    """

    weights: torch.Tensor = field(default_factory=empty_vector)
    biases: torch.Tensor = field(default_factory=empty_vector)
    bn_gammas: torch.Tensor = field(default_factory=empty_vector)
    bn_betas: torch.Tensor = field(default_factory=empty_vector)
    bn_means: torch.Tensor = field(default_factory=empty_vector)
    bn_stddivs: torch.Tensor = field(default_factory=empty_vector)
    state: FoldState = FoldState.UNFOLDED
    # Set by the in-place normalization helpers; such a block can no longer be folded.
    stddev_inverted: bool = field(default=False, init=False)
    means_offset: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        for name in ("weights", "biases", "bn_gammas", "bn_betas", "bn_means", "bn_stddivs"):
            setattr(self, name, as_vector(getattr(self, name)))
        self._apply_legacy_defaults()
        self._validate()

    def _apply_legacy_defaults(self) -> None:
        channels = self.bn_means.numel()
        if self.bn_betas.numel() == 0:
            if self.bn_gammas.numel() != 0:
                raise FormatError(
                    f"bn_gammas has {self.bn_gammas.numel()} entries but bn_betas is empty"
                )
            # Old net without gamma and beta.
            if channels:
                logger.debug("No bn_betas; using beta=0, gamma=1 for %d channels", channels)
            self.bn_betas = torch.zeros(channels, dtype=torch.float32)
            self.bn_gammas = torch.ones(channels, dtype=torch.float32)
        if self.biases.numel() == 0:
            if channels:
                logger.debug("No biases; using bias=0 for %d channels", channels)
            self.biases = torch.zeros(channels, dtype=torch.float32)

    def _validate(self) -> None:
        channels = self.bn_means.numel()
        if channels == 0:
            for name in ("bn_gammas", "bn_betas", "bn_stddivs"):
                if getattr(self, name).numel() != 0:
                    raise FormatError(f"{name} is set but bn_means is empty")
        else:
            for name in ("biases", "bn_gammas", "bn_betas", "bn_stddivs"):
                n = getattr(self, name).numel()
                if n != channels:
                    raise FormatError(f"{name} has {n} entries, bn_means has {channels}")

    @classmethod
    def from_record(cls, record: Any, adapter: LayerAdapter = as_vector) -> "ConvBlock":
        return cls(
            weights=adapter(_field(record, "weights")),
            biases=adapter(_field(record, "biases")),
            bn_gammas=adapter(_field(record, "bn_gammas")),
            bn_betas=adapter(_field(record, "bn_betas")),
            bn_means=adapter(_field(record, "bn_means")),
            bn_stddivs=adapter(_field(record, "bn_stddivs", "bn_stddevs")),
        )

    @property
    def outputs(self) -> int:
        return self.biases.numel()

    @property
    def is_folded(self) -> bool:
        return self.state is FoldState.FOLDED

    @property
    def has_batchnorm(self) -> bool:
        return self.bn_means.numel() > 0

    @property
    def is_empty(self) -> bool:
        return self.weights.numel() == 0 and self.biases.numel() == 0 and not self.has_batchnorm

    def input_channels(self, filter_size: int) -> int:
        spatial = filter_size * filter_size
        if filter_size < 1 or self.outputs == 0 or self.weights.numel() % (self.outputs * spatial):
            raise PreconditionError(
                f"{self.weights.numel()} weights do not split into {self.outputs} outputs "
                f"with a {filter_size}x{filter_size} kernel"
            )
        return self.weights.numel() // (self.outputs * spatial)

    def get_inverted_stddev(self) -> torch.Tensor:
        return inverted_stddev(self.bn_stddivs)

    def get_offset_means(self) -> torch.Tensor:
        return offset_means(self.bn_means, self.biases)

    def invert_stddev(self) -> None:
        """Replace bn_stddivs with 1 / sqrt(stddiv + eps) in place."""
        if self.is_folded:
            raise AlreadyFoldedError("ConvBlock is already folded")
        if self.stddev_inverted:
            raise PreconditionError("bn_stddivs are already inverted")
        self.bn_stddivs.copy_(inverted_stddev(self.bn_stddivs))
        self.stddev_inverted = True

    def offset_means(self) -> None:
        """Subtract the conv biases from bn_means in place."""
        if self.is_folded:
            raise AlreadyFoldedError("ConvBlock is already folded")
        if self.means_offset:
            raise PreconditionError("bn_means are already offset by the biases")
        self.bn_means.copy_(offset_means(self.bn_means, self.biases))
        self.means_offset = True

    def check_foldable(self, filter_size: int) -> int:
        """Raise unless `fold_bn(filter_size)` would succeed; return the input channel count."""
        if self.is_folded:
            raise AlreadyFoldedError("ConvBlock is already folded")
        if self.stddev_inverted or self.means_offset:
            raise PreconditionError("Cannot fold a block whose statistics were normalized in place")
        if filter_size < 1:
            raise PreconditionError(f"filter_size must be positive, got {filter_size}")
        return self.input_channels(filter_size)

    def fold_bn(self, filter_size: int) -> None:
        """Get rid of the BN layer by adjusting weights and biases of the convolution.

        `filter_size` is the side of the square kernel. The block is left
        untouched if the arguments are invalid, and a folded block cannot be
        folded again.
        """
        self.check_foldable(filter_size)

        fold_bn_(
            self.weights,
            self.biases,
            self.bn_gammas,
            self.bn_betas,
            self.bn_means,
            self.bn_stddivs,
            filter_size * filter_size,
        )
        self.state = FoldState.FOLDED


@dataclass(eq=False)
class SEUnit:
    """Squeeze-excitation: two fully connected layers over pooled channels."""

    w1: torch.Tensor
    b1: torch.Tensor
    w2: torch.Tensor
    b2: torch.Tensor

    @classmethod
    def from_record(cls, record: Any, adapter: LayerAdapter = as_vector) -> "SEUnit":
        se = cls(
            w1=adapter(_field(record, "w1")),
            b1=adapter(_field(record, "b1")),
            w2=adapter(_field(record, "w2")),
            b2=adapter(_field(record, "b2")),
        )
        for w, b in (("w1", "b1"), ("w2", "b2")):
            nw = getattr(se, w).numel()
            nb = getattr(se, b).numel()
            if nb == 0 or nw % nb != 0:
                raise FormatError(f"SE unit {w} has {nw} entries, not a multiple of {b} ({nb})")
        return se


@dataclass(eq=False)
class Residual:
    conv1: ConvBlock
    conv2: ConvBlock
    se: Optional[SEUnit] = None

    @property
    def has_se(self) -> bool:
        return self.se is not None

    @classmethod
    def from_record(cls, record: Any, adapter: LayerAdapter = as_vector) -> "Residual":
        se_record = _field(record, "se")
        has_se = _field(record, "has_se")
        if has_se is None:
            if hasattr(record, "HasField"):
                has_se = record.HasField("se")
            else:
                has_se = se_record is not None
        if has_se and se_record is None:
            raise FormatError("Residual block is flagged has_se but has no se record")

        return cls(
            conv1=_conv_block(record, "conv1", adapter),
            conv2=_conv_block(record, "conv2", adapter),
            se=SEUnit.from_record(se_record, adapter) if has_se else None,
        )


def _conv_block(record: Any, name: str, adapter: LayerAdapter) -> ConvBlock:
    sub = _field(record, name)
    if sub is None:
        raise FormatError(f"Missing conv block {name!r}")
    try:
        return ConvBlock.from_record(sub, adapter)
    except FormatError as e:
        raise FormatError(f"{name}: {e}") from e


@dataclass(frozen=True)
class KernelSizes:
    """Square kernel extent of each conv block kind, used when folding.

    `policy` defaults to 3 when the net has a `policy1` block (convolutional
    policy head) and 1 otherwise.
    """

    input: int = 3
    residual: int = 3
    policy1: int = 3
    policy: Optional[int] = None
    value: int = 1

    def for_block(self, name: str, conv_policy: bool = False) -> int:
        if name.startswith("residual."):
            return self.residual
        if name == "policy":
            if self.policy is not None:
                return self.policy
            return 3 if conv_policy else 1
        if name in ("input", "policy1", "value"):
            return getattr(self, name)
        raise PreconditionError(f"Unknown conv block {name!r}")


@dataclass(eq=False)
class LegacyWeights:
    input: ConvBlock
    policy: ConvBlock
    value: ConvBlock
    policy1: Optional[ConvBlock] = None
    ip_pol_w: torch.Tensor = field(default_factory=empty_vector)
    ip_pol_b: torch.Tensor = field(default_factory=empty_vector)
    ip1_val_w: torch.Tensor = field(default_factory=empty_vector)
    ip1_val_b: torch.Tensor = field(default_factory=empty_vector)
    ip2_val_w: torch.Tensor = field(default_factory=empty_vector)
    ip2_val_b: torch.Tensor = field(default_factory=empty_vector)
    residual: List[Residual] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Any, adapter: LayerAdapter = as_vector) -> "LegacyWeights":
        """Build the weight tree from a parsed weights record.

        Raises FormatError if any block is missing or size-inconsistent.
        """
        residual = []
        for i, res in enumerate(_field(record, "residual") or []):
            try:
                residual.append(Residual.from_record(res, adapter))
            except FormatError as e:
                raise FormatError(f"residual.{i}: {e}") from e

        policy1 = None
        if _field(record, "policy1") is not None:
            policy1 = _conv_block(record, "policy1", adapter)
            if policy1.is_empty:
                policy1 = None

        weights = cls(
            input=_conv_block(record, "input", adapter),
            policy=_conv_block(record, "policy", adapter),
            value=_conv_block(record, "value", adapter),
            policy1=policy1,
            ip_pol_w=adapter(_field(record, "ip_pol_w")),
            ip_pol_b=adapter(_field(record, "ip_pol_b")),
            ip1_val_w=adapter(_field(record, "ip1_val_w")),
            ip1_val_b=adapter(_field(record, "ip1_val_b")),
            ip2_val_w=adapter(_field(record, "ip2_val_w")),
            ip2_val_b=adapter(_field(record, "ip2_val_b")),
            residual=residual,
        )
        logger.debug(
            "Built legacy weights: %d filters, %d residual blocks, se=%s, policy1=%s",
            weights.num_filters,
            weights.num_blocks,
            weights.has_se,
            policy1 is not None,
        )
        return weights

    @property
    def num_filters(self) -> int:
        return self.input.outputs

    @property
    def num_blocks(self) -> int:
        return len(self.residual)

    @property
    def has_se(self) -> bool:
        return any(res.has_se for res in self.residual)

    def conv_blocks(self) -> Iterator[Tuple[str, ConvBlock]]:
        """Yield (name, block) for every conv block in network order."""
        yield "input", self.input
        for i, res in enumerate(self.residual):
            yield f"residual.{i}.conv1", res.conv1
            yield f"residual.{i}.conv2", res.conv2
        if self.policy1 is not None:
            yield "policy1", self.policy1
        yield "policy", self.policy
        yield "value", self.value

    def fold_bn(self, kernel_sizes: KernelSizes = KernelSizes()) -> int:
        """Fold every batch-normalized conv block; return how many were folded.

        Blocks without BN statistics are skipped. Every block is checked
        before the first one is modified.
        """
        conv_policy = self.policy1 is not None
        todo = []
        for name, block in self.conv_blocks():
            if not block.has_batchnorm:
                continue
            filter_size = kernel_sizes.for_block(name, conv_policy)
            try:
                block.check_foldable(filter_size)
            except AlreadyFoldedError as e:
                raise AlreadyFoldedError(f"{name}: {e}") from e
            except PreconditionError as e:
                raise PreconditionError(f"{name}: {e}") from e
            todo.append((name, block, filter_size))

        for name, block, filter_size in todo:
            block.fold_bn(filter_size)
            logger.debug("Folded BN into %s (%dx%d)", name, filter_size, filter_size)
        return len(todo)
