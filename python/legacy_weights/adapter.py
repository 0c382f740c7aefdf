"""Flatten serialized layer fields into float32 vectors.

The builder never looks at how a tensor was stored. It hands every field it
reads to a `LayerAdapter`, a callable returning a 1-D contiguous float32
tensor. `as_vector` is the default and understands:

  - None or {}                  -> empty vector (field absent in older nets)
  - torch.Tensor (any shape)    -> row-major flattened copy
  - sequence of numbers         -> vector
  - Layer / mapping with params -> LINEAR16 dequantized vector

LINEAR16 stores each value as a uint16 `q` in `params`:
  value = q / 65535 * (max_val - min_val) + min_val
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import torch

from legacy_weights.errors import FormatError

LINEAR16 = "LINEAR16"

_U16_MAX = 65535.0


class LayerAdapter(Protocol):
    def __call__(self, layer: Any) -> torch.Tensor: ...


@dataclass(frozen=True)
class Layer:
    """A serialized layer record as stored in the weights file."""

    min_val: float = 0.0
    max_val: float = 0.0
    params: bytes = b""
    encoding: str = LINEAR16


def empty_vector() -> torch.Tensor:
    return torch.empty(0, dtype=torch.float32)


def _decode_linear16(min_val: float, max_val: float, params: bytes, encoding: str) -> torch.Tensor:
    if encoding != LINEAR16:
        raise FormatError(f"Unsupported layer encoding {encoding!r}")
    if len(params) % 2 != 0:
        raise FormatError(f"LINEAR16 params must hold whole uint16 values, got {len(params)} bytes")
    if not params:
        return empty_vector()

    # Host byte order; the weights format is little-endian like every host we run on.
    raw = torch.frombuffer(bytearray(params), dtype=torch.int16).to(torch.int32) & 0xFFFF
    q = raw.to(torch.float32)
    lo = torch.tensor(min_val, dtype=torch.float32)
    span = torch.tensor(max_val, dtype=torch.float32) - lo
    return (q / _U16_MAX * span + lo).contiguous()


def as_vector(layer: Any) -> torch.Tensor:
    """Return `layer` as a 1-D contiguous float32 tensor."""

    if layer is None:
        return empty_vector()

    if isinstance(layer, torch.Tensor):
        return layer.detach().to(dtype=torch.float32).flatten().clone()

    if isinstance(layer, Layer):
        return _decode_linear16(layer.min_val, layer.max_val, layer.params, layer.encoding)

    if isinstance(layer, Mapping):
        if not layer:
            return empty_vector()
        if "params" not in layer:
            raise FormatError(f"Layer mapping has no 'params' entry (keys: {sorted(layer)})")
        return _decode_linear16(
            float(layer.get("min_val", 0.0)),
            float(layer.get("max_val", 0.0)),
            bytes(layer["params"]),
            str(layer.get("encoding", LINEAR16)),
        )

    if isinstance(layer, (bytes, bytearray, str)):
        raise FormatError(f"Cannot flatten {type(layer).__name__} without min/max range")

    if isinstance(layer, Sequence):
        try:
            return torch.tensor([float(v) for v in layer], dtype=torch.float32)
        except (TypeError, ValueError) as e:
            raise FormatError(f"Layer sequence holds non-numeric values: {e}") from e

    # Protobuf-style message exposing the same fields as Layer.
    if hasattr(layer, "params") and hasattr(layer, "min_val"):
        return _decode_linear16(
            float(layer.min_val),
            float(layer.max_val),
            bytes(layer.params),
            LINEAR16,
        )

    raise FormatError(f"Cannot flatten layer of type {type(layer).__name__}")
