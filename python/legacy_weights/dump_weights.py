#!/usr/bin/env python3
"""Load a saved weights record and print the legacy weight tree.

The file must hold a nested record of dicts / lists / tensors written with
`torch.save`, keyed like the legacy weights format (input, residual, policy,
value, ip_pol_w, ...).

Usage:
    python -m legacy_weights.dump_weights path/to/weights.pt [--fold] [--json]

Set LEGACY_WEIGHTS_LOG_LEVEL=DEBUG (or pass -v) to see legacy substitutions
and folding as they happen.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import pickle
import sys
from typing import Any, Dict, List, Optional

import torch

from legacy_weights.errors import LegacyWeightsError, PreconditionError
from legacy_weights.weights import KernelSizes, LegacyWeights

_HEAD_VECTORS = ("ip_pol_w", "ip_pol_b", "ip1_val_w", "ip1_val_b", "ip2_val_w", "ip2_val_b")


def summarize(weights: LegacyWeights, kernel_sizes: KernelSizes = KernelSizes()) -> Dict[str, Any]:
    conv_policy = weights.policy1 is not None
    blocks: List[Dict[str, Any]] = []
    for name, block in weights.conv_blocks():
        filter_size = kernel_sizes.for_block(name, conv_policy)
        try:
            inputs: Optional[int] = block.input_channels(filter_size)
        except PreconditionError:
            inputs = None
        blocks.append(
            {
                "name": name,
                "kernel": filter_size,
                "outputs": block.outputs,
                "inputs": inputs,
                "batchnorm": block.has_batchnorm,
                "state": block.state.value,
            }
        )
    return {
        "filters": weights.num_filters,
        "blocks": weights.num_blocks,
        "se": weights.has_se,
        "conv": blocks,
        "heads": {name: getattr(weights, name).numel() for name in _HEAD_VECTORS},
    }


def _print_summary(summary: Dict[str, Any]) -> None:
    print(f"filters={summary['filters']} blocks={summary['blocks']} se={summary['se']}")
    for b in summary["conv"]:
        inputs = "?" if b["inputs"] is None else b["inputs"]
        bn = "bn" if b["batchnorm"] else "--"
        print(
            f"  {b['name']:<22} {b['kernel']}x{b['kernel']}  "
            f"{inputs:>4} -> {b['outputs']:<4} {bn}  {b['state']}"
        )
    for name, size in summary["heads"].items():
        print(f"  {name:<22} {size}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Print the layout of legacy network weights.")
    parser.add_argument("path", help="File written with torch.save holding the weights record")
    parser.add_argument("--fold", action="store_true", help="Fold batch-norm before printing")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    level = "DEBUG" if args.verbose else os.environ.get("LEGACY_WEIGHTS_LOG_LEVEL", "WARNING")
    logging.basicConfig(level=level.upper(), format="%(levelname)s %(name)s: %(message)s")

    try:
        record = torch.load(args.path, map_location="cpu", weights_only=True)
    except (OSError, EOFError, pickle.UnpicklingError, RuntimeError) as e:
        print(f"error: {args.path}: cannot load weights record: {e}", file=sys.stderr)
        return 1

    try:
        weights = LegacyWeights.from_record(record)
        if args.fold:
            weights.fold_bn()
    except LegacyWeightsError as e:
        print(f"error: {args.path}: {e}", file=sys.stderr)
        return 1

    summary = summarize(weights)
    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        _print_summary(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
