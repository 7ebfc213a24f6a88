"""
Configuration System
====================

Defines the ``BertConfig`` dataclass that centralizes every architecture
hyperparameter the model graph reads at construction time.  Supports three
override layers:

    defaults → YAML file → CLI arguments

Usage::

    # From code
    cfg = BertConfig(embed_size=256, num_heads=4)

    # From YAML
    cfg = BertConfig.from_yaml("configs/base.yaml")

    # From CLI (auto-generates argparse flags for every field)
    cfg = BertConfig.from_cli()

Every layer constructor reads only the fields it needs.  Configuration
problems are reported as :class:`ConfigurationError` while the model is
being built, never during a forward pass.
"""

from __future__ import annotations

import argparse
import logging
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Callable, Optional, Sequence

import torch
import torch.nn.functional as F
import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a configuration cannot produce a valid model."""


def _identity(x: torch.Tensor) -> torch.Tensor:
    return x


def _gelu_tanh(x: torch.Tensor) -> torch.Tensor:
    return F.gelu(x, approximate="tanh")


ACTIVATIONS: dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "gelu": F.gelu,
    "gelu_tanh": _gelu_tanh,
    "relu": torch.relu,
    "tanh": torch.tanh,
    "identity": _identity,
}

DTYPES: dict[str, torch.dtype] = {
    "float32": torch.float32,
    "float64": torch.float64,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


def get_activation(name: str) -> Callable[[torch.Tensor], torch.Tensor]:
    """Resolve an activation function by its registry name."""
    try:
        return ACTIVATIONS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown activation '{name}'. Choose from {sorted(ACTIVATIONS)}"
        ) from None


@dataclass
class BertConfig:
    """Complete configuration for the BERT pretraining model.

    Defaults reproduce BERT-base.

    Attributes
    ----------
    vocab_size : int
        WordPiece vocabulary size ``V``.
    embed_size : int
        Hidden size ``E`` shared by every layer.
    max_seq_len : int
        Number of rows in the positional embedding table.
    seq_len : int
        Sequence length ``S`` of a training batch.  Must not exceed
        ``max_seq_len``.
    num_segment : int
        Number of rows in the segment embedding table (2 for sentence
        pairs).
    num_heads : int
        Number of attention heads ``N``.  ``embed_size`` must be divisible
        by it and the resulting head size must be a perfect square.
    num_encoder : int
        Number of stacked encoder blocks.
    ff_hidden_size : int
        Inner size of the position-wise feed-forward network.
    pdrop : float
        Dropout probability for embeddings, attention output and FFN.
    attention_pdrop : float
        Dropout probability applied to the attention weights.
    activation : str
        Name of the FFN / MLM-transform nonlinearity (see ``ACTIVATIONS``).
    batchsize : int
        Batch size ``B`` of a training batch.
    layer_norm_eps : float
        Epsilon added to the variance in every LayerNormalization.
    tie_word_embeddings : bool
        If True, the MLM output projection reuses the word-embedding table.
    dtype : str
        Parameter element type (key of ``DTYPES``).
    device : str
        Device the parameters are created on.
    """

    # ── Vocabulary & Sequence ────────────────────────────────────────
    vocab_size: int = 30522
    max_seq_len: int = 512
    seq_len: int = 128
    num_segment: int = 2

    # ── Model Architecture ───────────────────────────────────────────
    embed_size: int = 768
    num_heads: int = 12
    num_encoder: int = 12
    ff_hidden_size: int = 3072
    activation: str = "gelu"
    layer_norm_eps: float = 1e-12
    tie_word_embeddings: bool = False

    # ── Regularization ───────────────────────────────────────────────
    pdrop: float = 0.1
    attention_pdrop: float = 0.1

    # ── Batch & Placement ────────────────────────────────────────────
    batchsize: int = 32
    dtype: str = "float32"
    device: str = "cpu"

    # ── Derived Values ───────────────────────────────────────────────

    @property
    def head_size(self) -> int:
        """Per-head size ``H = E / N`` (integer division)."""
        return self.embed_size // self.num_heads

    @property
    def torch_dtype(self) -> torch.dtype:
        try:
            return DTYPES[self.dtype]
        except KeyError:
            raise ConfigurationError(
                f"Unknown dtype '{self.dtype}'. Choose from {sorted(DTYPES)}"
            ) from None

    @property
    def activation_fn(self) -> Callable[[torch.Tensor], torch.Tensor]:
        return get_activation(self.activation)

    def validate(self) -> "BertConfig":
        """Check value ranges; return ``self`` so calls can be chained.

        The attention-specific constraints (divisibility of ``embed_size``
        by ``num_heads`` and a perfect-square head size) are enforced by
        ``SelfAttention`` itself.

        Raises
        ------
        ConfigurationError
            If any field is out of range.
        """
        for name in ("vocab_size", "embed_size", "max_seq_len", "seq_len",
                     "num_segment", "num_heads", "num_encoder",
                     "ff_hidden_size", "batchsize"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.seq_len > self.max_seq_len:
            raise ConfigurationError(
                f"seq_len ({self.seq_len}) exceeds max_seq_len ({self.max_seq_len})"
            )
        for name in ("pdrop", "attention_pdrop"):
            p = getattr(self, name)
            if not 0.0 <= p < 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1), got {p}")
        if not (self.layer_norm_eps > 0 and math.isfinite(self.layer_norm_eps)):
            raise ConfigurationError(f"layer_norm_eps must be positive, got {self.layer_norm_eps}")
        get_activation(self.activation)
        _ = self.torch_dtype
        return self

    # ── Serialization ────────────────────────────────────────────────

    def to_dict(self) -> dict:
        """Convert config to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, values: dict) -> "BertConfig":
        """Build a config from a mapping, ignoring keys that are not fields."""
        valid_fields = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - valid_fields)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in values.items() if k in valid_fields})

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BertConfig":
        """Load config from a YAML file, falling back to defaults for
        any missing keys.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.
        """
        with open(path, "r") as f:
            overrides = yaml.safe_load(f) or {}
        return cls.from_dict(overrides)

    def save_yaml(self, path: str | Path) -> None:
        """Write the config to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_cli(cls, argv: Optional[Sequence[str]] = None) -> "BertConfig":
        """Build config from command-line arguments.

        Every dataclass field becomes a CLI flag.  If ``--config`` is
        provided, YAML values are loaded first, then CLI flags override.

        Parameters
        ----------
        argv : sequence of str, optional
            Arguments to parse.  Defaults to ``sys.argv[1:]``.

        Returns
        -------
        BertConfig
            Merged configuration.
        """
        parser = argparse.ArgumentParser(
            description="BERT Pretraining Model Configuration",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "--config", type=str, default=None,
            help="Path to YAML config file (values override defaults, CLI overrides YAML)",
        )

        # Auto-generate a flag for every dataclass field
        for f in fields(cls):
            flag = f"--{f.name}"
            if f.type == "bool" or f.type is bool:
                parser.add_argument(flag, type=_str_to_bool, default=None)
            elif f.type in ("int",) or f.type is int:
                parser.add_argument(flag, type=int, default=None)
            elif f.type in ("float",) or f.type is float:
                parser.add_argument(flag, type=float, default=None)
            else:
                parser.add_argument(flag, type=str, default=None)

        args = parser.parse_args(argv)

        # Layer 1: defaults
        config_dict = {}

        # Layer 2: YAML overrides
        if args.config:
            with open(args.config, "r") as f:
                config_dict.update(yaml.safe_load(f) or {})

        # Layer 3: CLI overrides (only non-None values)
        for f in fields(cls):
            cli_val = getattr(args, f.name, None)
            if cli_val is not None:
                config_dict[f.name] = cli_val

        return cls.from_dict(config_dict)


def _str_to_bool(v: str) -> bool:
    """Parse boolean CLI arguments flexibly."""
    if v.lower() in ("true", "1", "yes"):
        return True
    elif v.lower() in ("false", "0", "no"):
        return False
    raise argparse.ArgumentTypeError(f"Boolean value expected, got '{v}'")
