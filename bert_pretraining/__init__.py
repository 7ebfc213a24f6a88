"""
BERT Pretraining from Scratch
=============================

A BERT-style transformer encoder with masked-language-model and
next-sentence-prediction heads, built from raw ``nn.Parameter`` tensors.
No nn.Linear, no nn.Embedding, no nn.LayerNorm.

Features:
    - Feature-first ``(E, S, B)`` tensor layout with named axes
    - Multi-head self-attention over a single batched matmul
    - Post-norm residual encoder blocks
    - Pooler, NSP and MLM heads with a combined pretraining loss
    - Optional MLM / word-embedding weight tying
    - Dataclass configuration with YAML and CLI overrides
"""

__version__ = "0.1.0"

from bert_pretraining.config import BertConfig, ConfigurationError
from bert_pretraining.model import (
    Bert,
    BertPreTraining,
    PreTrainingOutput,
    build_bert,
    build_bert_pretraining,
)

__all__ = [
    "Bert",
    "BertConfig",
    "BertPreTraining",
    "ConfigurationError",
    "PreTrainingOutput",
    "build_bert",
    "build_bert_pretraining",
]
