"""
Model Summary & Forward Sanity Check
====================================

Builds a ``BertPreTraining`` model from the configuration, logs its
parameter table, and runs one forward pass on a synthetic batch so that a
configuration can be checked end to end without any data pipeline.

Launch
------
Default (BERT-base)::

    python -m bert_pretraining.summary

With config override::

    python -m bert_pretraining.summary --config configs/tiny.yaml --num_encoder 2
"""

from __future__ import annotations

import logging
import math
import sys
from typing import Optional, Sequence

import torch

from bert_pretraining.config import BertConfig, ConfigurationError
from bert_pretraining.model import (
    MLM_IGNORE_INDEX,
    PreTrainingOutput,
    BertPreTraining,
    build_bert_pretraining,
    model_summary,
)

logger = logging.getLogger(__name__)

# Fraction of positions that carry an MLM label in the synthetic batch.
MLM_PROBABILITY = 0.15


def setup_logging(level: int = logging.INFO) -> None:
    """Configure console logging for the entry point."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def synthetic_batch(config: BertConfig, generator: Optional[torch.Generator] = None) -> dict:
    """Random pretraining batch shaped ``(seq_len, batchsize)``.

    Token ids are uniform over the vocabulary, the second half of every
    sequence is segment 1, and roughly ``MLM_PROBABILITY`` of positions get
    an MLM label (at least one per batch).  The attention mask is all ones.
    """
    shape = (config.seq_len, config.batchsize)
    device = config.device

    token_ids = torch.randint(0, config.vocab_size, shape, generator=generator).to(device)
    segment_ids = torch.zeros(shape, dtype=torch.long)
    segment_ids[config.seq_len // 2:] = min(1, config.num_segment - 1)

    selected = torch.rand(shape, generator=generator) < MLM_PROBABILITY
    selected[-1, 0] = True
    mlm_labels = torch.where(selected, token_ids.cpu(), torch.full(shape, MLM_IGNORE_INDEX))
    nsp_labels = torch.randint(0, 2, (config.batchsize,), generator=generator)

    return {
        "token_ids": token_ids,
        "segment_ids": segment_ids.to(device),
        "mlm_labels": mlm_labels.to(device),
        "nsp_labels": nsp_labels.to(device),
        "attention_mask": torch.ones(shape, device=device),
    }


@torch.no_grad()
def sanity_forward(model: BertPreTraining, config: BertConfig, seed: int = 0) -> PreTrainingOutput:
    """Run one evaluation-mode forward pass on a synthetic batch."""
    generator = torch.Generator().manual_seed(seed)
    batch = synthetic_batch(config, generator)
    model.eval()
    return model.losses(**batch)


def main(argv: Optional[Sequence[str]] = None) -> int:
    setup_logging()
    try:
        config = BertConfig.from_cli(argv)
        model = build_bert_pretraining(config)
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    logger.info("\n%s", model_summary(model))

    out = sanity_forward(model, config)
    loss = out.loss.item()
    logger.info("Forward pass: loss %.4f (mlm %.4f, nsp %.4f)",
                loss, out.mlm_loss.item(), out.nsp_loss.item())
    if not math.isfinite(loss):
        logger.error("Loss is not finite")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
