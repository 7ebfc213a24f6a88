"""
BERT Pretraining Model — Built Entirely from Scratch
=====================================================

Every component in this file is implemented from first principles using
only ``torch.Tensor`` operations and ``nn.Parameter``.  No ``nn.Linear``,
no ``nn.Embedding``, no ``nn.LayerNorm`` — just raw math.

Layout
------
All hidden states are **feature-first**, ``(E, S, B)``; weights multiply
from the left and per-feature parameters broadcast along axis 0.  Token,
segment and label tensors are ``(S, B)``.  See :mod:`bert_pretraining.ops`
for the shape legend and the named axes.

Architecture
------------
- **EmbedLayer**: word + learned position + segment embeddings, LayerNorm, dropout
- **Encoder**: self-attention and feed-forward sub-layers, each followed by a
  residual add and **post**-normalization
- **Pretraining heads**: pooled CLS → NSP logits; every position → MLM logits
- **Loss**: ``mlm_loss + nsp_loss``, MLM averaged over labelled positions only

References
----------
- Vaswani et al., "Attention Is All You Need" (2017)
- Devlin et al., "BERT: Pre-training of Deep Bidirectional Transformers
  for Language Understanding" (2019)
- Ba et al., "Layer Normalization" (2016)
"""

from __future__ import annotations

import logging
import math
from typing import Callable, NamedTuple, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from bert_pretraining.config import BertConfig, ConfigurationError, get_activation
from bert_pretraining.ops import (
    FEATURE_AXIS,
    KEY_AXIS,
    SEQ_AXIS,
    bmm,
    broadcast_features,
    matmul,
    softmax,
)

logger = logging.getLogger(__name__)

# Added to the attention score of every masked key position.
MASK_BIAS = -10000.0

# MLM label marking a position that is not a prediction target.
MLM_IGNORE_INDEX = -1


# ═══════════════════════════════════════════════════════════════════════
#  Primitive Layers
# ═══════════════════════════════════════════════════════════════════════


class Linear(nn.Module):
    """Affine projection: y = Wx + b.

    The weight left-multiplies a feature-first input and the bias is
    broadcast over every trailing axis, so the same layer serves 2-D
    ``(in, B)`` and 3-D ``(in, S, B)`` inputs.

    Parameters
    ----------
    in_features : int
        Size of the input (first) dimension.
    out_features : int
        Size of the output (first) dimension.
    device : torch.device, optional
        Device to place parameters on.
    dtype : torch.dtype, optional
        Data type for parameters.

    Shape
    -----
    - Input:  ``(in_features, *)``
    - Output: ``(out_features, *)``

    The weight is allocated uninitialized; build through
    :func:`build_bert_pretraining` or call ``apply(param_init)``.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.W = nn.Parameter(
            torch.empty(out_features, in_features, device=device, dtype=dtype)
        )
        self.b = nn.Parameter(torch.zeros(out_features, device=device, dtype=dtype))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass: ``y = W x + b``.

        Parameters
        ----------
        x : torch.Tensor
            Input tensor of shape ``(in_features, *)``.

        Returns
        -------
        torch.Tensor
            Output tensor of shape ``(out_features, *)``.
        """
        return matmul(self.W, x) + broadcast_features(self.b, x.dim())


class Dense(nn.Module):
    """Linear layer followed by dropout and a nonlinearity.

    ``Dense(x) = activation(dropout(W x + b))``; the activation defaults
    to the identity.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        pdrop: float = 0.0,
        activation: Optional[Callable[[torch.Tensor], torch.Tensor]] = None,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        super().__init__()
        self.linear = Linear(in_features, out_features, device=device, dtype=dtype)
        self.dropout = nn.Dropout(pdrop)
        self.activation = activation if activation is not None else get_activation("identity")

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """``(in_features, *) -> (out_features, *)``."""
        return self.activation(self.dropout(self.linear(x)))


class Embedding(nn.Module):
    """Lookup-table embedding: maps integer ids to dense column vectors.

    The table is stored as ``(embedding_dim, num_embeddings)`` and a lookup
    selects columns, so the embedding axis lands first::

        ids (S, B)  ->  (E, S, B)

    Parameters
    ----------
    num_embeddings : int
        Number of rows of the conceptual table (vocabulary size).
    embedding_dim : int
        Dimensionality of each embedding vector.
    device : torch.device, optional
        Device to place parameters on.
    dtype : torch.dtype, optional
        Data type for parameters.

    Like :class:`Linear`, the table starts uninitialized until
    ``apply(param_init)`` runs.
    """

    def __init__(
        self,
        num_embeddings: int,
        embedding_dim: int,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        super().__init__()
        self.num_embeddings = num_embeddings
        self.embedding_dim = embedding_dim
        self.embedding_matrix = nn.Parameter(
            torch.empty(embedding_dim, num_embeddings, device=device, dtype=dtype)
        )

    def forward(self, ids: torch.Tensor) -> torch.Tensor:
        """Look up the column for every id.

        Parameters
        ----------
        ids : torch.Tensor
            Integer tensor of any shape, typically ``(S, B)``.

        Returns
        -------
        torch.Tensor
            Embedded representations of shape ``(E, *ids.shape)``.
        """
        return self.embedding_matrix[:, ids]


# ═══════════════════════════════════════════════════════════════════════
#  Normalization
# ═══════════════════════════════════════════════════════════════════════


class LayerNormalization(nn.Module):
    """Layer normalization over the feature axis.

    Formula::

        mu      = mean(x, axis=0)
        var     = mean((x - mu)^2, axis=0)          # uncorrected
        output  = gamma * (x - mu) / sqrt(var + eps) + beta

    Statistics are always taken over axis 0, so 2-D ``(E, B)`` and 3-D
    ``(E, S, B)`` inputs are handled identically.  Half-precision inputs
    are normalized in float32 and cast back.

    Parameters
    ----------
    hidden_size : int
        Size of the feature axis.
    eps : float
        Small constant for numerical stability.
    device : torch.device, optional
        Device to place parameters on.
    dtype : torch.dtype, optional
        Data type for parameters.
    """

    def __init__(
        self,
        hidden_size: int,
        eps: float = 1e-12,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        super().__init__()
        self.hidden_size = hidden_size
        self.eps = eps
        self.gamma = nn.Parameter(torch.ones(hidden_size, device=device, dtype=dtype))
        self.beta = nn.Parameter(torch.zeros(hidden_size, device=device, dtype=dtype))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Normalize over axis 0, then scale and shift.

        Parameters
        ----------
        x : torch.Tensor
            Input of shape ``(E, *)``.

        Returns
        -------
        torch.Tensor
            Normalized output of the same shape.
        """
        in_dtype = x.dtype
        if in_dtype in (torch.float16, torch.bfloat16):
            x = x.to(torch.float32)

        mu = x.mean(dim=FEATURE_AXIS, keepdim=True)
        centered = x - mu
        var = (centered * centered).mean(dim=FEATURE_AXIS, keepdim=True)
        x = centered / torch.sqrt(var + self.eps)

        x = x.to(in_dtype)
        ndim = x.dim()
        return broadcast_features(self.gamma, ndim) * x + broadcast_features(self.beta, ndim)


# ═══════════════════════════════════════════════════════════════════════
#  Embeddings
# ═══════════════════════════════════════════════════════════════════════


class EmbedLayer(nn.Module):
    """Sum of word, position and segment embeddings, normalized.

    Position ids are generated, never passed in: row ``s`` of the
    ``(S, B)`` id matrix holds ``s`` for every batch column.  Segment id 0
    is an ordinary learned row, not a zero padding vector.

    Shape
    -----
    - Input:  ``token_ids (S, B)``, ``segment_ids (S, B)``
    - Output: ``(E, S, B)``
    """

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        kw = dict(device=config.device, dtype=config.torch_dtype)
        self.max_seq_len = config.max_seq_len
        self.wordpiece = Embedding(config.vocab_size, config.embed_size, **kw)
        self.positional = Embedding(config.max_seq_len, config.embed_size, **kw)
        self.segment = Embedding(config.num_segment, config.embed_size, **kw)
        self.layer_norm = LayerNormalization(config.embed_size, eps=config.layer_norm_eps, **kw)
        self.dropout = nn.Dropout(config.pdrop)

    @staticmethod
    def position_ids(
        seq_len: int, batch_size: int, device: Optional[torch.device] = None
    ) -> torch.Tensor:
        """Constant ``(S, B)`` matrix whose row ``s`` is filled with ``s``."""
        return torch.arange(seq_len, device=device).unsqueeze(1).expand(seq_len, batch_size)

    def forward(self, token_ids: torch.Tensor, segment_ids: torch.Tensor) -> torch.Tensor:
        """Embed a batch of id sequences.

        Parameters
        ----------
        token_ids : torch.Tensor
            Word ids of shape ``(S, B)``.
        segment_ids : torch.Tensor
            Segment ids of shape ``(S, B)``.

        Returns
        -------
        torch.Tensor
            Embeddings of shape ``(E, S, B)``.

        Raises
        ------
        ValueError
            If ``S`` exceeds ``max_seq_len``.
        """
        seq_len, batch_size = token_ids.shape
        if seq_len > self.max_seq_len:
            raise ValueError(
                f"Sequence length ({seq_len}) exceeds max_seq_len ({self.max_seq_len})"
            )

        x = self.wordpiece(token_ids)                                   # (E, S, B)
        x = x + self.positional(self.position_ids(seq_len, batch_size, token_ids.device))
        x = x + self.segment(segment_ids)
        x = self.layer_norm(x)
        return self.dropout(x)


# ═══════════════════════════════════════════════════════════════════════
#  Attention
# ═══════════════════════════════════════════════════════════════════════


class SelfAttention(nn.Module):
    """Multi-head scaled dot-product self-attention.

    Heads and batch are folded into one trailing axis so that a single
    batched matrix multiply serves every head of every batch element::

        (E, S, B) --split--> (H, S, N*B)
        scores   = K^T Q / sqrt(H)                  (S_k, S_q, N*B)
        weights  = softmax(scores + mask, keys)     (S_k, S_q, N*B)
        context  = V weights                        (H, S_q, N*B)
        (H, S, N*B) --merge--> (E, S, B) --> Linear --> dropout

    Head ``n`` owns the contiguous feature slice ``[n*H, (n+1)*H)``.

    The integer ``sqrt(H)`` is computed once here rather than on every
    call, so ``H`` must be a perfect square.

    Parameters
    ----------
    config : BertConfig
        Reads ``embed_size``, ``num_heads``, ``attention_pdrop``, ``pdrop``.

    Raises
    ------
    ConfigurationError
        If ``embed_size`` is not divisible by ``num_heads`` or the head
        size is not a perfect square.
    """

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        embed_size, num_heads = config.embed_size, config.num_heads
        if embed_size % num_heads != 0:
            raise ConfigurationError(
                f"embed_size ({embed_size}) must be divisible by num_heads ({num_heads})"
            )
        head_size = embed_size // num_heads
        head_size_sqrt = math.isqrt(head_size)
        if head_size_sqrt * head_size_sqrt != head_size:
            raise ConfigurationError(
                f"head size ({head_size}) must be a perfect square"
            )

        self.embed_size = embed_size
        self.num_heads = num_heads
        self.head_size = head_size
        self.head_size_sqrt = head_size_sqrt

        kw = dict(device=config.device, dtype=config.torch_dtype)
        self.query = Linear(embed_size, head_size * num_heads, **kw)
        self.key = Linear(embed_size, head_size * num_heads, **kw)
        self.value = Linear(embed_size, head_size * num_heads, **kw)
        self.linear = Linear(embed_size, embed_size, **kw)

        self.attention_dropout = nn.Dropout(config.attention_pdrop)
        self.dropout = nn.Dropout(config.pdrop)

    def split_heads(self, x: torch.Tensor) -> torch.Tensor:
        """``(E, S, B) -> (H, S, N*B)``."""
        _, seq_len, batch_size = x.shape
        x = x.reshape(self.num_heads, self.head_size, seq_len, batch_size)   # (N, H, S, B)
        x = x.permute(1, 2, 0, 3)                                            # (H, S, N, B)
        return x.reshape(self.head_size, seq_len, self.num_heads * batch_size)

    def merge_heads(self, x: torch.Tensor) -> torch.Tensor:
        """``(H, S, N*B) -> (E, S, B)``; exact inverse of :meth:`split_heads`."""
        _, seq_len, folded = x.shape
        batch_size = folded // self.num_heads
        x = x.reshape(self.head_size, seq_len, self.num_heads, batch_size)   # (H, S, N, B)
        x = x.permute(2, 0, 1, 3)                                            # (N, H, S, B)
        return x.reshape(self.embed_size, seq_len, batch_size)

    def forward(
        self,
        x: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        return_weights: bool = False,
    ):
        """Compute multi-head self-attention.

        Parameters
        ----------
        x : torch.Tensor
            Input of shape ``(E, S, B)``.
        attention_mask : torch.Tensor, optional
            Additive bias broadcastable to ``(S_k, 1, 1, B)``: 0 where a key
            may be attended, a large negative value where it may not.
        return_weights : bool
            Also return the post-softmax weights ``(S_k, S_q, N, B)``
            (before attention dropout).

        Returns
        -------
        torch.Tensor or (torch.Tensor, torch.Tensor)
            Output of shape ``(E, S, B)``, optionally with the weights.
        """
        _, seq_len, batch_size = x.shape

        query = self.split_heads(self.query(x))                  # (H, S, N*B)
        key = self.split_heads(self.key(x))
        value = self.split_heads(self.value(x))

        # (S_k, H, N*B) x (H, S_q, N*B) -> (S_k, S_q, N*B)
        scores = bmm(key.transpose(0, 1), query) / self.head_size_sqrt

        if attention_mask is not None:
            scores = scores.reshape(seq_len, seq_len, self.num_heads, batch_size) + attention_mask
            scores = scores.reshape(seq_len, seq_len, self.num_heads * batch_size)

        weights = softmax(scores, dim=KEY_AXIS)
        probs = self.attention_dropout(weights)

        # (H, S_k, N*B) x (S_k, S_q, N*B) -> (H, S_q, N*B)
        context = bmm(value, probs)
        output = self.dropout(self.linear(self.merge_heads(context)))

        if return_weights:
            return output, weights.reshape(seq_len, seq_len, self.num_heads, batch_size)
        return output


# ═══════════════════════════════════════════════════════════════════════
#  Feed-Forward Network
# ═══════════════════════════════════════════════════════════════════════


class FeedForward(nn.Module):
    """Position-wise feed-forward network.

    ``FF(x) = dropout(W2 dropout(activation(W1 x + b1)) + b2)``, expanding
    ``embed_size -> ff_hidden_size`` and projecting back.
    """

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        kw = dict(device=config.device, dtype=config.torch_dtype)
        self.dense = Dense(
            config.embed_size, config.ff_hidden_size,
            activation=config.activation_fn, **kw,
        )
        self.hidden_dropout = nn.Dropout(config.pdrop)
        self.linear = Linear(config.ff_hidden_size, config.embed_size, **kw)
        self.dropout = nn.Dropout(config.pdrop)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """``(E, S, B) -> (E, S, B)`` through the ``ff_hidden_size`` expansion."""
        x = self.hidden_dropout(self.dense(x))          # (F, S, B)
        return self.dropout(self.linear(x))             # (E, S, B)


# ═══════════════════════════════════════════════════════════════════════
#  Transformer Blocks
# ═══════════════════════════════════════════════════════════════════════


class Encoder(nn.Module):
    """Single Transformer Encoder Block.

    Architecture (Post-Norm Residual)::

        x ──→ Self-Attention ──→ (+) ──→ LayerNorm ──→ FFN ──→ (+) ──→ LayerNorm ──→
        │                         ↑   │                        ↑
        └─────────────────────────┘   └────────────────────────┘

    Each residual adds the sub-layer's own input; the input tensor is
    never modified in place.
    """

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        kw = dict(device=config.device, dtype=config.torch_dtype)
        self.self_attention = SelfAttention(config)
        self.layer_norm1 = LayerNormalization(config.embed_size, eps=config.layer_norm_eps, **kw)
        self.feed_forward = FeedForward(config)
        self.layer_norm2 = LayerNormalization(config.embed_size, eps=config.layer_norm_eps, **kw)

    def forward(self, x: torch.Tensor, attention_mask: Optional[torch.Tensor] = None) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Hidden states ``(E, S, B)``.
        attention_mask : torch.Tensor, optional
            Additive bias ``(S, 1, 1, B)`` from
            :meth:`Bert.extended_attention_mask`.

        Returns
        -------
        torch.Tensor
            Hidden states ``(E, S, B)``.
        """
        x = self.layer_norm1(x + self.self_attention(x, attention_mask))
        return self.layer_norm2(x + self.feed_forward(x))


class Bert(nn.Module):
    """Embedding layer followed by a stack of ``num_encoder`` encoder blocks.

    Shape
    -----
    - Input:  ``token_ids (S, B)``, ``segment_ids (S, B)``,
      optional ``attention_mask (S, B)`` of 0/1 (1 = attend)
    - Output: ``(E, S, B)``
    """

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        self.embed_layer = EmbedLayer(config)
        self.encoder_stack = nn.ModuleList(
            [Encoder(config) for _ in range(config.num_encoder)]
        )

    @staticmethod
    def extended_attention_mask(
        attention_mask: Optional[torch.Tensor],
        token_ids: torch.Tensor,
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        """Turn a 0/1 ``(S, B)`` mask into an additive ``(S, 1, 1, B)`` bias.

        Kept positions (1) map to 0 and masked positions (0) to
        ``MASK_BIAS``.  A missing mask attends everywhere.

        Raises
        ------
        ValueError
            If the mask shape differs from ``token_ids.shape``.
        """
        if attention_mask is None:
            attention_mask = torch.ones(token_ids.shape, device=token_ids.device)
        elif attention_mask.shape != token_ids.shape:
            raise ValueError(
                f"attention_mask has shape {tuple(attention_mask.shape)}, "
                f"expected {tuple(token_ids.shape)}"
            )
        seq_len, batch_size = attention_mask.shape
        mask = attention_mask.to(dtype).reshape(seq_len, 1, 1, batch_size)
        return (1.0 - mask) * MASK_BIAS

    def forward(
        self,
        token_ids: torch.Tensor,
        segment_ids: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Encode a batch.

        Parameters
        ----------
        token_ids : torch.Tensor
            Word ids ``(S, B)``.
        segment_ids : torch.Tensor
            Segment ids ``(S, B)``.
        attention_mask : torch.Tensor, optional
            0/1 mask ``(S, B)``; 1 marks keys that may be attended to.

        Returns
        -------
        torch.Tensor
            Final hidden states ``(E, S, B)``.
        """
        x = self.embed_layer(token_ids, segment_ids)
        mask_bias = self.extended_attention_mask(attention_mask, token_ids, x.dtype)
        for encoder in self.encoder_stack:
            x = encoder(x, mask_bias)
        return x


# ═══════════════════════════════════════════════════════════════════════
#  Pretraining Heads
# ═══════════════════════════════════════════════════════════════════════


class Pooler(nn.Module):
    """``tanh(W h_CLS + b)`` over the first sequence position: ``(E, S, B) -> (E, B)``."""

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        self.linear = Linear(
            config.embed_size, config.embed_size,
            device=config.device, dtype=config.torch_dtype,
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Encoder output ``(E, S, B)``.

        Returns
        -------
        torch.Tensor
            Pooled first-position vectors ``(E, B)``.
        """
        cls = x.select(SEQ_AXIS, 0)                      # (E, B)
        return torch.tanh(self.linear(cls))


class NSPHead(nn.Module):
    """Binary next-sentence logits: ``(E, B) -> (2, B)``."""

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        self.linear = Linear(
            config.embed_size, 2, device=config.device, dtype=config.torch_dtype,
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Pooled ``(E, B)`` vectors to ``(2, B)`` logits."""
        return self.linear(x)


class MLMHead(nn.Module):
    """Masked-LM logits at every position: ``(E, S, B) -> (V, S, B)``.

    Dense (with the configured activation, no dropout) → LayerNorm →
    projection to the vocabulary.  When ``embedding_matrix`` is given the
    projection reuses that ``(E, V)`` word table transposed and only the
    output bias is owned here.
    """

    def __init__(
        self,
        config: BertConfig,
        embedding_matrix: Optional[nn.Parameter] = None,
    ) -> None:
        super().__init__()
        kw = dict(device=config.device, dtype=config.torch_dtype)
        self.dense = Dense(
            config.embed_size, config.embed_size,
            pdrop=0.0, activation=config.activation_fn, **kw,
        )
        self.layer_norm = LayerNormalization(config.embed_size, eps=config.layer_norm_eps, **kw)

        if embedding_matrix is None:
            self.linear = Linear(config.embed_size, config.vocab_size, **kw)
            self.embedding_matrix = None
        else:
            if tuple(embedding_matrix.shape) != (config.embed_size, config.vocab_size):
                raise ConfigurationError(
                    f"Tied embedding matrix has shape {tuple(embedding_matrix.shape)}, "
                    f"expected {(config.embed_size, config.vocab_size)}"
                )
            self.linear = None
            self.embedding_matrix = embedding_matrix
            self.b = nn.Parameter(torch.zeros(config.vocab_size, **kw))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Encoder output ``(E, S, B)``.

        Returns
        -------
        torch.Tensor
            Unnormalized vocabulary logits ``(V, S, B)``.
        """
        x = self.layer_norm(self.dense(x))
        if self.embedding_matrix is None:
            return self.linear(x)
        # (E, V)^T @ (E, S, B) -> (V, S, B)
        return matmul(self.embedding_matrix.t(), x) + broadcast_features(self.b, x.dim())


# ═══════════════════════════════════════════════════════════════════════
#  Losses
# ═══════════════════════════════════════════════════════════════════════


def _check_label_range(labels: torch.Tensor, num_classes: int, name: str) -> None:
    if labels.numel() == 0:
        return
    low, high = int(labels.min()), int(labels.max())
    if low < 0 or high >= num_classes:
        raise ValueError(
            f"{name} labels must lie in [0, {num_classes}), got values in [{low}, {high}]"
        )


def masked_lm_loss(logits: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
    """Negative log-likelihood over the labelled positions only.

    Parameters
    ----------
    logits : torch.Tensor
        Vocabulary logits ``(V, S, B)``.
    labels : torch.Tensor
        Target ids ``(S, B)``; ``MLM_IGNORE_INDEX`` marks positions that
        are not prediction targets.

    Returns
    -------
    torch.Tensor
        Scalar mean loss.  Exactly zero (but still attached to the graph)
        when no position carries a label.

    Raises
    ------
    ValueError
        If a label other than ``MLM_IGNORE_INDEX`` falls outside ``[0, V)``.
    """
    logits = logits.reshape(logits.shape[0], -1)         # (V, S*B)
    labels = labels.reshape(-1)                          # (S*B,)
    keep = labels != MLM_IGNORE_INDEX
    if not bool(keep.any()):
        return logits.sum() * 0.0
    targets = labels[keep]
    _check_label_range(targets, logits.shape[0], "MLM")
    return F.cross_entropy(logits[:, keep].t(), targets)


def next_sentence_loss(logits: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
    """Negative log-likelihood of ``(2, B)`` logits against ``(B,)`` labels.

    Every label must be 0 or 1; anything else raises ``ValueError``.
    """
    _check_label_range(labels, logits.shape[0], "NSP")
    return F.cross_entropy(logits.t(), labels)


class PreTrainingOutput(NamedTuple):
    """Combined loss plus the pieces it was built from."""

    loss: torch.Tensor
    mlm_loss: torch.Tensor
    nsp_loss: torch.Tensor
    mlm_logits: torch.Tensor     # (V, S, B)
    nsp_logits: torch.Tensor     # (2, B)


class BertPreTraining(nn.Module):
    """Bert with the MLM and NSP heads; the forward pass returns the loss.

    ``loss = mlm_loss + nsp_loss`` (unweighted).  There is no prediction
    path: this model exists to be pretrained.

    Parameters
    ----------
    config : BertConfig
        Full model configuration.  With ``tie_word_embeddings`` the MLM
        projection shares the word-embedding table.
    """

    def __init__(self, config: BertConfig) -> None:
        super().__init__()
        self.bert = Bert(config)
        self.pooler = Pooler(config)
        self.nsp = NSPHead(config)
        tied = self.bert.embed_layer.wordpiece.embedding_matrix if config.tie_word_embeddings else None
        self.mlm = MLMHead(config, embedding_matrix=tied)

    def losses(
        self,
        token_ids: torch.Tensor,
        segment_ids: torch.Tensor,
        mlm_labels: torch.Tensor,
        nsp_labels: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
    ) -> PreTrainingOutput:
        """Run the model and return the combined loss with its parts.

        Parameters
        ----------
        token_ids : torch.Tensor
            ``(S, B)`` word ids.
        segment_ids : torch.Tensor
            ``(S, B)`` segment ids.
        mlm_labels : torch.Tensor
            ``(S, B)`` original ids at masked positions, ``-1`` elsewhere.
        nsp_labels : torch.Tensor
            ``(B,)`` 1 if the second span follows the first, else 0.
        attention_mask : torch.Tensor, optional
            ``(S, B)`` of 0/1; 1 = attend.

        Returns
        -------
        PreTrainingOutput
        """
        x = self.bert(token_ids, segment_ids, attention_mask=attention_mask)
        nsp_logits = self.nsp(self.pooler(x))                # (2, B)
        mlm_logits = self.mlm(x)                             # (V, S, B)

        nsp_loss = next_sentence_loss(nsp_logits, nsp_labels)
        mlm_loss = masked_lm_loss(mlm_logits, mlm_labels)
        return PreTrainingOutput(mlm_loss + nsp_loss, mlm_loss, nsp_loss, mlm_logits, nsp_logits)

    def forward(
        self,
        token_ids: torch.Tensor,
        segment_ids: torch.Tensor,
        mlm_labels: torch.Tensor,
        nsp_labels: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Return the scalar ``mlm_loss + nsp_loss``; see :meth:`losses` for the parts."""
        return self.losses(
            token_ids, segment_ids, mlm_labels, nsp_labels, attention_mask=attention_mask
        ).loss


# ═══════════════════════════════════════════════════════════════════════
#  Parameter Initialization
# ═══════════════════════════════════════════════════════════════════════


def param_init(m: nn.Module) -> None:
    """Initialize model parameters.

    Initialization strategy:
    - **Linear layers**: Truncated normal with std = sqrt(2 / (fan_in + fan_out))
      (Xavier-style, truncated at ±3σ), zero bias
    - **Embedding tables**: the same Xavier-style truncated normal
    - **LayerNormalization**: gamma ones, beta zeros

    Parameters
    ----------
    m : nn.Module
        Module to initialize (called via ``model.apply(param_init)``).
    """
    if isinstance(m, Linear):
        fan_out, fan_in = m.W.shape
        std = (2.0 / (fan_in + fan_out)) ** 0.5
        torch.nn.init.trunc_normal_(m.W, 0.0, std, -3 * std, 3 * std)
        torch.nn.init.zeros_(m.b)
    elif isinstance(m, Embedding):
        std = (2.0 / (m.num_embeddings + m.embedding_dim)) ** 0.5
        torch.nn.init.trunc_normal_(m.embedding_matrix, 0.0, std, -3 * std, 3 * std)
    elif isinstance(m, LayerNormalization):
        torch.nn.init.ones_(m.gamma)
        torch.nn.init.zeros_(m.beta)


# ═══════════════════════════════════════════════════════════════════════
#  Model Factory
# ═══════════════════════════════════════════════════════════════════════


def build_bert(config: BertConfig) -> Bert:
    """Validate ``config`` and build an initialized encoder (no heads)."""
    model = Bert(config.validate())
    model.apply(param_init)
    logger.debug("Built Bert: %d encoder blocks, %s parameters",
                 len(model.encoder_stack), f"{count_parameters(model):,d}")
    return model


def build_bert_pretraining(config: BertConfig) -> BertPreTraining:
    """Validate ``config`` and build an initialized pretraining model.

    Parameters
    ----------
    config : BertConfig
        Model configuration.

    Returns
    -------
    BertPreTraining
        Model with every parameter initialized by :func:`param_init`.

    Raises
    ------
    ConfigurationError
        If the configuration cannot produce a valid model.
    """
    model = BertPreTraining(config.validate())
    model.apply(param_init)
    logger.info("Built BertPreTraining: E=%d, N=%d, %d encoder blocks, %s parameters",
                config.embed_size, config.num_heads, config.num_encoder,
                f"{count_parameters(model):,d}")
    return model


def count_parameters(model: nn.Module) -> int:
    """Number of unique trainable scalars (tied tensors counted once)."""
    return sum(p.numel() for p in model.parameters())


def model_summary(model: BertPreTraining) -> str:
    """Generate a human-readable summary of model parameters.

    Parameters
    ----------
    model : BertPreTraining
        The model to summarize.

    Returns
    -------
    str
        Formatted string with parameter counts per component.
    """
    lines = ["=" * 60, "MODEL SUMMARY", "=" * 60]

    components = {
        "Embeddings": model.bert.embed_layer,
        "Encoder Stack": model.bert.encoder_stack,
        "Pooler": model.pooler,
        "NSP Head": model.nsp,
        "MLM Head": model.mlm,
    }

    total = 0
    for name, module in components.items():
        params = sum(p.numel() for p in module.parameters())
        total += params
        lines.append(f"  {name:25s} {params:>12,d}")

    unique = count_parameters(model)

    lines.append("-" * 60)
    lines.append(f"  {'Total (per component)':25s} {total:>12,d}")
    lines.append(f"  {'Unique (weight-tied)':25s} {unique:>12,d}")
    lines.append("=" * 60)

    return "\n".join(lines)
