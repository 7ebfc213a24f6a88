"""
Tensor Helpers for Feature-First Layouts
========================================

Every hidden state in this package is laid out **feature-first**::

    (E, S, B)    embedding, sequence position, batch

so a weight matrix multiplies from the left (``W @ x``) and per-feature
parameters broadcast along axis 0.  PyTorch's own primitives assume the
opposite convention (features last, batch first), so this module holds the
small adapters the layers need, plus the named axis constants that keep
axis numbers out of the layer code.

Shape Legend
------------
- ``V`` vocabulary size
- ``E`` embedding size
- ``S`` sequence length
- ``B`` batch size
- ``H`` head size
- ``N`` number of heads (``E = H * N``)
"""

from __future__ import annotations

import torch


# ═══════════════════════════════════════════════════════════════════════
#  Axis Names
# ═══════════════════════════════════════════════════════════════════════

FEATURE_AXIS = 0    # E
SEQ_AXIS = 1        # S
BATCH_AXIS = 2      # B

# Attention scores are (S_k, S_q, N*B): keys run along the first axis.
KEY_AXIS = 0


# ═══════════════════════════════════════════════════════════════════════
#  Matrix Products
# ═══════════════════════════════════════════════════════════════════════


def matmul(w: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """Left-multiply a feature-first tensor of any rank by a matrix.

    The trailing axes of ``x`` are folded into one, multiplied, and
    unfolded again::

        (out, in) @ (in, S, B) -> (out, S, B)

    Parameters
    ----------
    w : torch.Tensor
        Matrix of shape ``(out, in)``.
    x : torch.Tensor
        Tensor of shape ``(in, *rest)``.

    Returns
    -------
    torch.Tensor
        Tensor of shape ``(out, *rest)``.
    """
    rest = x.shape[1:]
    y = w @ x.reshape(x.shape[0], -1)
    return y.reshape(w.shape[0], *rest)


def bmm(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Batched matrix multiply with the batch on the **trailing** axis.

    ``torch.bmm`` batches over the leading axis, so both operands are
    moved batch-first, multiplied, and moved back::

        (M, K, batch) x (K, P, batch) -> (M, P, batch)
    """
    out = torch.bmm(a.permute(2, 0, 1), b.permute(2, 0, 1))
    return out.permute(1, 2, 0)


# ═══════════════════════════════════════════════════════════════════════
#  Elementwise Helpers
# ═══════════════════════════════════════════════════════════════════════


def softmax(x: torch.Tensor, dim: int) -> torch.Tensor:
    """Numerically stable softmax (from scratch).

    Subtracts the max value before exponentiation to prevent overflow::

        softmax(x)_i = exp(x_i - max(x)) / sum(exp(x_j - max(x)))

    Parameters
    ----------
    x : torch.Tensor
        Input logits.
    dim : int
        Dimension along which to compute softmax.

    Returns
    -------
    torch.Tensor
        Probability distribution (same shape as input).
    """
    max_val = torch.max(x, dim=dim, keepdim=True).values
    x_shifted = x - max_val
    num = torch.exp(x_shifted)
    den = torch.sum(num, dim=dim, keepdim=True)
    return num / den


def broadcast_features(v: torch.Tensor, ndim: int) -> torch.Tensor:
    """View a per-feature vector ``(F,)`` as ``(F, 1, ..., 1)``.

    The result has ``ndim`` axes and broadcasts over every trailing axis
    of a feature-first tensor of that rank.
    """
    return v.view(v.shape[0], *([1] * (ndim - 1)))
