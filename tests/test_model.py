"""
Unit Tests for Model Components
===============================

Tests cover shape correctness, mathematical properties, and the head
split/merge choreography for the building blocks of the encoder.

Run with::

    python -m pytest tests/ -v
"""

import dataclasses
import math

import pytest
import torch

from bert_pretraining.config import BertConfig, ConfigurationError, get_activation
from bert_pretraining.model import (
    MASK_BIAS,
    Bert,
    Dense,
    EmbedLayer,
    Embedding,
    Encoder,
    FeedForward,
    LayerNormalization,
    Linear,
    SelfAttention,
    param_init,
)
from bert_pretraining.ops import KEY_AXIS, bmm, softmax


# ── Test Fixtures ────────────────────────────────────────────────────

BATCH_SIZE = 2
SEQ_LEN = 6
EMBED_SIZE = 16
NUM_HEADS = 4
HEAD_SIZE = EMBED_SIZE // NUM_HEADS
VOCAB_SIZE = 50


@pytest.fixture
def config():
    return BertConfig(
        vocab_size=VOCAB_SIZE,
        embed_size=EMBED_SIZE,
        num_heads=NUM_HEADS,
        num_encoder=2,
        ff_hidden_size=32,
        max_seq_len=16,
        seq_len=SEQ_LEN,
        batchsize=BATCH_SIZE,
        pdrop=0.0,
        attention_pdrop=0.0,
    )


@pytest.fixture
def sample_input():
    """Random feature-first float tensor (E, S, B)."""
    torch.manual_seed(0)
    return torch.randn(EMBED_SIZE, SEQ_LEN, BATCH_SIZE)


@pytest.fixture
def sample_ids():
    """Random integer token IDs (S, B)."""
    torch.manual_seed(1)
    return torch.randint(0, VOCAB_SIZE, (SEQ_LEN, BATCH_SIZE))


def _reference_attention(attn: SelfAttention, x: torch.Tensor, mask_bias=None) -> torch.Tensor:
    """Per-head, per-batch attention written with plain loops."""
    q, k, v = attn.query(x), attn.key(x), attn.value(x)
    context = torch.zeros_like(q)
    H = attn.head_size
    for b in range(x.shape[2]):
        for n in range(attn.num_heads):
            rows = slice(n * H, (n + 1) * H)
            scores = k[rows, :, b].T @ q[rows, :, b] / math.sqrt(H)     # (S_k, S_q)
            if mask_bias is not None:
                scores = scores + mask_bias[:, 0, 0, b].unsqueeze(1)
            weights = torch.softmax(scores, dim=0)
            context[rows, :, b] = v[rows, :, b] @ weights
    return attn.linear(context)


# ── Primitive Layers ─────────────────────────────────────────────────


class TestLinear:
    def test_output_shape_3d(self, sample_input):
        layer = Linear(EMBED_SIZE, 24)
        layer.apply(param_init)
        assert layer(sample_input).shape == (24, SEQ_LEN, BATCH_SIZE)

    def test_output_shape_2d(self):
        layer = Linear(EMBED_SIZE, 3)
        layer.apply(param_init)
        assert layer(torch.randn(EMBED_SIZE, BATCH_SIZE)).shape == (3, BATCH_SIZE)

    def test_matches_column_product(self, sample_input):
        layer = Linear(EMBED_SIZE, 5)
        layer.apply(param_init)
        with torch.no_grad():
            layer.b.copy_(torch.randn(5))
        out = layer(sample_input)
        expected = layer.W @ sample_input[:, 2, 1] + layer.b
        assert torch.allclose(out[:, 2, 1], expected, atol=1e-6)

    def test_bias_broadcasts_over_trailing_axes(self, sample_input):
        layer = Linear(EMBED_SIZE, 4)
        with torch.no_grad():
            layer.W.zero_()
            layer.b.copy_(torch.arange(4.0))
        out = layer(sample_input)
        expected = torch.arange(4.0).view(4, 1, 1).expand(4, SEQ_LEN, BATCH_SIZE)
        assert torch.equal(out, expected)

    def test_parameters(self):
        layer = Linear(EMBED_SIZE, 4)
        shapes = sorted(tuple(p.shape) for p in layer.parameters())
        assert shapes == [(4,), (4, EMBED_SIZE)]


class TestDense:
    def test_identity_activation_by_default(self, sample_input):
        dense = Dense(EMBED_SIZE, 8)
        dense.apply(param_init)
        assert dense.activation is get_activation("identity")
        assert torch.allclose(dense(sample_input), dense.linear(sample_input))

    def test_applies_activation(self, sample_input):
        dense = Dense(EMBED_SIZE, 8, activation=torch.relu)
        dense.apply(param_init)
        out = dense(sample_input)
        assert torch.all(out >= 0)
        assert torch.allclose(out, torch.relu(dense.linear(sample_input)))


class TestEmbedding:
    def test_output_shape(self, sample_ids):
        embed = Embedding(VOCAB_SIZE, EMBED_SIZE)
        embed.apply(param_init)
        assert embed(sample_ids).shape == (EMBED_SIZE, SEQ_LEN, BATCH_SIZE)

    def test_lookup_selects_columns(self):
        embed = Embedding(VOCAB_SIZE, EMBED_SIZE)
        embed.apply(param_init)
        ids = torch.tensor([[0, 3], [7, 0]])
        out = embed(ids)
        assert torch.equal(out[:, 0, 0], embed.embedding_matrix[:, 0])
        assert torch.equal(out[:, 0, 1], embed.embedding_matrix[:, 3])
        assert torch.equal(out[:, 1, 0], embed.embedding_matrix[:, 7])

    def test_table_is_feature_first(self):
        embed = Embedding(VOCAB_SIZE, EMBED_SIZE)
        assert embed.embedding_matrix.shape == (EMBED_SIZE, VOCAB_SIZE)


# ── Normalization ────────────────────────────────────────────────────


class TestLayerNormalization:
    @pytest.mark.parametrize("shape", [(EMBED_SIZE, BATCH_SIZE), (EMBED_SIZE, SEQ_LEN, BATCH_SIZE)])
    def test_zero_mean_unit_variance_over_features(self, shape):
        torch.manual_seed(0)
        x = torch.randn(*shape) * 5.0 + 3.0
        out = LayerNormalization(EMBED_SIZE)(x)
        mean = out.mean(dim=0)
        var = out.var(dim=0, unbiased=False)
        assert out.shape == x.shape
        assert torch.allclose(mean, torch.zeros_like(mean), atol=1e-5)
        assert torch.allclose(var, torch.ones_like(var), atol=1e-4)

    def test_scale_and_shift(self, sample_input):
        norm = LayerNormalization(EMBED_SIZE)
        with torch.no_grad():
            norm.gamma.fill_(2.0)
            norm.beta.fill_(1.0)
        out = norm(sample_input)
        assert torch.allclose(out.mean(dim=0), torch.ones(SEQ_LEN, BATCH_SIZE), atol=1e-5)
        assert torch.allclose(out.var(dim=0, unbiased=False), torch.full((SEQ_LEN, BATCH_SIZE), 4.0), atol=1e-3)

    def test_positions_are_independent(self, sample_input):
        norm = LayerNormalization(EMBED_SIZE)
        full = norm(sample_input)
        single = norm(sample_input[:, 3:4, 1:2])
        assert torch.allclose(full[:, 3:4, 1:2], single, atol=1e-6)

    def test_constant_input_is_finite(self):
        out = LayerNormalization(EMBED_SIZE)(torch.full((EMBED_SIZE, 3), 7.0))
        assert torch.all(torch.isfinite(out))
        assert torch.allclose(out, torch.zeros_like(out))

    def test_preserves_dtype_fp16(self, sample_input):
        norm = LayerNormalization(EMBED_SIZE, dtype=torch.float16)
        out = norm(sample_input.half())
        assert out.dtype == torch.float16


# ── Tensor Helpers ───────────────────────────────────────────────────


class TestSoftmax:
    def test_sums_to_one(self):
        x = torch.randn(10, 3)
        s = softmax(x, dim=0)
        assert torch.allclose(s.sum(dim=0), torch.ones(3), atol=1e-5)

    def test_numerical_stability(self):
        # Very large values should not cause overflow
        x = torch.tensor([[1000.0], [1001.0], [1002.0]])
        s = softmax(x, dim=0)
        assert not torch.any(torch.isnan(s))
        assert not torch.any(torch.isinf(s))


class TestBmm:
    def test_batch_on_trailing_axis(self):
        a = torch.randn(3, 4, 5)
        b = torch.randn(4, 2, 5)
        out = bmm(a, b)
        assert out.shape == (3, 2, 5)
        for i in range(5):
            assert torch.allclose(out[:, :, i], a[:, :, i] @ b[:, :, i], atol=1e-6)


# ── Embeddings ───────────────────────────────────────────────────────


class TestEmbedLayer:
    def test_output_shape(self, config, sample_ids):
        embed = EmbedLayer(config)
        embed.apply(param_init)
        segments = torch.zeros_like(sample_ids)
        assert embed(sample_ids, segments).shape == (EMBED_SIZE, SEQ_LEN, BATCH_SIZE)

    def test_position_ids(self):
        positions = EmbedLayer.position_ids(4, 3)
        assert positions.shape == (4, 3)
        for s in range(4):
            assert torch.equal(positions[s], torch.full((3,), s))

    def test_rejects_sequence_longer_than_table(self, config):
        embed = EmbedLayer(config)
        ids = torch.zeros(config.max_seq_len + 1, BATCH_SIZE, dtype=torch.long)
        with pytest.raises(ValueError, match="max_seq_len"):
            embed(ids, ids)

    def test_segment_zero_is_learned_row(self, config, sample_ids):
        embed = EmbedLayer(config)
        embed.apply(param_init)
        out = embed(sample_ids, torch.zeros_like(sample_ids))
        (out * torch.randn_like(out)).sum().backward()
        grad = embed.segment.embedding_matrix.grad
        assert grad[:, 0].abs().sum() > 0
        assert torch.equal(grad[:, 1], torch.zeros(EMBED_SIZE))

    def test_output_is_normalized(self, config, sample_ids):
        embed = EmbedLayer(config)
        embed.apply(param_init)
        out = embed(sample_ids, torch.ones_like(sample_ids))
        assert torch.allclose(out.mean(dim=0), torch.zeros(SEQ_LEN, BATCH_SIZE), atol=1e-5)

    def test_dropout_only_in_training(self, config, sample_ids):
        embed = EmbedLayer(dataclasses.replace(config, pdrop=0.5))
        embed.apply(param_init)
        segments = torch.zeros_like(sample_ids)
        positions = EmbedLayer.position_ids(SEQ_LEN, BATCH_SIZE)
        summed = (
            embed.wordpiece(sample_ids)
            + embed.positional(positions)
            + embed.segment(segments)
        )

        embed.eval()
        out = embed(sample_ids, segments)
        assert torch.equal(out, embed(sample_ids, segments))
        assert torch.allclose(out, embed.layer_norm(summed), atol=1e-6)

        embed.train()
        torch.manual_seed(0)
        assert not torch.allclose(embed(sample_ids, segments), out)


# ── Attention ────────────────────────────────────────────────────────


class TestSelfAttentionConstruction:
    @pytest.mark.parametrize("embed_size,num_heads", [(8, 2), (12, 3), (16, 4), (36, 4), (768, 12)])
    def test_valid_configurations(self, embed_size, num_heads):
        attn = SelfAttention(BertConfig(embed_size=embed_size, num_heads=num_heads))
        assert attn.head_size * attn.num_heads == embed_size
        assert attn.head_size_sqrt ** 2 == attn.head_size

    @pytest.mark.parametrize("embed_size,num_heads", [(4, 3), (10, 4), (768, 7)])
    def test_rejects_indivisible_embed_size(self, embed_size, num_heads):
        with pytest.raises(ConfigurationError, match="divisible"):
            SelfAttention(BertConfig(embed_size=embed_size, num_heads=num_heads))

    @pytest.mark.parametrize("embed_size,num_heads", [(6, 3), (12, 4), (10, 5), (768, 8)])
    def test_rejects_non_square_head_size(self, embed_size, num_heads):
        with pytest.raises(ConfigurationError, match="perfect square"):
            SelfAttention(BertConfig(embed_size=embed_size, num_heads=num_heads))


class TestSelfAttention:
    def test_output_shape(self, config, sample_input):
        attn = SelfAttention(config)
        attn.apply(param_init)
        assert attn(sample_input).shape == sample_input.shape

    def test_split_shape(self, config, sample_input):
        attn = SelfAttention(config)
        assert attn.split_heads(sample_input).shape == (HEAD_SIZE, SEQ_LEN, NUM_HEADS * BATCH_SIZE)

    def test_split_then_merge_is_identity(self, config, sample_input):
        attn = SelfAttention(config)
        assert torch.equal(attn.merge_heads(attn.split_heads(sample_input)), sample_input)

    def test_heads_own_contiguous_feature_slices(self, config, sample_input):
        attn = SelfAttention(config)
        split = attn.split_heads(sample_input)
        for n in range(NUM_HEADS):
            for b in range(BATCH_SIZE):
                expected = sample_input[n * HEAD_SIZE:(n + 1) * HEAD_SIZE, :, b]
                assert torch.equal(split[:, :, n * BATCH_SIZE + b], expected)

    def test_matches_per_head_reference(self, config, sample_input):
        attn = SelfAttention(config)
        attn.apply(param_init)
        assert torch.allclose(attn(sample_input), _reference_attention(attn, sample_input), atol=1e-5)

    def test_matches_reference_with_mask(self, config, sample_input):
        attn = SelfAttention(config)
        attn.apply(param_init)
        mask = torch.ones(SEQ_LEN, BATCH_SIZE)
        mask[-2:, 1] = 0
        bias = Bert.extended_attention_mask(mask, mask)
        expected = _reference_attention(attn, sample_input, bias)
        assert torch.allclose(attn(sample_input, bias), expected, atol=1e-5)

    @pytest.mark.parametrize("fill", ["random", "zeros", "ones"])
    def test_weights_sum_to_one_over_keys(self, config, sample_input, fill):
        attn = SelfAttention(config)
        attn.apply(param_init)
        if fill == "random":
            torch.manual_seed(3)
            mask = (torch.rand(SEQ_LEN, BATCH_SIZE) > 0.5).float()
        elif fill == "zeros":
            mask = torch.zeros(SEQ_LEN, BATCH_SIZE)
        else:
            mask = torch.ones(SEQ_LEN, BATCH_SIZE)
        bias = Bert.extended_attention_mask(mask, mask)
        _, weights = attn(sample_input, bias, return_weights=True)
        assert weights.shape == (SEQ_LEN, SEQ_LEN, NUM_HEADS, BATCH_SIZE)
        sums = weights.sum(dim=KEY_AXIS)
        assert torch.allclose(sums, torch.ones_like(sums), atol=1e-5)

    def test_masked_keys_receive_no_weight(self, config, sample_input):
        attn = SelfAttention(config)
        attn.apply(param_init)
        mask = torch.ones(SEQ_LEN, BATCH_SIZE)
        mask[-2:, 0] = 0
        bias = Bert.extended_attention_mask(mask, mask)
        _, weights = attn(sample_input, bias, return_weights=True)
        assert torch.all(weights[-2:, :, :, 0] < 1e-6)
        assert torch.all(weights[-2:, :, :, 1] > 0)

    def test_all_ones_mask_is_no_op(self, config, sample_input):
        attn = SelfAttention(config)
        attn.apply(param_init)
        bias = Bert.extended_attention_mask(None, torch.zeros(SEQ_LEN, BATCH_SIZE))
        assert torch.allclose(attn(sample_input, bias), attn(sample_input), atol=1e-6)

    def test_attention_dropout_only_in_training(self, sample_input):
        cfg = BertConfig(embed_size=EMBED_SIZE, num_heads=NUM_HEADS, attention_pdrop=0.5, pdrop=0.0)
        attn = SelfAttention(cfg)
        attn.apply(param_init)
        attn.eval()
        assert torch.equal(attn(sample_input), attn(sample_input))
        attn.train()
        torch.manual_seed(0)
        first = attn(sample_input)
        torch.manual_seed(1)
        second = attn(sample_input)
        assert not torch.allclose(first, second)


# ── Feed-Forward ─────────────────────────────────────────────────────


class TestFeedForward:
    def test_output_shape(self, config, sample_input):
        ffn = FeedForward(config)
        ffn.apply(param_init)
        assert ffn(sample_input).shape == sample_input.shape

    def test_expand_activate_project(self, config, sample_input):
        ffn = FeedForward(config)
        ffn.apply(param_init)
        hidden = config.activation_fn(ffn.dense.linear(sample_input))
        assert hidden.shape == (config.ff_hidden_size, SEQ_LEN, BATCH_SIZE)
        assert torch.allclose(ffn(sample_input), ffn.linear(hidden), atol=1e-6)

    def test_dropouts_only_in_training(self, config, sample_input):
        ffn = FeedForward(dataclasses.replace(config, pdrop=0.5))
        ffn.apply(param_init)
        assert ffn.hidden_dropout.p == 0.5 and ffn.dropout.p == 0.5

        ffn.eval()
        expected = ffn.linear(config.activation_fn(ffn.dense.linear(sample_input)))
        out = ffn(sample_input)
        assert torch.equal(out, ffn(sample_input))
        assert torch.allclose(out, expected, atol=1e-6)

        ffn.train()
        torch.manual_seed(0)
        assert not torch.allclose(ffn(sample_input), out)


# ── Transformer Blocks ───────────────────────────────────────────────


class TestEncoder:
    def test_output_shape(self, config, sample_input):
        block = Encoder(config)
        block.apply(param_init)
        assert block(sample_input).shape == sample_input.shape

    def test_does_not_modify_input(self, config, sample_input):
        block = Encoder(config)
        block.apply(param_init)
        before = sample_input.clone()
        block(sample_input)
        assert torch.equal(sample_input, before)

    def test_residual_identity_with_zeroed_sublayers(self, config, sample_input):
        block = Encoder(config)
        block.apply(param_init)
        with torch.no_grad():
            for p in block.self_attention.parameters():
                p.zero_()
            for p in block.feed_forward.parameters():
                p.zero_()
            block.layer_norm1.gamma.fill_(1.5)
            block.layer_norm1.beta.fill_(0.25)
        expected = block.layer_norm2(block.layer_norm1(sample_input))
        assert torch.allclose(block(sample_input), expected, atol=1e-6)

    def test_post_norm_output_is_normalized(self, config, sample_input):
        block = Encoder(config)
        block.apply(param_init)
        out = block(sample_input)
        assert torch.allclose(out.mean(dim=0), torch.zeros(SEQ_LEN, BATCH_SIZE), atol=1e-5)


class TestBert:
    def test_output_shape(self, config, sample_ids):
        bert = Bert(config)
        bert.apply(param_init)
        out = bert(sample_ids, torch.zeros_like(sample_ids))
        assert out.shape == (EMBED_SIZE, SEQ_LEN, BATCH_SIZE)

    def test_encoder_stack_length(self, config):
        assert len(Bert(config).encoder_stack) == config.num_encoder

    def test_default_mask_bias_is_zero(self, sample_ids):
        bias = Bert.extended_attention_mask(None, sample_ids)
        assert bias.shape == (SEQ_LEN, 1, 1, BATCH_SIZE)
        assert torch.equal(bias, torch.zeros_like(bias))

    def test_mask_bias_values(self):
        mask = torch.tensor([[1, 1], [1, 0], [0, 0]])
        bias = Bert.extended_attention_mask(mask, mask)
        assert bias.shape == (3, 1, 1, 2)
        assert bias[0, 0, 0, 0] == 0 and bias[1, 0, 0, 0] == 0
        assert bias[1, 0, 0, 1] == MASK_BIAS
        assert bias[2, 0, 0, 0] == MASK_BIAS and bias[2, 0, 0, 1] == MASK_BIAS

    @pytest.mark.parametrize("shape", [(SEQ_LEN, 1), (1, BATCH_SIZE), (BATCH_SIZE, SEQ_LEN)])
    def test_mask_shape_must_match_ids(self, sample_ids, shape):
        with pytest.raises(ValueError, match="attention_mask"):
            Bert.extended_attention_mask(torch.ones(shape), sample_ids)

    def test_forward_rejects_broadcastable_mask(self, config, sample_ids):
        bert = Bert(config)
        bert.apply(param_init)
        with pytest.raises(ValueError, match="attention_mask"):
            bert(sample_ids, torch.zeros_like(sample_ids), attention_mask=torch.ones(SEQ_LEN, 1))

    def test_padded_tokens_do_not_affect_kept_positions(self, config, sample_ids):
        bert = Bert(config)
        bert.apply(param_init)
        bert.eval()
        segments = torch.zeros_like(sample_ids)
        mask = torch.ones(SEQ_LEN, BATCH_SIZE)
        mask[-2:] = 0

        changed = sample_ids.clone()
        changed[-2:] = (changed[-2:] + 1) % VOCAB_SIZE

        out = bert(sample_ids, segments, attention_mask=mask)
        out_changed = bert(changed, segments, attention_mask=mask)
        assert torch.allclose(out[:, :-2], out_changed[:, :-2], atol=1e-5)
        assert not torch.allclose(out[:, -2:], out_changed[:, -2:])
