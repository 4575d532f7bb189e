"""Tests for the vocabulary, state containers, forward pass and SGD step."""

import numpy as np
import pytest
from types import SimpleNamespace

import rnn_tree_lm as rtl
from rnn_tree_lm import (
    Vocabulary, Model, BpttHistory, RnnState, build_Model,
    add_word_to_vocabulary, add_label_to_vocabulary,
    search_word_in_vocabulary, search_label_in_vocabulary,
    assign_word_classes, index_word_classes,
    update_feature_label_vector, reset_all_rnn_activations,
    forward_propagate_one_step, forward_propagate_word_history, word_history_at,
    word_log_probability, shift_bptt_history, bptt_slot,
    back_propagate_errors_then_one_step_gradient_descent,
    run_discounted_backpropagation, _bptt_replay_kernel, _copy_slots,
    flush_bptt_block, clear_bptt_history,
)


WORDS = ('</s>', '<unk>', 'the', 'cat', 'sat', 'on', 'mat')
LABELS = ('ROOT', 'nsubj', 'det', 'prep')


def make_args(**overrides):
    defaults = dict(
        hidden=8, compression=0, num_classes=3, direct=0, direct_order=3,
        bptt=0, bptt_block=1, feature_labels_type=0, feature_gamma=0.5,
        alpha=0.1, beta=0.0, min_improvement=1.003, n_best=5,
        debug=False, log_file=None, rnnlm=None, sentence_labels=None, class_file=None,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def make_vocabulary(words=WORDS, labels=LABELS, num_classes=3):
    vocab = Vocabulary()
    for i, word in enumerate(words):
        add_word_to_vocabulary(vocab, word)
        vocab.counts[i] = 10 * (len(words) - i)
    for label in labels:
        add_label_to_vocabulary(vocab, label)
    assign_word_classes(vocab, num_classes)
    return vocab


def make_model(args, vocab=None, seed=42):
    np.random.seed(seed)
    if vocab is None:
        vocab = make_vocabulary(num_classes=args.num_classes)
    m = Model(vocab, args)
    build_Model(m, args)
    return m


def weight_arrays(m):
    return {name: getattr(m.weights, name).copy() for name in rtl.RnnWeights.__slots__}


def natural_log_probability(m, last_word, word, args):
    forward_propagate_one_step(m, last_word, word, args)
    return word_log_probability(m, word) * np.log(10.0)


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

class TestVocabulary:
    def test_add_word_is_idempotent(self):
        vocab = Vocabulary()
        assert add_word_to_vocabulary(vocab, '</s>') == 0
        assert add_word_to_vocabulary(vocab, 'cat') == 1
        assert add_word_to_vocabulary(vocab, 'cat') == 1
        assert vocab.words == ['</s>', 'cat']
        assert vocab.counts == [0, 0]

    def test_search(self):
        vocab = make_vocabulary()
        assert search_word_in_vocabulary(vocab, 'cat') == 3
        assert search_word_in_vocabulary(vocab, 'dog') == -1
        assert search_label_in_vocabulary(vocab, 'det') == 2
        assert search_label_in_vocabulary(vocab, 'amod') == -1

    def test_frequency_classes_are_contiguous(self):
        vocab = make_vocabulary(num_classes=3)
        classes = vocab.class_index
        assert classes == sorted(classes)
        assert classes[0] == 0
        assert classes[-1] <= 2
        for c in range(vocab.num_classes):
            for i in range(vocab.class_start[c], vocab.class_end[c]):
                assert classes[i] == c

    def test_class_count_above_vocabulary_size(self):
        vocab = make_vocabulary(words=('</s>', '<unk>'), num_classes=5)
        assert vocab.class_end.max() == 2
        assert len(vocab.class_start) == 5

    def test_zero_counts_use_a_single_class(self):
        vocab = Vocabulary()
        add_word_to_vocabulary(vocab, '</s>')
        add_word_to_vocabulary(vocab, 'x')
        assign_word_classes(vocab, 2)
        assert vocab.class_index == [0, 0]

    def test_non_contiguous_classes_are_rejected(self):
        vocab = make_vocabulary()
        vocab.class_index = [0, 1, 0, 1, 2, 2, 2]
        with pytest.raises(ValueError):
            index_word_classes(vocab, 3)


# ---------------------------------------------------------------------------
# State containers
# ---------------------------------------------------------------------------

class TestFeatureLayer:
    def test_decay_then_set_current_label(self):
        state = RnnState(4, 2, 3, 1, 0)
        args = make_args(feature_gamma=0.5)
        update_feature_label_vector(state, 0, args)
        update_feature_label_vector(state, 2, args)
        update_feature_label_vector(state, 2, args)
        np.testing.assert_allclose(state.feature_layer, [0.25, 0.0, 1.0])

    def test_out_of_range_label_only_decays(self):
        state = RnnState(4, 2, 3, 1, 0)
        args = make_args(feature_gamma=0.5)
        update_feature_label_vector(state, 1, args)
        update_feature_label_vector(state, -1, args)
        update_feature_label_vector(state, 7, args)
        np.testing.assert_allclose(state.feature_layer, [0.0, 0.25, 0.0])
        assert np.all((state.feature_layer >= 0.0) & (state.feature_layer <= 1.0))


class TestWordHistory:
    def test_most_recent_word_first(self):
        state = RnnState(4, 2, 0, 1, 0)
        for word in [3, 5, 7]:
            forward_propagate_word_history(state, word)
        assert [word_history_at(state, k) for k in range(4)] == [7, 5, 3, 0]

    def test_ring_wraps_without_growing(self):
        state = RnnState(4, 2, 0, 1, 0)
        for word in range(rtl.MAX_NGRAM_ORDER + 3):
            forward_propagate_word_history(state, word)
        assert state.word_history.shape == (rtl.MAX_NGRAM_ORDER,)
        assert word_history_at(state, 0) == rtl.MAX_NGRAM_ORDER + 2
        assert word_history_at(state, rtl.MAX_NGRAM_ORDER - 1) == 3


class TestBpttHistory:
    def test_shift_puts_newest_step_in_slot_zero(self):
        bptt = BpttHistory(hidden_size=2, feature_size=1, num_bptt_steps=2, bptt_block_size=1)
        state = RnnState(10, 2, 1, 1, 0)
        for word in range(1, 7):
            state.hidden_layer[:] = word
            state.feature_layer[:] = word / 10
            shift_bptt_history(bptt, word, state)
            bptt.hidden_gradient[bptt_slot(bptt, 0)] = 1.0

        assert bptt.num_slots == 4
        assert bptt.history.shape == (4,)
        for k in range(bptt.num_slots):
            slot = bptt_slot(bptt, k)
            assert bptt.history[slot] == 6 - k
            np.testing.assert_array_equal(bptt.hidden_layer[slot], [6 - k, 6 - k])
            np.testing.assert_allclose(bptt.feature_layer[slot], [(6 - k) / 10])

    def test_shift_clears_gradient_of_new_slot(self):
        bptt = BpttHistory(2, 0, 1, 1)
        bptt.hidden_gradient[:] = 5.0
        shift_bptt_history(bptt, 3, RnnState(4, 2, 0, 1, 0))
        np.testing.assert_array_equal(bptt.hidden_gradient[bptt_slot(bptt, 0)], [0.0, 0.0])
        np.testing.assert_array_equal(bptt.hidden_gradient[bptt_slot(bptt, 1)], [5.0, 5.0])


# ---------------------------------------------------------------------------
# Forward propagation
# ---------------------------------------------------------------------------

class TestForwardPropagation:
    @pytest.mark.parametrize("overrides", [
        dict(),
        dict(compression=4),
        dict(direct=0.001, direct_order=3),
        dict(feature_labels_type=2),
    ])
    def test_both_softmax_blocks_are_distributions(self, overrides):
        args = make_args(**overrides)
        m = make_model(args)
        reset_all_rnn_activations(m)
        V = len(m.vocabulary.words)
        word = 4
        c = m.vocabulary.class_index[word]
        lo, hi = m.vocabulary.class_start[c], m.vocabulary.class_end[c]

        forward_propagate_one_step(m, 0, word, args)
        out = m.state.output_layer
        assert out[V:].sum() == pytest.approx(1.0)
        assert out[lo:hi].sum() == pytest.approx(1.0)
        assert np.all(out[V:] > 0.0)
        assert word_log_probability(m, word) < 0.0

    def test_oov_word_only_computes_the_class_block(self):
        args = make_args()
        m = make_model(args)
        reset_all_rnn_activations(m)
        V = len(m.vocabulary.words)
        forward_propagate_one_step(m, -1, -1, args)
        assert m.state.output_layer[V:].sum() == pytest.approx(1.0)
        np.testing.assert_array_equal(m.state.output_layer[:V], 0.0)

    def test_single_word_vocabulary_without_hidden_units_is_certain(self):
        args = make_args(hidden=0, num_classes=1)
        m = make_model(args, vocab=make_vocabulary(words=('</s>',), labels=(), num_classes=1))
        reset_all_rnn_activations(m)
        forward_propagate_one_step(m, 0, 0, args)
        np.testing.assert_array_equal(m.state.output_layer, [1.0, 1.0])
        assert word_log_probability(m, 0) == 0.0

    def test_overflowing_softmax_is_fatal(self):
        args = make_args()
        m = make_model(args)
        V = len(m.vocabulary.words)
        m.weights.hidden2output[V:] = 1e6
        reset_all_rnn_activations(m)
        with np.errstate(over='ignore', invalid='ignore'):
            with pytest.raises(FloatingPointError):
                forward_propagate_one_step(m, 0, 3, args)

    def test_previous_word_embedding_drives_hidden_layer(self):
        args = make_args()
        m = make_model(args)
        reset_all_rnn_activations(m)
        forward_propagate_one_step(m, 2, 3, args)
        h2 = m.state.hidden_layer.copy()
        forward_propagate_one_step(m, 5, 3, args)
        assert not np.allclose(h2, m.state.hidden_layer)
        expected = 1.0 / (1.0 + np.exp(-m.weights.input2hidden[5]))
        np.testing.assert_allclose(m.state.hidden_layer, expected)


# ---------------------------------------------------------------------------
# Backpropagation and SGD
# ---------------------------------------------------------------------------

class TestGradientDescent:
    def test_updates_follow_the_log_likelihood_gradient(self):
        """Without BPTT or decay, each update is lr times d log P / dW."""
        args = make_args(feature_labels_type=2, beta=0.0)
        m = make_model(args)
        rng = np.random.RandomState(0)
        m.state.recurrent_layer[:] = rng.rand(args.hidden)
        m.state.feature_layer[:] = rng.rand(len(LABELS))
        last_word, word = 2, 4
        lr = m.learning_rate
        original = _copy_slots(m.weights)

        forward_propagate_one_step(m, last_word, word, args)
        back_propagate_errors_then_one_step_gradient_descent(m, last_word, word, args)
        updated = _copy_slots(m.weights)

        eps = 1e-6
        for name in ['hidden2output', 'recurrent2hidden', 'feature2hidden', 'input2hidden']:
            delta = (getattr(updated, name) - getattr(original, name)) / lr
            numeric = np.zeros_like(delta)
            m.weights = _copy_slots(original)
            W = getattr(m.weights, name)
            rows = [last_word] if name == 'input2hidden' else range(W.shape[0])
            for i in rows:
                for j in range(W.shape[1]):
                    W[i, j] += eps
                    plus = natural_log_probability(m, last_word, word, args)
                    W[i, j] -= 2 * eps
                    minus = natural_log_probability(m, last_word, word, args)
                    W[i, j] += eps
                    numeric[i, j] = (plus - minus) / (2 * eps)
            np.testing.assert_allclose(delta, numeric, rtol=1e-4, atol=1e-7, err_msg=name)

    def test_oov_target_leaves_weights_untouched(self):
        args = make_args()
        m = make_model(args)
        before = weight_arrays(m)
        forward_propagate_one_step(m, 2, -1, args)
        back_propagate_errors_then_one_step_gradient_descent(m, 2, -1, args)
        for name, array in before.items():
            np.testing.assert_array_equal(getattr(m.weights, name), array)

    def test_direct_connections_are_trained(self):
        args = make_args(direct=0.001)
        m = make_model(args)
        assert m.weights.direct.size == 1000
        forward_propagate_one_step(m, 2, 3, args)
        back_propagate_errors_then_one_step_gradient_descent(m, 2, 3, args)
        assert np.count_nonzero(m.weights.direct) > 0
        forward_propagate_one_step(m, 2, 3, args)
        V = len(m.vocabulary.words)
        assert m.state.output_layer[V:].sum() == pytest.approx(1.0)


class TestDiscountedLearningRate:
    @pytest.mark.parametrize("discount", [0.0, 0.25, 0.5, 1.0, 3.0])
    def test_learning_rate_is_restored(self, discount):
        args = make_args()
        m = make_model(args)
        m.learning_rate = 0.137
        forward_propagate_one_step(m, 2, 3, args)
        run_discounted_backpropagation(m, 2, 3, discount, args)
        assert m.learning_rate == 0.137

    def test_learning_rate_is_restored_when_backpropagation_fails(self, monkeypatch):
        args = make_args()
        m = make_model(args)
        m.learning_rate = 0.2

        def boom(m, last_word, word, args):
            assert m.learning_rate == pytest.approx(0.1)
            raise FloatingPointError("boom")

        monkeypatch.setattr(rtl, 'back_propagate_errors_then_one_step_gradient_descent', boom)
        with pytest.raises(FloatingPointError):
            run_discounted_backpropagation(m, 2, 3, 0.5, args)
        assert m.learning_rate == 0.2

    @pytest.mark.parametrize("bptt", [0, 2])
    def test_half_discount_gives_half_the_update(self, bptt):
        args = make_args(bptt=bptt, beta=1e-7, feature_labels_type=2)
        deltas = {}
        for discount in (0.5, 1.0):
            m = make_model(args, seed=7)
            reset_all_rnn_activations(m)
            before = weight_arrays(m)
            forward_propagate_one_step(m, 2, 3, args)
            if bptt:
                shift_bptt_history(m.bptt, 2, m.state)
            run_discounted_backpropagation(m, 2, 3, discount, args)
            deltas[discount] = {name: getattr(m.weights, name) - array
                                for name, array in before.items()}
        for name in deltas[1.0]:
            np.testing.assert_allclose(2 * deltas[0.5][name], deltas[1.0][name],
                                       rtol=1e-9, atol=1e-15, err_msg=name)


class TestBackPropagationThroughTime:
    def test_first_step_after_reset_matches_single_step_update(self):
        """With an empty ring, BPTT has nothing older to replay."""
        results = []
        for bptt in (0, 3):
            args = make_args(bptt=bptt, beta=1e-7, feature_labels_type=2)
            m = make_model(args, seed=11)
            reset_all_rnn_activations(m)
            update_feature_label_vector(m.state, 1, args)
            forward_propagate_one_step(m, 0, 4, args)
            if bptt:
                shift_bptt_history(m.bptt, 0, m.state)
            back_propagate_errors_then_one_step_gradient_descent(m, 0, 4, args)
            results.append(weight_arrays(m))
        for name in results[0]:
            np.testing.assert_allclose(results[0][name], results[1][name],
                                       rtol=1e-12, atol=1e-15, err_msg=name)

    def test_replay_reaches_older_inputs(self):
        args = make_args(bptt=2)
        m = make_model(args, seed=3)
        reset_all_rnn_activations(m)
        last_word = 0
        for word in [2, 3, 4]:
            forward_propagate_one_step(m, last_word, word, args)
            shift_bptt_history(m.bptt, last_word, m.state)
            if word == 4:
                embedding_of_2 = m.weights.input2hidden[2].copy()
            back_propagate_errors_then_one_step_gradient_descent(m, last_word, word, args)
            rtl.forward_propagate_recurrent_connection_only(m.state)
            last_word = forward_propagate_word_history(m.state, word)
        # Word 2 was the input two steps back; predicting 4 still updates it
        assert not np.array_equal(m.weights.input2hidden[2], embedding_of_2)
        np.testing.assert_array_equal(m.bptt.hidden_gradient, 0.0)

    def test_block_defers_recurrent_update(self):
        args = make_args(bptt=1, bptt_block=2)
        m = make_model(args, seed=5)
        reset_all_rnn_activations(m)
        recurrent = m.weights.recurrent2hidden.copy()
        forward_propagate_one_step(m, 0, 2, args)
        shift_bptt_history(m.bptt, 0, m.state)
        back_propagate_errors_then_one_step_gradient_descent(m, 0, 2, args)
        np.testing.assert_array_equal(m.weights.recurrent2hidden, recurrent)

        rtl.forward_propagate_recurrent_connection_only(m.state)
        forward_propagate_one_step(m, 2, 3, args)
        shift_bptt_history(m.bptt, 2, m.state)
        back_propagate_errors_then_one_step_gradient_descent(m, 2, 3, args)
        assert not np.array_equal(m.weights.recurrent2hidden, recurrent)

    def test_flush_applies_a_partial_block(self):
        args = make_args(bptt=1, bptt_block=3, feature_labels_type=2)
        m = make_model(args, seed=5)
        reset_all_rnn_activations(m)
        last_word = 0
        for word in [2, 3]:
            forward_propagate_one_step(m, last_word, word, args)
            shift_bptt_history(m.bptt, last_word, m.state)
            back_propagate_errors_then_one_step_gradient_descent(m, last_word, word, args)
            rtl.forward_propagate_recurrent_connection_only(m.state)
            last_word = forward_propagate_word_history(m.state, word)
        embedding = m.weights.input2hidden[0].copy()
        recurrent = m.weights.recurrent2hidden.copy()
        assert m.bptt.counter == 2

        flush_bptt_block(m, args)
        assert m.bptt.counter == 0
        assert not np.array_equal(m.weights.input2hidden[0], embedding)
        assert not np.array_equal(m.weights.recurrent2hidden, recurrent)
        np.testing.assert_array_equal(m.bptt.hidden_gradient, 0.0)

        # Nothing pending: a second flush is a no-op
        embedding = m.weights.input2hidden.copy()
        flush_bptt_block(m, args)
        np.testing.assert_array_equal(m.weights.input2hidden, embedding)

    def test_clearing_the_ring_restarts_the_block(self):
        bptt = BpttHistory(2, 0, 1, 2)
        bptt.counter = 1
        clear_bptt_history(bptt)
        assert bptt.counter == 0

    @pytest.mark.parametrize("hidden,features,window", [(4, 0, 2), (6, 3, 4), (1, 2, 1)])
    def test_replay_kernel_matches_numpy(self, hidden, features, window):
        rng = np.random.RandomState(hidden + features + window)
        num_slots = window + 1
        W_rec = rng.randn(hidden, hidden)
        layer = rng.rand(num_slots, hidden)
        stored_grad = rng.randn(num_slots, hidden)
        feats = rng.rand(num_slots, features)
        slots = np.roll(np.arange(num_slots), 2).astype(np.int64)
        g0 = rng.randn(hidden)

        g = g0.copy()
        rec_grad = np.zeros((hidden, hidden))
        feat_grad = np.zeros((hidden, features))
        input_grad = np.zeros((window, hidden))
        _bptt_replay_kernel(W_rec, layer, stored_grad, feats, slots, window,
                            g, rec_grad, feat_grad, input_grad)

        ref_g = g0.copy()
        ref_rec = np.zeros((hidden, hidden))
        ref_feat = np.zeros((hidden, features))
        for k in range(window):
            s, p = slots[k], slots[k + 1]
            ref_g = ref_g * layer[s] * (1.0 - layer[s])
            np.testing.assert_allclose(input_grad[k], ref_g)
            ref_rec += np.outer(ref_g, layer[p])
            ref_feat += np.outer(ref_g, feats[s])
            ref_g = W_rec.T @ ref_g + stored_grad[p]

        np.testing.assert_allclose(rec_grad, ref_rec, rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(feat_grad, ref_feat, rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(g, ref_g, rtol=1e-12, atol=1e-12)
