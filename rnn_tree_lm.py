"""Recurrent neural network language model unrolled along dependency parse trees."""
"""Based on Mirowski & Vlachos (2015), Dependency Recurrent Neural Language Models
for Sentence Completion, itself built on the RNNLM toolkit (Mikolov, Zweig)."""
"""The code strives for simplicity, not efficiency."""

import argparse
import json
import math
import sys
import time

import numpy as np
from numba import njit
from tqdm import tqdm

from book_unrolls import CorpusUnrollsReader, EOS_WORD


# Index of <unk>: scored as out-of-vocabulary, like index -1
UNKNOWN_WORD_INDEX = 1

# Word history slots, bounding the order of the direct n-gram connections
MAX_NGRAM_ORDER = 20

# Configuration stored with (and restored from) a model file
MODEL_CONFIG_KEYS = ['hidden', 'compression', 'num_classes', 'direct', 'direct_order',
                     'bptt', 'bptt_block', 'feature_labels_type', 'feature_gamma',
                     'alpha', 'beta', 'min_improvement']

# Multipliers for hashing word histories into the direct connection table
PRIMES = [108641969, 116049371, 125925907, 133333309, 145678979, 175308587,
          197530793, 234567803, 251851741, 264197411, 330864029, 399999781,
          407407183, 459258997, 479012069, 545678687, 560493491, 607407037,
          629629243, 656789717, 716048933, 718518067, 725925469, 733332871,
          753085943, 755555077, 782716513, 790123909, 812345953, 819753349]


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def softmax(x):
    """In-place exponential and normalization of a block of the output layer."""
    np.exp(x, out=x)
    s = np.sum(x)
    if not np.isfinite(s) or s <= 0.0:
        raise FloatingPointError(f"softmax normalizer is {s}")
    x /= s


def sigmoid(x, out):
    np.clip(x, -50.0, 50.0, out=out)
    np.negative(out, out=out)
    np.exp(out, out=out)
    out += 1.0
    np.reciprocal(out, out=out)


def random_vector(size, scale):
    return scale * 2.0 * (np.random.rand(size) - 0.5)


def random_weights(shape):
    size = int(np.prod(shape))
    return (random_vector(size, 0.1) + random_vector(size, 0.1)
            + random_vector(size, 0.1)).reshape(shape)


def _copy_slots(obj):
    """Independent copy of a __slots__ container (arrays are duplicated)."""
    c = type(obj).__new__(type(obj))
    for name in type(obj).__slots__:
        value = getattr(obj, name)
        setattr(c, name, value.copy() if isinstance(value, np.ndarray) else value)
    return c


def exponentiate_base10(x):
    return 10.0 ** x


def perplexity_from_log_probability(log_probability, word_count):
    if word_count == 0:
        return 0.0
    return exponentiate_base10(-log_probability / word_count)


def entropy_from_log_probability(log_probability, word_count):
    if word_count == 0:
        return 0.0
    return -log_probability / math.log10(2.0) / word_count


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

class Vocabulary:
    __slots__ = ['words', 'counts', 'class_index', 'word2index',
                 'labels', 'label2index', 'num_classes', 'class_start', 'class_end',
                 'num_train_words']
    def __init__(self):
        self.words = []
        self.counts = []
        self.class_index = []
        self.word2index = {}
        self.labels = []
        self.label2index = {}
        self.num_classes = 0
        self.class_start = np.zeros(0, dtype=np.int64)
        self.class_end = np.zeros(0, dtype=np.int64)
        self.num_train_words = 0


def add_word_to_vocabulary(vocab, word):
    index = vocab.word2index.get(word)
    if index is not None:
        return index
    index = len(vocab.words)
    vocab.words.append(word)
    vocab.counts.append(0)
    vocab.class_index.append(0)
    vocab.word2index[word] = index
    return index


def search_word_in_vocabulary(vocab, word):
    return vocab.word2index.get(word, -1)


def search_label_in_vocabulary(vocab, label):
    return vocab.label2index.get(label, -1)


def add_label_to_vocabulary(vocab, label):
    index = vocab.label2index.get(label)
    if index is None:
        index = len(vocab.labels)
        vocab.labels.append(label)
        vocab.label2index[label] = index
    return index


def learn_vocabulary_from_train_file(vocab, corpus_train, corpus_valid, args):
    """Build the word and label vocabularies from the training books.

    Counting, pruning and frequency sorting are done by the corpus; the maps
    are then rebuilt with </s> at index 0, and the vocabulary is shared with
    the validation corpus. Returns False on a configuration error.
    """
    use_tree_labels = args.feature_labels_type == 1
    corpus_vocabulary = CorpusUnrollsReader(corpus_train.books, corpus_train.min_word_occurrence)
    vocab.num_train_words = corpus_vocabulary.read_vocabulary(use_tree_labels)
    corpus_train.filter_sort_vocabulary(corpus_vocabulary)

    vocab.words = []
    vocab.counts = []
    vocab.class_index = []
    vocab.word2index = {}
    vocab.labels = []
    vocab.label2index = {}

    # Classes have to be frequency-based
    if getattr(args, 'class_file', None):
        print("Class files not implemented", file=sys.stderr)
        return False

    print(f"Vocab size (before pruning): {corpus_vocabulary.num_words()}")
    print(f"Vocab size (after pruning): {corpus_train.num_words()}")
    print(f"Label vocab size: {corpus_train.num_labels()}")

    add_word_to_vocabulary(vocab, EOS_WORD)
    for k, word in enumerate(corpus_train.vocabulary_reverse):
        index = search_word_in_vocabulary(vocab, word)
        if index == -1:
            index = add_word_to_vocabulary(vocab, word)
        vocab.counts[index] = int(round(corpus_train.word_counts_discounted[k]))

    for label in corpus_train.labels_reverse:
        if search_label_in_vocabulary(vocab, label) == -1:
            add_label_to_vocabulary(vocab, label)

    corpus_valid.copy_vocabulary(corpus_train)

    print(f"Vocab size: {len(vocab.words)}")
    print(f"Label vocab size: {len(vocab.labels)}")
    print(f"Words in train file: {vocab.num_train_words}")
    return True


def assign_word_classes(vocab, num_classes):
    """Frequency-binned classes: equal slices of cumulative sqrt-unigram mass.

    Classes are assigned in index order, so each one is a contiguous range.
    """
    counts = np.asarray(vocab.counts, dtype=np.float64)
    total = counts.sum()
    if total > 0:
        mass = np.sqrt(counts / total)
        norm = mass.sum()
    a = 0
    df = 0.0
    for i in range(len(vocab.words)):
        vocab.class_index[i] = a
        if total > 0:
            df = min(df + mass[i] / norm, 1.0)
            if df > (a + 1) / num_classes and a < num_classes - 1:
                a += 1
    index_word_classes(vocab, num_classes)


def index_word_classes(vocab, num_classes):
    """Compute the [start, end) word range of every class."""
    vocab.num_classes = num_classes
    vocab.class_start = np.zeros(num_classes, dtype=np.int64)
    vocab.class_end = np.zeros(num_classes, dtype=np.int64)
    seen = np.zeros(num_classes, dtype=bool)
    for i, c in enumerate(vocab.class_index):
        if not 0 <= c < num_classes:
            raise ValueError(f"word {vocab.words[i]!r} has class {c} outside [0, {num_classes})")
        if not seen[c]:
            seen[c] = True
            vocab.class_start[c] = i
        elif vocab.class_end[c] != i:
            raise ValueError(f"words of class {c} are not contiguous (word {vocab.words[i]!r})")
        vocab.class_end[c] = i + 1


def copy_vocabulary_to_corpus(vocab, corpus):
    """Make `corpus` encode its books with a trained model's vocabulary."""
    corpus.vocabulary = dict(vocab.word2index)
    corpus.vocabulary_reverse = list(vocab.words)
    corpus.word_counts_discounted = [float(c) for c in vocab.counts]
    corpus.labels = dict(vocab.label2index)
    corpus.labels_reverse = list(vocab.labels)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class RnnState:
    """Activations and gradients of one time step, plus the word history ring."""
    __slots__ = ['feature_layer', 'recurrent_layer', 'hidden_layer',
                 'compress_layer', 'output_layer',
                 'hidden_gradient', 'compress_gradient', 'output_gradient',
                 'word_history', 'word_history_head',
                 '_direct_class_idx', '_direct_word_idx']
    def __init__(self, vocab_size, hidden_size, feature_size, num_classes, compress_size):
        self.feature_layer = np.zeros(feature_size)
        self.recurrent_layer = np.zeros(hidden_size)
        self.hidden_layer = np.zeros(hidden_size)
        self.compress_layer = np.zeros(compress_size)
        self.output_layer = np.zeros(vocab_size + num_classes)
        self.hidden_gradient = np.zeros(hidden_size)
        self.compress_gradient = np.zeros(compress_size)
        self.output_gradient = np.zeros(vocab_size + num_classes)
        self.word_history = np.zeros(MAX_NGRAM_ORDER, dtype=np.int64)
        self.word_history_head = 0
        self._direct_class_idx = None
        self._direct_word_idx = None


class BpttHistory:
    """Ring of the last `window` steps: input word, hidden layer, its gradient, features.

    Slot k (see bptt_slot) is the k-th most recent step; one extra slot holds
    the recurrent input of the oldest step in the window.
    """
    __slots__ = ['window', 'num_slots', 'head', 'counter',
                 'history', 'hidden_layer', 'hidden_gradient', 'feature_layer',
                 'input_gradient', 'recurrent2hidden_gradient', 'feature2hidden_gradient']
    def __init__(self, hidden_size, feature_size, num_bptt_steps, bptt_block_size):
        self.window = num_bptt_steps + bptt_block_size
        self.num_slots = self.window + 1
        self.head = 0
        self.counter = 0
        self.history = np.full(self.num_slots, -1, dtype=np.int64)
        self.hidden_layer = np.zeros((self.num_slots, hidden_size))
        self.hidden_gradient = np.zeros((self.num_slots, hidden_size))
        self.feature_layer = np.zeros((self.num_slots, feature_size))
        self.input_gradient = np.zeros((self.window, hidden_size))
        self.recurrent2hidden_gradient = np.zeros((hidden_size, hidden_size))
        self.feature2hidden_gradient = np.zeros((hidden_size, feature_size))


class RnnWeights:
    __slots__ = ['input2hidden', 'recurrent2hidden', 'feature2hidden',
                 'hidden2output', 'hidden2compress', 'compress2output', 'direct']
    def __init__(self, vocab_size, hidden_size, feature_size, num_classes, compress_size,
                 direct_size):
        output_size = vocab_size + num_classes
        # Row w of input2hidden is the embedding of word w
        self.input2hidden = np.zeros((vocab_size, hidden_size))
        self.recurrent2hidden = np.zeros((hidden_size, hidden_size))
        self.feature2hidden = np.zeros((hidden_size, feature_size))
        self.hidden2output = np.zeros((output_size if compress_size == 0 else 0, hidden_size))
        self.hidden2compress = np.zeros((compress_size, hidden_size))
        self.compress2output = np.zeros((output_size if compress_size > 0 else 0, compress_size))
        self.direct = np.zeros(direct_size)


class Model:
    """Vocabulary, weights, state and BPTT ring, plus the last checkpoint."""
    __slots__ = ['vocabulary', 'weights', 'state', 'bptt', 'weights_backup', 'state_backup',
                 'learning_rate', 'iteration', 'word_counter',
                 'last_valid_log_probability', 'do_start_reducing_learning_rate']
    def __init__(self, vocabulary, args):
        V = len(vocabulary.words)
        H = args.hidden
        F = len(vocabulary.labels) if args.feature_labels_type == 2 else 0
        C = args.num_classes
        K = args.compression
        D = int(args.direct * 1000000)
        D -= D % 2

        self.vocabulary = vocabulary
        self.weights = RnnWeights(V, H, F, C, K, D)
        self.state = RnnState(V, H, F, C, K)
        self.bptt = BpttHistory(H, F, args.bptt, args.bptt_block)
        self.weights_backup = _copy_slots(self.weights)
        self.state_backup = _copy_slots(self.state)
        self.learning_rate = args.alpha
        self.iteration = 0
        self.word_counter = 0
        self.last_valid_log_probability = -1e37
        self.do_start_reducing_learning_rate = False


def build_Model(m, args):
    w = m.weights
    for name in ['input2hidden', 'recurrent2hidden', 'feature2hidden',
                 'hidden2output', 'hidden2compress', 'compress2output']:
        setattr(w, name, random_weights(getattr(w, name).shape))
    w.direct[:] = 0.0
    checkpoint_model(m)


# ---------------------------------------------------------------------------
# State operations
# ---------------------------------------------------------------------------

def word_history_at(state, k):
    return int(state.word_history[(state.word_history_head + k) % MAX_NGRAM_ORDER])


def clear_bptt_history(bptt):
    bptt.head = 0
    bptt.counter = 0
    bptt.history[:] = -1
    bptt.hidden_layer[:] = 0.0
    bptt.hidden_gradient[:] = 0.0
    bptt.feature_layer[:] = 0.0


def reset_hidden_rnn_state_and_word_history(m):
    s = m.state
    s.hidden_layer[:] = 0.0
    s.recurrent_layer[:] = 0.0
    s.word_history[:] = 0
    s.word_history_head = 0
    clear_bptt_history(m.bptt)


def reset_all_rnn_activations(m):
    s = m.state
    for name in ['feature_layer', 'compress_layer', 'output_layer',
                 'hidden_gradient', 'compress_gradient', 'output_gradient']:
        getattr(s, name)[:] = 0.0
    reset_hidden_rnn_state_and_word_history(m)


def reset_feature_label_vector(state):
    state.feature_layer[:] = 0.0


def update_feature_label_vector(state, label, args):
    # Time-decay the previous labels, then mark the current one
    state.feature_layer *= args.feature_gamma
    if 0 <= label < state.feature_layer.size:
        state.feature_layer[label] = 1.0


def forward_propagate_recurrent_connection_only(state):
    """s(t) becomes s(t-1) for the next step."""
    state.recurrent_layer[:] = state.hidden_layer


def forward_propagate_word_history(state, word):
    """Rotate the word history ring; `word` becomes the most recent entry."""
    state.word_history_head = (state.word_history_head - 1) % MAX_NGRAM_ORDER
    state.word_history[state.word_history_head] = word
    return word


def bptt_slot(bptt, k):
    return (bptt.head + k) % bptt.num_slots


def shift_bptt_history(bptt, word, state):
    """Rotate the ring by one step and store the current step in slot 0."""
    bptt.head = (bptt.head - 1) % bptt.num_slots
    h = bptt.head
    bptt.history[h] = word
    bptt.hidden_layer[h] = state.hidden_layer
    bptt.hidden_gradient[h] = 0.0
    bptt.feature_layer[h] = state.feature_layer


def checkpoint_model(m):
    m.weights_backup = _copy_slots(m.weights)
    m.state_backup = _copy_slots(m.state)


def restore_model_from_checkpoint(m):
    m.weights = _copy_slots(m.weights_backup)
    m.state = _copy_slots(m.state_backup)


# ---------------------------------------------------------------------------
# Direct n-gram connections
# ---------------------------------------------------------------------------

def _direct_hashes(state, salt, direct_order, half):
    """One hash per n-gram order over the word history; stops at an OOV word."""
    hashes = []
    for a in range(direct_order):
        if a > 0 and word_history_at(state, a - 1) < 0:
            break
        h = PRIMES[0] * PRIMES[1] * salt
        for b in range(1, a + 1):
            h += PRIMES[(a * PRIMES[b] + b) % len(PRIMES)] * (word_history_at(state, b - 1) + 1)
        hashes.append(h % half)
    return np.array(hashes, dtype=np.int64)


def _direct_indices(hashes, n, half, offset):
    """(orders, n) table indices for n consecutive output units."""
    return offset + (hashes[:, np.newaxis] + np.arange(n)) % half


def _update_direct_connections(direct, idx, err, lr, beta):
    if idx is None or idx.size == 0:
        return
    flat = idx.ravel()
    grad = np.tile(err, idx.shape[0])
    np.add.at(direct, flat, lr * (grad - beta * direct[flat]))


# ---------------------------------------------------------------------------
# Forward propagation
# ---------------------------------------------------------------------------

def forward_propagate_one_step(m, last_word, word, args):
    """Hidden, compression and factored output layers for one token.

    The class block output[V:] is a softmax over all classes; the word block
    is a softmax over the words of `word`'s class, computed only for word >= 0.
    """
    s = m.state
    w = m.weights
    vocab = m.vocabulary
    V = len(vocab.words)

    pre = w.recurrent2hidden @ s.recurrent_layer
    if s.feature_layer.size:
        pre += w.feature2hidden @ s.feature_layer
    if last_word >= 0:
        pre += w.input2hidden[last_word]
    sigmoid(pre, s.hidden_layer)

    if s.compress_layer.size:
        sigmoid(w.hidden2compress @ s.hidden_layer, s.compress_layer)
        top, w_out = s.compress_layer, w.compress2output
    else:
        top, w_out = s.hidden_layer, w.hidden2output

    out = s.output_layer
    out[V:] = w_out[V:] @ top
    s._direct_class_idx = None
    s._direct_word_idx = None
    if w.direct.size:
        half = w.direct.size // 2
        hashes = _direct_hashes(s, 1, args.direct_order, half)
        s._direct_class_idx = _direct_indices(hashes, out.size - V, half, 0)
        out[V:] += w.direct[s._direct_class_idx].sum(axis=0)
    softmax(out[V:])

    if word < 0:
        return
    c = vocab.class_index[word]
    lo, hi = int(vocab.class_start[c]), int(vocab.class_end[c])
    out[lo:hi] = w_out[lo:hi] @ top
    if w.direct.size:
        hashes = _direct_hashes(s, c + 1, args.direct_order, half)
        s._direct_word_idx = _direct_indices(hashes, hi - lo, half, half)
        out[lo:hi] += w.direct[s._direct_word_idx].sum(axis=0)
    softmax(out[lo:hi])


def word_log_probability(m, word):
    """log10 P(class(word)) * P(word | class(word)) from the last forward step."""
    vocab = m.vocabulary
    out = m.state.output_layer
    p = out[len(vocab.words) + vocab.class_index[word]] * out[word]
    with np.errstate(divide='ignore'):
        return float(np.log10(p))


# ---------------------------------------------------------------------------
# Backpropagation and SGD
# ---------------------------------------------------------------------------

@njit(cache=True)
def _bptt_replay_kernel(W_rec, hidden, hidden_grad, features, slots, window,
                        g, rec_grad, feat_grad, input_grad):
    """Replay the chain rule over the ring, newest step first.

    g enters as dL/dh of the newest step. Every step is propagated with the
    same W_rec; weight gradients are only accumulated here.
    """
    H = g.shape[0]
    F = features.shape[1]
    prev = np.zeros(H)
    for k in range(window):
        s = slots[k]
        p = slots[k + 1]
        for i in range(H):
            g[i] *= hidden[s, i] * (1.0 - hidden[s, i])
            input_grad[k, i] = g[i]
        for j in range(H):
            prev[j] = 0.0
        for i in range(H):
            gi = g[i]
            for j in range(H):
                rec_grad[i, j] += gi * hidden[p, j]
                prev[j] += gi * W_rec[i, j]
            for j in range(F):
                feat_grad[i, j] += gi * features[s, j]
        for j in range(H):
            g[j] = prev[j] + hidden_grad[p, j]


def _replay_bptt_window(m, args):
    w = m.weights
    bptt = m.bptt
    lr = m.learning_rate
    beta = args.beta

    slots = np.array([bptt_slot(bptt, k) for k in range(bptt.num_slots)], dtype=np.int64)
    g = bptt.hidden_gradient[slots[0]].copy()
    bptt.input_gradient[:] = 0.0
    bptt.recurrent2hidden_gradient[:] = 0.0
    bptt.feature2hidden_gradient[:] = 0.0
    _bptt_replay_kernel(w.recurrent2hidden, bptt.hidden_layer, bptt.hidden_gradient,
                        bptt.feature_layer, slots, bptt.window, g,
                        bptt.recurrent2hidden_gradient, bptt.feature2hidden_gradient,
                        bptt.input_gradient)

    # Weights are updated once, after the whole window has been replayed
    words = bptt.history[slots[:bptt.window]]
    known = words >= 0
    np.add.at(w.input2hidden, words[known], lr * bptt.input_gradient[known])
    w.recurrent2hidden += lr * (bptt.recurrent2hidden_gradient - beta * w.recurrent2hidden)
    w.feature2hidden += lr * (bptt.feature2hidden_gradient - beta * w.feature2hidden)
    bptt.hidden_gradient[:] = 0.0
    bptt.counter = 0


def _back_propagate_through_time(m, args):
    s = m.state
    bptt = m.bptt
    head = bptt_slot(bptt, 0)
    bptt.hidden_layer[head] = s.hidden_layer
    bptt.hidden_gradient[head] = s.hidden_gradient
    bptt.counter += 1
    if bptt.counter >= args.bptt_block:
        _replay_bptt_window(m, args)


def flush_bptt_block(m, args):
    """Replay the steps still waiting for a full block, e.g. at the end of an unroll."""
    if args.bptt > 0 and m.bptt.counter > 0:
        _replay_bptt_window(m, args)


def back_propagate_errors_then_one_step_gradient_descent(m, last_word, word, args):
    """One SGD step on -log P(word) at m.learning_rate; nothing to learn for OOV."""
    if word < 0:
        return
    s = m.state
    w = m.weights
    vocab = m.vocabulary
    lr = m.learning_rate
    beta = args.beta
    V = len(vocab.words)
    c = vocab.class_index[word]
    lo, hi = int(vocab.class_start[c]), int(vocab.class_end[c])

    # Target minus prediction on both softmax blocks
    err = s.output_gradient
    err[lo:hi] = -s.output_layer[lo:hi]
    err[word] += 1.0
    err[V:] = -s.output_layer[V:]
    err[V + c] += 1.0

    if w.direct.size:
        _update_direct_connections(w.direct, s._direct_class_idx, err[V:], lr, beta)
        _update_direct_connections(w.direct, s._direct_word_idx, err[lo:hi], lr, beta)

    if s.compress_layer.size:
        top, w_out = s.compress_layer, w.compress2output
    else:
        top, w_out = s.hidden_layer, w.hidden2output
    top_grad = w_out[lo:hi].T @ err[lo:hi] + w_out[V:].T @ err[V:]
    w_out[lo:hi] += lr * (np.outer(err[lo:hi], top) - beta * w_out[lo:hi])
    w_out[V:] += lr * (np.outer(err[V:], top) - beta * w_out[V:])

    if s.compress_layer.size:
        s.compress_gradient[:] = top_grad * top * (1.0 - top)
        s.hidden_gradient[:] = w.hidden2compress.T @ s.compress_gradient
        w.hidden2compress += lr * (np.outer(s.compress_gradient, s.hidden_layer)
                                   - beta * w.hidden2compress)
    else:
        s.hidden_gradient[:] = top_grad

    if args.bptt > 0:
        _back_propagate_through_time(m, args)
        return

    g = s.hidden_gradient * s.hidden_layer * (1.0 - s.hidden_layer)
    if last_word >= 0:
        w.input2hidden[last_word] += lr * g
    w.recurrent2hidden += lr * (np.outer(g, s.recurrent_layer) - beta * w.recurrent2hidden)
    w.feature2hidden += lr * (np.outer(g, s.feature_layer) - beta * w.feature2hidden)


def run_discounted_backpropagation(m, last_word, word, discount, args):
    """Backpropagate with the learning rate scaled by the token's tree discount."""
    alpha_backup = m.learning_rate
    m.learning_rate *= discount
    try:
        back_propagate_errors_then_one_step_gradient_descent(m, last_word, word, args)
    finally:
        m.learning_rate = alpha_backup


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def is_out_of_vocabulary(word):
    return word < 0 or word == UNKNOWN_WORD_INDEX


def accumulate_unique_log_probability(m, log_prob_sentence, token_number, word):
    """Score a token once per sentence position.

    Returns its log10 probability the first time `token_number` is seen in
    the sentence, None for revisits and out-of-vocabulary words.
    """
    if is_out_of_vocabulary(word) or token_number in log_prob_sentence:
        return None
    log_probability = word_log_probability(m, word)
    log_prob_sentence[token_number] = log_probability
    return log_probability


def load_correct_sentence_labels(path):
    """One correct-candidate index per question, as an integer or a letter a-e."""
    labels = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            token = line.strip()
            if not token:
                continue
            if token.isdigit():
                labels.append(int(token))
            elif len(token) == 1 and 'a' <= token.lower() <= 'e':
                labels.append(ord(token.lower()) - ord('a'))
            else:
                raise ValueError(f"bad sentence label {token!r} in {path}")
    return labels


def accuracy_n_best_list(sentence_scores, correct_labels, n_best):
    """Fraction of n-best groups whose best-scoring sentence is the labelled one."""
    if not correct_labels:
        return 0.0
    num_questions = len(sentence_scores) // n_best
    if num_questions != len(correct_labels):
        print(f"WARNING: {len(correct_labels)} labels for {len(sentence_scores)} "
              f"sentences in groups of {n_best}")
        return 0.0
    scores = np.asarray(sentence_scores[:num_questions * n_best]).reshape(num_questions, n_best)
    return float(np.mean(scores.argmax(axis=1) == np.asarray(correct_labels)))


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate_rnn_model(m, corpus, args):
    """Forward-only pass over a corpus.

    Returns (log10 probability, unique word count, per-sentence log10 scores).
    """
    use_tree_labels = args.feature_labels_type == 1
    reset_all_rnn_activations(m)
    test_log_probability = 0.0
    unique_word_counter = 0
    num_unk = 0
    sentence_scores = []
    forward_propagate_recurrent_connection_only(m.state)

    for idx_book in tqdm(range(corpus.num_books()), desc="  Valid", leave=False, unit="book"):
        corpus.next_book()
        book = corpus.read_book(use_tree_labels)
        book.reset_sentence()
        for idx_sentence in range(book.num_sentences()):
            log_prob_sentence = {}
            sentence_log_probability = 0.0
            book.reset_unroll()
            for _ in range(book.num_unrolls(idx_sentence)):
                reset_hidden_rnn_state_and_word_history(m)
                reset_feature_label_vector(m.state)
                # Each unroll starts from </s> and the root label
                last_word = 0
                last_label = 0
                ok = True
                while ok:
                    token_number = book.current_token_number_in_sentence()
                    word = book.current_token_word()
                    label = book.current_token_label()
                    if args.feature_labels_type == 2:
                        update_feature_label_vector(m.state, last_label, args)
                    forward_propagate_one_step(m, last_word, word, args)

                    if is_out_of_vocabulary(word):
                        num_unk += 1
                        if args.debug:
                            tqdm.write("-1\t0\tOOV")
                    else:
                        log_probability = accumulate_unique_log_probability(
                            m, log_prob_sentence, token_number, word)
                        if log_probability is not None:
                            test_log_probability += log_probability
                            sentence_log_probability += log_probability
                            unique_word_counter += 1
                            if args.debug:
                                tqdm.write(f"{token_number}\t{word}\t{log_probability}\t"
                                           f"{m.vocabulary.words[word]}")
                        else:
                            # Shared positions should score the same in every unroll
                            revisit = word_log_probability(m, word)
                            if abs(revisit - log_prob_sentence[token_number]) > 1e-6:
                                tqdm.write(f"WARNING: position {token_number} scored "
                                           f"{log_prob_sentence[token_number]} then {revisit}")

                    forward_propagate_recurrent_connection_only(m.state)
                    last_word = forward_propagate_word_history(m.state, word)
                    last_label = label
                    ok = book.next_token_in_unroll() >= 0
                book.next_unroll_in_sentence()
            sentence_scores.append(sentence_log_probability)
            book.next_sentence()

    perplexity = perplexity_from_log_probability(test_log_probability, unique_word_counter)
    print(f"Log probability: {test_log_probability:.4f}, number of words {unique_word_counter} "
          f"({num_unk} <unk>, {len(sentence_scores)} sentences)")
    print(f"PPL net (perplexity without OOV): {perplexity:.4f}")
    return test_log_probability, unique_word_counter, sentence_scores


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------

def _log_record(args, fields):
    line = ",".join(str(x) for x in fields)
    tqdm.write(line)
    if getattr(args, 'log_file', None):
        with open(args.log_file, 'a') as f:
            f.write(line + "\n")


def run_training_epoch(m, corpus_train, args):
    """One SGD pass over all books.

    Returns (training log10 probability, unique word count). Raises
    FloatingPointError when the log-likelihood diverges.
    """
    use_tree_labels = args.feature_labels_type == 1
    train_log_probability = 0.0
    unique_word_counter = 0
    m.word_counter = 0
    reset_all_rnn_activations(m)
    start = time.time()

    pbar = tqdm(range(corpus_train.num_books()), desc=f"Iter {m.iteration}", unit="book")
    for idx_book in pbar:
        corpus_train.next_book()
        book = corpus_train.read_book(use_tree_labels)
        book.reset_sentence()
        for idx_sentence in range(book.num_sentences()):
            log_prob_sentence = {}
            book.reset_unroll()
            for _ in range(book.num_unrolls(idx_sentence)):
                reset_hidden_rnn_state_and_word_history(m)
                reset_feature_label_vector(m.state)
                last_word = 0
                last_label = 0
                ok = True
                while ok:
                    token_number = book.current_token_number_in_sentence()
                    word = book.current_token_word()
                    discount = book.current_token_discount()
                    label = book.current_token_label()

                    if args.feature_labels_type == 2:
                        update_feature_label_vector(m.state, last_label, args)
                    forward_propagate_one_step(m, last_word, word, args)

                    log_probability = accumulate_unique_log_probability(
                        m, log_prob_sentence, token_number, word)
                    if log_probability is not None:
                        train_log_probability += log_probability
                        unique_word_counter += 1
                    if word >= 0:
                        m.word_counter += 1
                    if not math.isfinite(train_log_probability):
                        raise FloatingPointError("infinite log-likelihood")

                    if args.bptt > 0:
                        shift_bptt_history(m.bptt, last_word, m.state)
                    run_discounted_backpropagation(m, last_word, word, discount, args)

                    forward_propagate_recurrent_connection_only(m.state)
                    last_word = forward_propagate_word_history(m.state, word)
                    last_label = label
                    ok = book.next_token_in_unroll() >= 0
                flush_bptt_block(m, args)
                book.next_unroll_in_sentence()

            if idx_sentence % 1000 == 0:
                elapsed = max(time.time() - start, 1e-9)
                _log_record(args, [
                    "Iter", m.iteration, "Book", idx_book, "Alpha", m.learning_rate,
                    "TRAINentropy", entropy_from_log_probability(train_log_probability, unique_word_counter),
                    "TRAINppx", perplexity_from_log_probability(train_log_probability, unique_word_counter),
                    "fraction", 100 * m.word_counter / max(m.vocabulary.num_train_words, 1),
                    "words/sec", m.word_counter / elapsed])
            book.next_sentence()
        pbar.set_postfix(lr=f"{m.learning_rate:.4g}",
                         ppl=f"{perplexity_from_log_probability(train_log_probability, unique_word_counter):.2f}")

    elapsed = max(time.time() - start, 1e-9)
    _log_record(args, [
        "Iter", m.iteration, "Alpha", m.learning_rate, "Book", "ALL",
        "TRAINentropy", entropy_from_log_probability(train_log_probability, unique_word_counter),
        "TRAINppx", perplexity_from_log_probability(train_log_probability, unique_word_counter),
        "fraction", 100, "words/sec", m.word_counter / elapsed])
    return train_log_probability, unique_word_counter


def save_model_files(m, args):
    if not getattr(args, 'rnnlm', None):
        return
    save_rnn_model(m, args.rnnlm, args)
    save_word_embeddings(m, args.rnnlm + ".word_embeddings.txt")
    print("Saved the model")


def update_after_validation(m, valid_log_probability, args):
    """Checkpoint or roll back, then anneal or stop. Returns False once converged."""
    if valid_log_probability < m.last_valid_log_probability:
        restore_model_from_checkpoint(m)
        print("Restored the weights from previous iteration")
    else:
        checkpoint_model(m)
        print("Save this model")

    # Both sides are negative: this compares a ratio, not a difference
    if valid_log_probability * args.min_improvement < m.last_valid_log_probability:
        if not m.do_start_reducing_learning_rate:
            m.do_start_reducing_learning_rate = True
        else:
            save_model_files(m, args)
            return False
    elif m.do_start_reducing_learning_rate:
        m.learning_rate /= 2

    m.last_valid_log_probability = valid_log_probability
    m.iteration += 1
    save_model_files(m, args)
    return True


def train_rnn_model(m, corpus_train, corpus_valid, args):
    """Train until the validation log-likelihood stops improving.

    Returns False if training diverged numerically.
    """
    if args.num_classes > len(m.vocabulary.words):
        print("WARNING: number of classes exceeds vocabulary size")
    correct_labels = []
    if getattr(args, 'sentence_labels', None):
        correct_labels = load_correct_sentence_labels(args.sentence_labels)

    m.last_valid_log_probability = -1e37
    print(f"Starting training tree-dependent LM using {corpus_train.num_books()} books...")

    while True:
        print(f"Iter: {m.iteration} Alpha: {m.learning_rate}")
        start = time.time()
        try:
            run_training_epoch(m, corpus_train, args)
            valid_log_probability, valid_word_counter, sentence_scores = \
                evaluate_rnn_model(m, corpus_valid, args)
            if not math.isfinite(valid_log_probability):
                raise FloatingPointError("infinite validation log-likelihood")
        except FloatingPointError as e:
            print(f"\nNumerical error infinite log-likelihood ({e})")
            return False

        valid_accuracy = accuracy_n_best_list(sentence_scores, correct_labels, args.n_best)
        print(f"Accuracy {valid_accuracy * 100}% on {len(sentence_scores)} sentences")
        elapsed = max(time.time() - start, 1e-9)
        _log_record(args, [
            "Iter", m.iteration, "Alpha", m.learning_rate,
            "VALIDaccuracy", valid_accuracy,
            "VALIDentropy", entropy_from_log_probability(valid_log_probability, valid_word_counter),
            "VALIDppx", perplexity_from_log_probability(valid_log_probability, valid_word_counter),
            "fraction", 100, "words/sec", m.word_counter / elapsed])

        if not update_after_validation(m, valid_log_probability, args):
            return True


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def save_rnn_model(m, path, args):
    v = m.vocabulary
    config = {k: getattr(args, k) for k in MODEL_CONFIG_KEYS}
    arrays = {name: getattr(m.weights, name) for name in RnnWeights.__slots__}
    with open(path, 'wb') as f:
        np.savez(f,
                 words=np.array(v.words, dtype=str),
                 counts=np.array(v.counts, dtype=np.int64),
                 class_index=np.array(v.class_index, dtype=np.int64),
                 labels=np.array(v.labels, dtype=str),
                 num_train_words=np.int64(v.num_train_words),
                 learning_rate=np.float64(m.learning_rate),
                 iteration=np.int64(m.iteration),
                 do_start_reducing_learning_rate=np.bool_(m.do_start_reducing_learning_rate),
                 config=np.array(json.dumps(config)),
                 **arrays)


def load_rnn_model(path):
    """Returns (model, config dict)."""
    with np.load(path, allow_pickle=False) as data:
        config = json.loads(str(data['config']))
        vocab = Vocabulary()
        for word in data['words']:
            add_word_to_vocabulary(vocab, str(word))
        vocab.counts = [int(c) for c in data['counts']]
        vocab.class_index = [int(c) for c in data['class_index']]
        for label in data['labels']:
            add_label_to_vocabulary(vocab, str(label))
        vocab.num_train_words = int(data['num_train_words'])
        index_word_classes(vocab, config['num_classes'])

        m = Model(vocab, argparse.Namespace(**config))
        for name in RnnWeights.__slots__:
            setattr(m.weights, name, np.array(data[name], dtype=np.float64))
        m.learning_rate = float(data['learning_rate'])
        m.iteration = int(data['iteration'])
        m.do_start_reducing_learning_rate = bool(data['do_start_reducing_learning_rate'])
    checkpoint_model(m)
    return m, config


def save_word_embeddings(m, path):
    """One line per word: the word, then its input-layer embedding."""
    with open(path, 'w', encoding='utf-8') as f:
        for word, row in zip(m.vocabulary.words, m.weights.input2hidden):
            f.write(word + " " + " ".join(f"{x:.6f}" for x in row) + "\n")


def print_model_stats(m, args):
    """Print model parameter count and memory footprint."""
    total_params = 0
    total_bytes = 0
    for name in RnnWeights.__slots__:
        arr = getattr(m.weights, name)
        total_params += arr.size
        total_bytes += arr.nbytes

    if total_bytes < 1024**2:
        mem_str = f"{total_bytes / 1024:.1f} KB"
    elif total_bytes < 1024**3:
        mem_str = f"{total_bytes / 1024**2:.1f} MB"
    else:
        mem_str = f"{total_bytes / 1024**3:.2f} GB"

    if total_params < 1_000_000:
        param_str = f"{total_params:,}"
    else:
        param_str = f"{total_params / 1_000_000:.1f}M"

    print(f"Model: {param_str} parameters, {mem_str} memory "
          f"(vocab {len(m.vocabulary.words)}, hidden {args.hidden}, classes {args.num_classes}, "
          f"bptt {args.bptt})")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def make_parser():
    parser = argparse.ArgumentParser(description="Dependency-tree RNN language model")
    parser.add_argument('--rnnlm', type=str, default=None, help='Model file to write (or read with --test)')
    parser.add_argument('--train', type=str, default=None, help='List of training books')
    parser.add_argument('--valid', type=str, default=None, help='List of validation books')
    parser.add_argument('--test', type=str, default=None,
                        help='List of books to score with an existing --rnnlm model')
    parser.add_argument('--path-json-books', type=str, default='',
                        help='Directory the book lists are relative to')
    parser.add_argument('--sentence-labels', type=str, default=None,
                        help='Correct candidate of each n-best question of the validation set')
    parser.add_argument('--n-best', type=int, default=5)
    parser.add_argument('--min-word-occurrence', type=int, default=3)
    parser.add_argument('--feature-labels-type', type=int, default=0, choices=[0, 1, 2],
                        help='0: no labels, 1: labels merged into words, 2: labels as features')
    parser.add_argument('--feature-gamma', type=float, default=0.9)
    parser.add_argument('--hidden', type=int, default=100)
    parser.add_argument('--compression', type=int, default=0)
    parser.add_argument('--class', dest='num_classes', type=int, default=100)
    parser.add_argument('--class-file', type=str, default=None)
    parser.add_argument('--direct', type=float, default=0,
                        help='Size of the direct n-gram connections, in millions')
    parser.add_argument('--direct-order', type=int, default=3)
    parser.add_argument('--bptt', type=int, default=0)
    parser.add_argument('--bptt-block', type=int, default=1)
    parser.add_argument('--alpha', type=float, default=0.1)
    parser.add_argument('--beta', type=float, default=1e-7)
    parser.add_argument('--min-improvement', type=float, default=1.003)
    parser.add_argument('--seed', type=int, default=1)
    parser.add_argument('--log-file', type=str, default='log.csv')
    parser.add_argument('--debug', action='store_true')
    return parser


def _open_corpus(list_file, args):
    try:
        return CorpusUnrollsReader.from_book_list(list_file, args.path_json_books,
                                                  args.min_word_occurrence)
    except IOError:
        print(f"Error opening book list {list_file}")
        sys.exit(1)


def main():
    args = make_parser().parse_args()
    np.random.seed(args.seed)

    if args.test:
        if not args.rnnlm:
            print("--test needs an --rnnlm model")
            sys.exit(1)
        m, config = load_rnn_model(args.rnnlm)
        for key, value in config.items():
            setattr(args, key, value)
        corpus_test = _open_corpus(args.test, args)
        copy_vocabulary_to_corpus(m.vocabulary, corpus_test)
        log_probability, word_counter, sentence_scores = evaluate_rnn_model(m, corpus_test, args)
        if args.sentence_labels:
            labels = load_correct_sentence_labels(args.sentence_labels)
            accuracy = accuracy_n_best_list(sentence_scores, labels, args.n_best)
            print(f"Accuracy {accuracy * 100}% on {len(sentence_scores)} sentences")
        return

    if not args.train or not args.valid:
        print("Training needs --train and --valid book lists")
        sys.exit(1)

    with open(args.log_file, 'w') as f:
        f.write("# dependency-tree RNN LM training log\n")

    corpus_train = _open_corpus(args.train, args)
    corpus_valid = _open_corpus(args.valid, args)

    vocab = Vocabulary()
    if not learn_vocabulary_from_train_file(vocab, corpus_train, corpus_valid, args):
        sys.exit(1)
    assign_word_classes(vocab, args.num_classes)

    m = Model(vocab, args)
    build_Model(m, args)
    print_model_stats(m, args)
    if args.rnnlm:
        print(f"RNN model will be stored in {args.rnnlm}...")

    if not train_rnn_model(m, corpus_train, corpus_valid, args):
        sys.exit(1)


if __name__ == '__main__':
    main()
