"""Books of dependency-tree unrolls for the tree RNN language model.

A book is a list of sentences; a sentence is a list of unroll paths through
its dependency tree; an unroll is a list of tokens. On disk a book is JSON:

    {"sentences": [                      # one entry per sentence
        [                                # one entry per unroll
            [[position, word, label, discount], ...]
        ], ...
    ]}

Books are listed (one file name per line) in a list file, relative to a
books directory. Tree parsing and unrolling happen upstream; this module
only replays the unrolls and gathers vocabulary statistics from them.
"""

import json
import os

import numpy as np


EOS_WORD = "</s>"
UNK_WORD = "<unk>"


# ---------------------------------------------------------------------------
# One book: cursor over sentences -> unrolls -> tokens
# ---------------------------------------------------------------------------

class BookUnrolls:
    """Cursor over an encoded book.

    Tokens are (position, word_index, label_index, discount) tuples.
    """
    __slots__ = ['sentences', '_sentence', '_unroll', '_token']

    def __init__(self, sentences=None):
        # Empty unrolls cannot be replayed (the loop reads a token before
        # asking for the next one), so they are dropped here.
        self.sentences = [[list(u) for u in unrolls if len(u) > 0]
                          for unrolls in (sentences or [])]
        self._sentence = 0
        self._unroll = 0
        self._token = 0

    def num_sentences(self):
        return len(self.sentences)

    def reset_sentence(self):
        self._sentence = 0
        self.reset_unroll()

    def next_sentence(self):
        self._sentence += 1
        self.reset_unroll()

    def num_unrolls(self, idx_sentence):
        return len(self.sentences[idx_sentence])

    def reset_unroll(self):
        self._unroll = 0
        self._token = 0

    def next_unroll_in_sentence(self):
        self._unroll += 1
        self._token = 0

    def _current_token(self):
        return self.sentences[self._sentence][self._unroll][self._token]

    def current_token_number_in_sentence(self):
        return self._current_token()[0]

    def current_token_word(self):
        return self._current_token()[1]

    def current_token_label(self):
        return self._current_token()[2]

    def current_token_discount(self):
        return self._current_token()[3]

    def next_token_in_unroll(self):
        """Advance; return the new token's position, or -1 past the end."""
        self._token += 1
        unroll = self.sentences[self._sentence][self._unroll]
        if self._token >= len(unroll):
            return -1
        return unroll[self._token][0]


# ---------------------------------------------------------------------------
# Corpus: list of books plus vocabulary statistics
# ---------------------------------------------------------------------------

def token_word_key(word, label, use_tree_labels):
    """Vocabulary key of a token; with tree labels the label is merged in."""
    return f"{word}:{label}" if use_tree_labels else word


def load_json_book(path):
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    return [[[(int(t[0]), str(t[1]), str(t[2]), float(t[3])) for t in unroll]
             for unroll in sentence]
            for sentence in data["sentences"]]


def read_book_list(list_file, path_books=""):
    with open(list_file, 'r', encoding='utf-8') as f:
        names = [line.strip() for line in f if line.strip()]
    return [os.path.join(path_books, name) for name in names]


class CorpusUnrollsReader:
    """Reads books of unrolls and keeps the vocabulary used to encode them.

    `books` holds either raw books (nested lists of string tokens) or paths
    to JSON book files, loaded lazily by read_book().
    """

    def __init__(self, books, min_word_occurrence=3):
        self.books = list(books)
        self.min_word_occurrence = min_word_occurrence
        self.vocabulary = {}
        self.vocabulary_reverse = []
        self.word_counts_discounted = []
        self.labels = {}
        self.labels_reverse = []
        self.current_book = BookUnrolls()
        self._book_index = -1

    @classmethod
    def from_book_list(cls, list_file, path_books="", min_word_occurrence=3):
        return cls(read_book_list(list_file, path_books), min_word_occurrence)

    def num_books(self):
        return len(self.books)

    def num_words(self):
        return len(self.vocabulary_reverse)

    def num_labels(self):
        return len(self.labels_reverse)

    def _raw_book(self, idx):
        book = self.books[idx]
        if isinstance(book, (str, os.PathLike)):
            return load_json_book(book)
        return book

    def next_book(self):
        """Move to the next book, wrapping around after the last one."""
        self._book_index = (self._book_index + 1) % len(self.books)
        return self._book_index

    def read_book(self, use_tree_labels):
        """Encode the current book with this corpus' vocabulary."""
        unk = self.vocabulary.get(UNK_WORD, -1)
        sentences = []
        for sentence in self._raw_book(self._book_index):
            unrolls = []
            for unroll in sentence:
                tokens = []
                for position, word, label, discount in unroll:
                    key = token_word_key(word, label, use_tree_labels)
                    tokens.append((position,
                                   self.vocabulary.get(key, unk),
                                   self.labels.get(label, -1),
                                   discount))
                unrolls.append(tokens)
            sentences.append(unrolls)
        self.current_book = BookUnrolls(sentences)
        return self.current_book

    def _add_word(self, word, count=0.0):
        self.vocabulary[word] = len(self.vocabulary_reverse)
        self.vocabulary_reverse.append(word)
        self.word_counts_discounted.append(count)

    def read_vocabulary(self, use_tree_labels):
        """Count discounted word occurrences and labels over all books.

        Returns the number of unique word tokens (one per sentence position).
        """
        self.vocabulary = {}
        self.vocabulary_reverse = []
        self.word_counts_discounted = []
        self.labels = {}
        self.labels_reverse = []
        self._add_word(EOS_WORD)
        self._add_word(UNK_WORD)

        total_words = 0
        for idx in range(len(self.books)):
            for sentence in self._raw_book(idx):
                positions = set()
                for unroll in sentence:
                    for position, word, label, discount in unroll:
                        key = token_word_key(word, label, use_tree_labels)
                        if key not in self.vocabulary:
                            self._add_word(key)
                        self.word_counts_discounted[self.vocabulary[key]] += discount
                        if label not in self.labels:
                            self.labels[label] = len(self.labels_reverse)
                            self.labels_reverse.append(label)
                        positions.add(position)
                total_words += len(positions)
                self.word_counts_discounted[0] += 1.0
        return total_words

    def filter_sort_vocabulary(self, source):
        """Prune rare words of `source` into <unk> and sort by frequency.

        </s> and <unk> keep indices 0 and 1; ties keep encounter order.
        """
        counts = np.asarray(source.word_counts_discounted, dtype=np.float64)
        words = source.vocabulary_reverse
        unk_count = counts[1]
        kept = []
        for k in range(2, len(words)):
            if counts[k] >= self.min_word_occurrence:
                kept.append(k)
            else:
                unk_count += counts[k]
        kept.sort(key=lambda k: -counts[k])

        self.vocabulary = {}
        self.vocabulary_reverse = []
        self.word_counts_discounted = []
        self._add_word(EOS_WORD, float(counts[0]))
        self._add_word(UNK_WORD, float(unk_count))
        for k in kept:
            self._add_word(words[k], float(counts[k]))
        self.labels = dict(source.labels)
        self.labels_reverse = list(source.labels_reverse)

    def copy_vocabulary(self, source):
        self.vocabulary = dict(source.vocabulary)
        self.vocabulary_reverse = list(source.vocabulary_reverse)
        self.word_counts_discounted = list(source.word_counts_discounted)
        self.labels = dict(source.labels)
        self.labels_reverse = list(source.labels_reverse)
