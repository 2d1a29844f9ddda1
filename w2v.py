"""w2v: multi-threaded skip-gram word embeddings with numpy and numba.

Trains word vectors with asynchronous ("Hogwild") SGD:
- skip-gram pairs with a per-position random window
- negative sampling or hierarchical softmax
- linear learning-rate decay over the global token budget
- N worker threads sharing two embedding matrices with no locks

Objectives::

    skipgram         source = the word itself
    subword          source = word + character n-grams (hashed buckets)
    subchar_chinese  source = word + its characters (hashed buckets)
    subradical       source = word + characters + character radicals

::

    model = Word2Vec.train("corpus.txt", dim=100, epoch=5, thread=8)
    model.save_vectors("vectors")          # vectors.source, vectors.target

    # From any iterable of token lists (spills to temp file):
    model = Word2Vec.train([["the", "cat"], ["a", "dog"]], min_count=1)

Requires only **numpy** and **numba**. The hot loops are ``nogil`` numba
kernels, so worker threads run in parallel on the shared arrays.
"""

from __future__ import annotations

import argparse
import os
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field

import numpy as np
from numba import njit

EOS = "</s>"
MAX_LINE_SIZE = 1024
NEGATIVE_TABLE_SIZE = 10_000_000

COMMANDS = {
    "skipgram": "train word embedding by use skipgram model",
    "subword": "train word embedding by use subword model",
    "subchar_chinese": "train chinese character embedding by use subchar_chinese model",
    "subradical": "train chinese character embedding by use subradical model",
}

_MINSTD_M = 2147483647


# ── public helpers ────────────────────────────────────────────────────────────

def annealed_lr(base_lr: float, progress: float) -> float:
    """Linear decay from *base_lr*, floored at ``0.0001 * base_lr``."""
    lr = base_lr * (1.0 - progress)
    return max(lr, 0.0001 * base_lr)


def worker_seed(seed: int, thread_id: int) -> int:
    """minstd state for worker *thread_id* (never 0, distinct per thread)."""
    return (seed + thread_id) % (_MINSTD_M - 1) + 1


def char_ngrams(word: str, minn: int, maxn: int) -> list[str]:
    """Character n-grams of ``<word>``, fastText style."""
    w = "<" + word + ">"
    out = []
    for i in range(len(w)):
        for n in range(minn, maxn + 1):
            if i + n > len(w):
                break
            if n == 1 and (i == 0 or i + n == len(w)):
                continue
            out.append(w[i:i + n])
    return out


def load_radicals(path: str) -> dict[str, str]:
    """Read a ``<char> <radical>`` table, one pair per line."""
    try:
        f = open(path, encoding="utf-8")
    except OSError as e:
        raise ValueError(f"{path} cannot be opened for reading radicals") from e
    radicals = {}
    with f:
        for line in f:
            parts = line.split()
            if len(parts) >= 2:
                radicals[parts[0]] = parts[1]
    return radicals


# ── configuration ────────────────────────────────────────────────────────────


@dataclass
class Args:
    input: str = ""
    output: str = ""
    model: str = "skipgram"
    dim: int = 100
    ws: int = 5
    epoch: int = 5
    lr: float = 0.05
    lr_update_rate: int = 100
    thread: int = 12
    min_count: int = 5
    neg: int = 5
    loss: str = "ns"
    t: float = 1e-4
    bucket: int = 2_000_000
    minn: int = 3
    maxn: int = 6
    radical: str = ""
    seed: int = 0
    verbose: int = 2

    def __post_init__(self):
        if self.model not in COMMANDS:
            raise ValueError(f"unknown model {self.model!r}, expected one of "
                             f"{', '.join(COMMANDS)}")
        if self.loss not in ("ns", "hs"):
            raise ValueError(f"unknown loss {self.loss!r}, expected ns or hs")
        for name in ("dim", "ws", "epoch", "thread", "min_count"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.lr <= 0 or self.t <= 0:
            raise ValueError("lr and t must be positive")
        if self.neg < 0 or self.lr_update_rate < 0:
            raise ValueError("neg and lr_update_rate must be >= 0")
        if self.model != "skipgram" and self.bucket < 1:
            raise ValueError(f"{self.model} model needs bucket >= 1")
        if self.model == "subword" and not 1 <= self.minn <= self.maxn:
            raise ValueError(f"invalid n-gram range minn={self.minn} "
                             f"maxn={self.maxn}")
        if self.model == "subradical" and not self.radical:
            raise ValueError("subradical model needs a radical file (--radical)")

    @property
    def bucket_rows(self) -> int:
        return 0 if self.model == "skipgram" else self.bucket


# ── deterministic hash (matches fasttext) ────────────────────────────────────


@njit(cache=True)
def _fnv1a_bytes(data):
    """FNV-1a 32-bit over a uint8 array with signed-char XOR."""
    h = np.uint32(2166136261)
    for i in range(len(data)):
        b = data[i]
        sb = np.uint32(b) if b < 128 else np.uint32(np.int32(np.int8(b)))
        h = (h ^ sb) * np.uint32(16777619)
    return np.int32(h)


def _hash(token: str) -> int:
    data = np.frombuffer(token.encode("utf-8"), dtype=np.uint8)
    return int(_fnv1a_bytes(data)) & 0xFFFFFFFF


# ── mmap text pipeline ────────────────────────────────────────────────────────
#
# Operates directly on a memory-mapped text file (uint8 bytes):
#   pass 1  _vocab_scan      hash table from raw bytes
#   pass 2  _extract_vocab   merge </s>, filter, sort, assign final IDs
#   train   _read_line       one line per call from a worker's byte cursor


def _map_corpus(path):
    if os.path.getsize(path) == 0:
        return np.zeros(0, np.uint8)
    return np.memmap(path, dtype=np.uint8, mode="r")


@njit(cache=True)
def _vocab_scan(buf, buf_len,
                ht_fnv, ht_occ, ht_tok_start, ht_tok_len, ht_freq,
                table_mask):
    """Pass 1: scan mmap bytes -> hash table.

    Returns (n_unique, n_tokens, n_lines, status). n_lines counts newline
    bytes, one </s> each.
    status: 0 = success, -1 = table overflow (caller should grow & retry).
    """
    n_unique = np.int64(0)
    n_tokens = np.int64(0)
    n_lines = np.int64(0)
    table_size = np.int64(table_mask + 1)

    i = np.int64(0)
    while i < buf_len:
        b = buf[i]
        if b == 32 or b == 9 or b == 13:
            i += 1
            continue
        if b == 10:
            n_lines += 1
            i += 1
            continue

        tok_start = i
        while i < buf_len:
            b2 = buf[i]
            if b2 == 32 or b2 == 9 or b2 == 10 or b2 == 13:
                break
            i += 1
        tok_len = np.int32(i - tok_start)

        h = np.uint32(2166136261)
        for k in range(tok_start, tok_start + tok_len):
            b3 = buf[k]
            sb = np.uint32(b3) if b3 < 128 else np.uint32(np.int32(np.int8(b3)))
            h = (h ^ sb) * np.uint32(16777619)
        fnv = np.int32(h)

        # open-addressing lookup
        slot = np.int64(np.uint32(h) & np.uint32(table_mask))
        while ht_occ[slot] == np.int8(1):
            if ht_fnv[slot] == fnv and ht_tok_len[slot] == tok_len:
                match = True
                ref = ht_tok_start[slot]
                for k in range(tok_len):
                    if buf[tok_start + k] != buf[ref + k]:
                        match = False
                        break
                if match:
                    ht_freq[slot] += np.int64(1)
                    break
            slot = (slot + 1) & table_mask

        if ht_occ[slot] == np.int8(0):
            if n_unique >= table_size * 7 // 10:
                return n_unique, n_tokens, n_lines, np.int32(-1)
            ht_occ[slot] = np.int8(1)
            ht_fnv[slot] = fnv
            ht_tok_start[slot] = tok_start
            ht_tok_len[slot] = tok_len
            ht_freq[slot] = np.int64(1)
            n_unique += 1

        n_tokens += 1

    return n_unique, n_tokens, n_lines, np.int32(0)


@njit(nogil=True, cache=True)
def _lookup_token(buf, tok_start, tok_end,
                  ht_fnv, ht_occ, ht_tok_start, ht_tok_len,
                  table_mask, remap):
    """Hash table lookup for one token. Returns the word id or -1."""
    tok_len = np.int32(tok_end - tok_start)
    h = np.uint32(2166136261)
    for k in range(tok_start, tok_end):
        bb = buf[k]
        sb = np.uint32(bb) if bb < 128 else np.uint32(np.int32(np.int8(bb)))
        h = (h ^ sb) * np.uint32(16777619)
    fnv = np.int32(h)
    slot = np.int64(np.uint32(h) & np.uint32(table_mask))
    while ht_occ[slot] == np.int8(1):
        if ht_fnv[slot] == fnv and ht_tok_len[slot] == tok_len:
            match = True
            ref = ht_tok_start[slot]
            for k in range(tok_len):
                if buf[tok_start + k] != buf[ref + k]:
                    match = False
                    break
            if match:
                return remap[slot]
        slot = (slot + 1) & table_mask
    return np.int32(-1)


def _alloc_hash_table(estimated_unique):
    """Allocate struct-of-arrays hash table (power-of-2 size)."""
    table_size = 1
    while table_size < max(estimated_unique * 4, 1 << 16):
        table_size <<= 1
    mask = np.int64(table_size - 1)
    return (np.zeros(table_size, np.int32),   # ht_fnv
            np.zeros(table_size, np.int8),     # ht_occ
            np.zeros(table_size, np.int64),    # ht_tok_start
            np.zeros(table_size, np.int32),    # ht_tok_len
            np.zeros(table_size, np.int64),    # ht_freq
            mask)


def _extract_vocab(buf, ht_occ, ht_tok_start, ht_tok_len, ht_freq,
                   n_lines, *, min_count):
    """Pass 2: hash table -> (words, counts, remap, eos_id).

    Slots decoding to the same string (a literal ``</s>``, or invalid
    UTF-8 replaced to the same text) share one id.
    """
    occupied = np.where(ht_occ == 1)[0]

    words, counts, slots = [EOS], [int(n_lines)], [[]]
    index = {EOS: 0}
    for slot in occupied:
        s = int(ht_tok_start[slot])
        e = s + int(ht_tok_len[slot])
        w = bytes(buf[s:e]).decode("utf-8", errors="replace")
        i = index.get(w)
        if i is None:
            i = index[w] = len(words)
            words.append(w)
            counts.append(0)
            slots.append([])
        counts[i] += int(ht_freq[slot])
        slots[i].append(int(slot))

    counts = np.array(counts, dtype=np.int64)
    order = np.argsort(-counts, kind="stable")
    order = order[counts[order] >= min_count]

    remap = np.full(len(ht_occ), -1, dtype=np.int32)
    kept = []
    eos_id = -1
    for new_id, old in enumerate(order):
        kept.append(words[old])
        if old == 0:
            eos_id = new_id
        if slots[old]:
            remap[slots[old]] = new_id
    return kept, counts[order], remap, eos_id


@njit(cache=True)
def seek_line_start(buf, buf_len, offset):
    """First line start at or after byte *offset*; wraps to 0 at EOF."""
    if offset <= 0 or offset >= buf_len:
        return np.int64(0)
    if buf[offset - 1] == 10:
        return np.int64(offset)
    i = np.int64(offset)
    while i < buf_len:
        if buf[i] == 10:
            i += 1
            if i < buf_len:
                return i
            return np.int64(0)
        i += 1
    return np.int64(0)


# ── random numbers (minstd, per worker) ──────────────────────────────────────
#
# state[0] is the LCG state, state[1] the model's position in the
# negative table. Both are private to one worker.


@njit(nogil=True, cache=True)
def _next_rand(state):
    state[0] = (state[0] * np.int64(48271)) % np.int64(2147483647)
    return state[0]


@njit(nogil=True, cache=True)
def uniform_int(state, lo, hi):
    """Draw an integer in ``[lo, hi]``."""
    return lo + _next_rand(state) % (hi - lo + 1)


@njit(nogil=True, cache=True)
def _uniform_real(state):
    return np.float64(_next_rand(state)) / 2147483647.0


@njit(nogil=True, cache=True)
def _read_line(buf, buf_len, pos,
               ht_fnv, ht_occ, ht_tok_start, ht_tok_len, table_mask, remap,
               eos_id, pdiscard, state, line):
    """Read one line from *pos* into *line*.

    Every in-vocabulary token, </s> included, counts toward ntokens; kept
    tokens survive subsampling. Stops after </s> or MAX_LINE_SIZE tokens;
    at EOF the cursor wraps to 0.

    Returns (ntokens, n_kept, new_pos).
    """
    ntokens = np.int64(0)
    n = np.int64(0)
    while True:
        if pos >= buf_len:
            pos = np.int64(0)
            break
        b = buf[pos]
        if b == 10:
            pos += 1
            if eos_id >= 0:
                ntokens += 1
                if _uniform_real(state) <= pdiscard[eos_id]:
                    line[n] = np.int32(eos_id)
                    n += 1
            break
        if b == 32 or b == 9 or b == 13:
            pos += 1
            continue

        tok_start = pos
        while pos < buf_len:
            b2 = buf[pos]
            if b2 == 32 or b2 == 9 or b2 == 10 or b2 == 13:
                break
            pos += 1
        wid = _lookup_token(buf, tok_start, pos,
                            ht_fnv, ht_occ, ht_tok_start, ht_tok_len,
                            table_mask, remap)
        if wid < 0:
            continue
        ntokens += 1
        if _uniform_real(state) <= pdiscard[wid]:
            line[n] = wid
            n += 1
        if ntokens > MAX_LINE_SIZE:
            break
    return ntokens, n, pos


# ── vocabulary ───────────────────────────────────────────────────────────────


def _source_groups(words, args, radicals):
    """Per-word source rows as CSR (offsets, ids)."""
    nwords = len(words)
    offsets, ids = [0], []
    for i, w in enumerate(words):
        ids.append(i)
        if args.model != "skipgram" and w != EOS:
            if args.model == "subword":
                pieces = char_ngrams(w, args.minn, args.maxn)
            else:
                pieces = list(w)
                if args.model == "subradical":
                    # prefixed so a radical never shares a bucket with the same glyph as a character
                    pieces += ["r:" + radicals[c] for c in w if c in radicals]
            for piece in pieces:
                ids.append(nwords + _hash(piece) % args.bucket)
        offsets.append(len(ids))
    return np.array(offsets, dtype=np.int64), np.array(ids, dtype=np.int32)


@dataclass
class Vocab:
    words: list[str]            = field(default_factory=list)
    counts: np.ndarray          = field(default_factory=lambda: np.zeros(0, np.int64))
    w2i: dict[str, int]         = field(default_factory=dict)
    ntokens: int                = 0
    eos_id: int                 = -1
    bucket: int                 = 0
    pdiscard: np.ndarray        = field(default_factory=lambda: np.zeros(0))
    group_offsets: np.ndarray   = field(default_factory=lambda: np.zeros(1, np.int64))
    group_ids: np.ndarray       = field(default_factory=lambda: np.zeros(0, np.int32))
    ht_fnv: np.ndarray          = field(default_factory=lambda: np.zeros(0, np.int32))
    ht_occ: np.ndarray          = field(default_factory=lambda: np.zeros(0, np.int8))
    ht_tok_start: np.ndarray    = field(default_factory=lambda: np.zeros(0, np.int64))
    ht_tok_len: np.ndarray      = field(default_factory=lambda: np.zeros(0, np.int32))
    table_mask: int             = 0
    remap: np.ndarray           = field(default_factory=lambda: np.zeros(0, np.int32))

    @property
    def nwords(self) -> int:
        return len(self.words)

    @property
    def ntargets(self) -> int:
        return len(self.words)

    def get_counts(self) -> np.ndarray:
        return self.counts

    def get_word(self, i: int) -> str:
        return self.words[i]

    def get_target(self, i: int) -> str:
        return self.words[i]

    def get_id(self, word: str) -> int:
        return self.w2i.get(word, -1)

    def source_group(self, i: int) -> np.ndarray:
        return self.group_ids[self.group_offsets[i]:self.group_offsets[i + 1]]

    def get_line(self, reader: CorpusReader, model: Model
                 ) -> tuple[int, np.ndarray]:
        """Read the next line at the reader's cursor -> (ntokens, word ids).

        Subsampling draws from the model's private generator.
        """
        ntokens, n, reader.pos = _read_line(
            reader.buf, np.int64(reader.size), np.int64(reader.pos),
            self.ht_fnv, self.ht_occ, self.ht_tok_start, self.ht_tok_len,
            self.table_mask, self.remap, np.int64(self.eos_id),
            self.pdiscard, model.state, reader.line)
        return int(ntokens), reader.line[:n]

    @classmethod
    def read_from_file(cls, path: str, args: Args) -> Vocab:
        """Scan *path* and build the vocabulary for *args*."""
        radicals = load_radicals(args.radical) if args.model == "subradical" else {}

        buf = _map_corpus(path)
        buf_len = np.int64(len(buf))

        estimated = min(int(buf_len) // 4, 4_000_000)
        (ht_fnv, ht_occ, ht_tok_start, ht_tok_len,
         ht_freq, mask) = _alloc_hash_table(estimated)
        n_unique, n_tokens, n_lines, status = _vocab_scan(
            buf, buf_len, ht_fnv, ht_occ, ht_tok_start, ht_tok_len,
            ht_freq, mask)

        while status == -1:
            estimated = int(n_unique) * 4
            (ht_fnv, ht_occ, ht_tok_start, ht_tok_len,
             ht_freq, mask) = _alloc_hash_table(estimated)
            n_unique, n_tokens, n_lines, status = _vocab_scan(
                buf, buf_len, ht_fnv, ht_occ, ht_tok_start, ht_tok_len,
                ht_freq, mask)

        words, counts, remap, eos_id = _extract_vocab(
            buf, ht_occ, ht_tok_start, ht_tok_len, ht_freq, n_lines,
            min_count=args.min_count)
        del ht_freq

        ntokens = int(n_tokens) + int(n_lines)
        f = counts / max(ntokens, 1)
        pdiscard = np.sqrt(args.t / f) + args.t / f
        group_offsets, group_ids = _source_groups(words, args, radicals)

        if args.verbose > 0:
            print(f"\rRead {ntokens // 1_000_000}M words, "
                  f"vocab {len(words)} words "
                  f"(min_count={args.min_count})", file=sys.stderr)

        return cls(words=words, counts=counts,
                   w2i={w: i for i, w in enumerate(words)},
                   ntokens=ntokens, eos_id=eos_id, bucket=args.bucket_rows,
                   pdiscard=pdiscard, group_offsets=group_offsets,
                   group_ids=group_ids, ht_fnv=ht_fnv, ht_occ=ht_occ,
                   ht_tok_start=ht_tok_start, ht_tok_len=ht_tok_len,
                   table_mask=int(mask), remap=remap)


class CorpusReader:
    """A worker's private read handle: its own mmap and byte cursor."""

    def __init__(self, path: str):
        self.buf = _map_corpus(path)
        self.size = len(self.buf)
        self.pos = 0
        self.line = np.empty(MAX_LINE_SIZE + 1, np.int32)

    def seek(self, offset: int) -> int:
        """Jump to *offset*, then forward to the next line start."""
        self.pos = int(seek_line_start(self.buf, np.int64(self.size),
                                       np.int64(offset)))
        return self.pos

    def close(self):
        self.buf = np.zeros(0, np.uint8)
        self.size = 0
        self.pos = 0

    def __enter__(self) -> CorpusReader:
        return self

    def __exit__(self, *exc):
        self.close()


# ── embedding matrix ─────────────────────────────────────────────────────────


class Matrix:
    """Dense float32 table, one row per id.

    Concurrency contract: relaxed consistency, race tolerant. Worker
    threads read and accumulate into ``data`` through the numba kernels
    with no locking, so two threads on the same row can lose an update.
    Python-level row access is bounds checked instead of locked.
    """

    __slots__ = ("data",)

    def __init__(self, m: int, n: int):
        self.data = np.zeros((m, n), np.float32)

    @property
    def m(self) -> int:
        return self.data.shape[0]

    @property
    def n(self) -> int:
        return self.data.shape[1]

    def zero(self) -> Matrix:
        self.data.fill(0.0)
        return self

    def uniform(self, bound: float, seed: int = 0) -> Matrix:
        rng = np.random.RandomState(seed)
        self.data[:] = rng.uniform(-bound, bound, self.data.shape)
        return self

    def check_row(self, i: int):
        if not 0 <= i < self.m:
            raise IndexError(f"row {i} out of range for {self.m} rows")

    def row(self, i: int) -> np.ndarray:
        self.check_row(i)
        return self.data[i].copy()


# ── gradient model ───────────────────────────────────────────────────────────


@njit(nogil=True, cache=True)
def _sigmoid(x):
    if x < -8.0:
        return 0.0
    if x > 8.0:
        return 1.0
    return 1.0 / (1.0 + np.exp(-x))


@njit(nogil=True, fastmath=True, cache=True)
def _binary_logistic(wo, row, label, lr, hidden, grad):
    """One logistic step on output *row*; accumulates into *grad*."""
    dim = hidden.shape[0]
    dot = 0.0
    for d in range(dim):
        dot += wo[row, d] * hidden[d]
    score = _sigmoid(dot)
    alpha = np.float32(lr * (label - score))
    for d in range(dim):
        grad[d] += alpha * wo[row, d]
        wo[row, d] += alpha * hidden[d]
    if label > 0.0:
        return -np.log(score + 1e-5)
    return -np.log(1.0 - score + 1e-5)


@njit(nogil=True, cache=True)
def _get_negative(negatives, state, target):
    size = negatives.shape[0]
    neg = negatives[state[1]]
    for _ in range(size):
        neg = negatives[state[1]]
        state[1] = (state[1] + 1) % size
        if neg != target:
            break
    return neg


@njit(nogil=True, fastmath=True, cache=True)
def _update(wi, wo, group_ids, g_start, g_end, target, lr,
            hidden, grad, state, stats, hs, neg,
            negatives, path_offsets, path_nodes, path_codes):
    """Gradient step for (source group, target) on the shared matrices.

    hidden = mean of the group's input rows; the output side is updated
    in place, then the accumulated gradient is added to every group row.
    stats = [loss_sum, n_updates].
    """
    n = g_end - g_start
    if n <= 0:
        return
    dim = hidden.shape[0]
    for d in range(dim):
        hidden[d] = np.float32(0.0)
        grad[d] = np.float32(0.0)
    for k in range(g_start, g_end):
        row = group_ids[k]
        for d in range(dim):
            hidden[d] += wi[row, d]
    inv = np.float32(1.0 / n)
    for d in range(dim):
        hidden[d] *= inv

    loss = 0.0
    if hs:
        for k in range(path_offsets[target], path_offsets[target + 1]):
            loss += _binary_logistic(wo, path_nodes[k],
                                     np.float64(path_codes[k]), lr,
                                     hidden, grad)
    else:
        loss += _binary_logistic(wo, target, 1.0, lr, hidden, grad)
        for _ in range(neg):
            loss += _binary_logistic(
                wo, _get_negative(negatives, state, target), 0.0, lr,
                hidden, grad)
    stats[0] += loss
    stats[1] += 1.0

    for k in range(g_start, g_end):
        row = group_ids[k]
        for d in range(dim):
            wi[row, d] += grad[d]


@njit(cache=True)
def _huffman_tree(counts):
    """Huffman codes over frequency-sorted *counts* as CSR paths.

    Returns (path_offsets, path_nodes, path_codes); node i is output row i.
    """
    osz = counts.shape[0]
    n = 2 * osz - 1
    count = np.full(n, 1e15)
    parent = np.full(n, -1, np.int64)
    binary = np.zeros(n, np.int8)
    for i in range(osz):
        count[i] = counts[i]
    leaf = osz - 1
    node = osz
    for i in range(osz, n):
        if leaf >= 0 and count[leaf] < count[node]:
            a = leaf
            leaf -= 1
        else:
            a = node
            node += 1
        if leaf >= 0 and count[leaf] < count[node]:
            b = leaf
            leaf -= 1
        else:
            b = node
            node += 1
        count[i] = count[a] + count[b]
        parent[a] = i
        parent[b] = i
        binary[b] = np.int8(1)

    offsets = np.zeros(osz + 1, np.int64)
    for i in range(osz):
        depth = 0
        j = i
        while parent[j] != -1:
            depth += 1
            j = parent[j]
        offsets[i + 1] = offsets[i] + depth
    nodes = np.empty(offsets[osz], np.int32)
    codes = np.empty(offsets[osz], np.int8)
    for i in range(osz):
        k = offsets[i]
        j = i
        while parent[j] != -1:
            nodes[k] = np.int32(parent[j] - osz)
            codes[k] = binary[j]
            k += 1
            j = parent[j]
    return offsets, nodes, codes


def _negative_table(counts, seed):
    """Unigram^0.5 table of ~NEGATIVE_TABLE_SIZE ids, shuffled."""
    c = np.sqrt(np.asarray(counts, dtype=np.float64))
    reps = np.ceil(c * NEGATIVE_TABLE_SIZE / c.sum()).astype(np.int64)
    table = np.repeat(np.arange(len(c), dtype=np.int32), reps)
    np.random.RandomState(seed).shuffle(table)
    return table


@dataclass
class Targets:
    """Read-only target-side tables, shared by every worker's model."""
    negatives: np.ndarray       = field(default_factory=lambda: np.zeros(0, np.int32))
    path_offsets: np.ndarray    = field(default_factory=lambda: np.zeros(1, np.int64))
    path_nodes: np.ndarray      = field(default_factory=lambda: np.zeros(0, np.int32))
    path_codes: np.ndarray      = field(default_factory=lambda: np.zeros(0, np.int8))

    @classmethod
    def from_counts(cls, counts, loss: str, seed: int = 0) -> Targets:
        counts = np.asarray(counts, dtype=np.int64)
        if len(counts) == 0:
            return cls()
        if loss == "hs":
            offsets, nodes, codes = _huffman_tree(counts.astype(np.float64))
            return cls(path_offsets=offsets, path_nodes=nodes,
                       path_codes=codes)
        return cls(negatives=_negative_table(counts, seed))


class Model:
    """One worker's gradient model over the shared matrices.

    Holds private scratch vectors, a minstd generator and a loss
    accumulator; the matrices themselves are shared.
    """

    __slots__ = ("input", "output", "args", "targets",
                 "hidden", "grad", "state", "stats")

    def __init__(self, input: Matrix, output: Matrix, args: Args,
                 thread_id: int = 0, targets: Targets | None = None):
        self.input, self.output, self.args = input, output, args
        self.hidden = np.zeros(args.dim, np.float32)
        self.grad = np.zeros(args.dim, np.float32)
        self.state = np.array([worker_seed(args.seed, thread_id), 0],
                              dtype=np.int64)
        self.stats = np.zeros(2, np.float64)
        self.targets = None
        if targets is not None:
            self._bind(targets)

    def _bind(self, targets: Targets):
        self.targets = targets
        if len(targets.negatives):
            self.state[1] = self.state[0] % len(targets.negatives)

    def set_target_counts(self, counts):
        """Build private target tables from frequency-sorted *counts*."""
        self._bind(Targets.from_counts(counts, self.args.loss,
                                       seed=self.args.seed))

    def update(self, group, target: int, lr: float):
        if self.targets is None:
            raise RuntimeError("set_target_counts() must be called before update()")
        group = np.asarray(group, dtype=np.int32)
        for i in group:
            self.input.check_row(int(i))
        self.output.check_row(int(target))
        t = self.targets
        _update(self.input.data, self.output.data, group,
                0, len(group), np.int32(target), np.float64(lr),
                self.hidden, self.grad, self.state, self.stats,
                self.args.loss == "hs", np.int64(self.args.neg),
                t.negatives, t.path_offsets, t.path_nodes, t.path_codes)

    def get_loss(self) -> float:
        if self.stats[1] == 0:
            return 0.0
        return float(self.stats[0] / self.stats[1])


# ── skip-gram context sampling ───────────────────────────────────────────────


@njit(nogil=True, cache=True)
def context_bounds(w, boundary, n):
    """Inclusive (lo, hi) of positions within *boundary* of *w* in a line of *n*."""
    return max(0, w - boundary), min(n - 1, w + boundary)


@njit(nogil=True, fastmath=True, cache=True)
def _skipgram(wi, wo, line, n, group_offsets, group_ids, ws, lr,
              hidden, grad, state, stats, hs, neg,
              negatives, path_offsets, path_nodes, path_codes):
    updates = np.int64(0)
    for w in range(n):
        boundary = uniform_int(state, np.int64(1), ws)
        src = line[w]
        lo, hi = context_bounds(w, boundary, n)
        for p in range(lo, hi + 1):
            if p == w:
                continue
            _update(wi, wo, group_ids,
                    group_offsets[src], group_offsets[src + 1], line[p], lr,
                    hidden, grad, state, stats, hs, neg,
                    negatives, path_offsets, path_nodes, path_codes)
            updates += 1
    return updates


def skipgram(model: Model, lr: float, line: np.ndarray, vocab: Vocab) -> int:
    """One update per (position, in-window context) pair of *line*.

    The window half-width is redrawn from ``[1, ws]`` for every position.
    Returns the number of updates issued.
    """
    t = model.targets
    line = np.asarray(line, dtype=np.int32)
    return int(_skipgram(
        model.input.data, model.output.data, line, np.int64(len(line)),
        vocab.group_offsets, vocab.group_ids, np.int64(model.args.ws),
        np.float64(lr), model.hidden, model.grad, model.state, model.stats,
        model.args.loss == "hs", np.int64(model.args.neg),
        t.negatives, t.path_offsets, t.path_nodes, t.path_codes))


# ── shared training state & progress ─────────────────────────────────────────


class TrainingState:
    """Token counter and loss estimate shared by workers and the monitor.

    Writes go through a lock; reads are plain attribute reads and may be
    stale.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.token_count = 0
        self.loss = -1.0
        self.start = time.time()

    def add_tokens(self, n: int):
        with self._lock:
            self.token_count += n

    def set_loss(self, loss: float):
        with self._lock:
            self.loss = loss


class ProgressMonitor:
    """Polls a TrainingState and redraws one status line on *stream*."""

    def __init__(self, state: TrainingState, *, budget: int, lr: float,
                 threads: int, verbose: int = 2, stream=None,
                 interval: float = 0.1):
        self.state = state
        self.budget = budget
        self.lr = lr
        self.threads = threads
        self.verbose = verbose
        self.stream = stream
        self.interval = interval

    def progress(self) -> float:
        if self.budget <= 0:
            return 1.0
        return min(self.state.token_count / self.budget, 1.0)

    def format(self, progress: float, loss: float) -> str:
        t = time.time() - self.state.start
        wst = 0.0
        if progress > 0 and t > 0:
            wst = self.state.token_count / t / self.threads
        lr = self.lr * (1.0 - progress)
        return (f"Progress: {progress * 100:5.1f}%"
                f" words/sec/thread: {int(wst):7d}"
                f" lr: {lr:9.6f}"
                f" loss: {loss:9.6f}")

    def _write(self, text: str):
        stream = self.stream or sys.stderr
        stream.write(text)
        stream.flush()

    def run(self, workers: list[threading.Thread]):
        """Report until the token budget is spent or no worker is alive."""
        while (self.state.token_count < self.budget
               and any(w.is_alive() for w in workers)):
            time.sleep(self.interval)
            loss = self.state.loss
            if loss >= 0 and self.verbose > 1:
                self._write("\r" + self.format(self.progress(), loss))

    def finish(self):
        if self.verbose > 0:
            self._write("\r" + self.format(1.0, self.state.loss) + "\n")


# ── trainer ──────────────────────────────────────────────────────────────────


def _check_corpus(path: str):
    if path == "-":
        raise ValueError("Cannot use stdin for training")
    try:
        with open(path, "rb"):
            pass
    except OSError as e:
        raise ValueError(f"{path} cannot be opened for training") from e


class Word2Vec:
    """Skip-gram embeddings trained by N lock-free worker threads.

    ::

        model = Word2Vec.train("corpus.txt", dim=100, thread=8)
        model.save_vectors("vectors")
    """

    __slots__ = ("args", "vocab", "input", "output", "state")

    def __init__(self, *, args: Args, vocab: Vocab, input: Matrix,
                 output: Matrix):
        self.args, self.vocab = args, vocab
        self.input, self.output = input, output
        self.state = TrainingState()

    def get_word_vector(self, word: str) -> np.ndarray:
        i = self.vocab.get_id(word)
        if i < 0:
            raise KeyError(word)
        return self.input.row(i)

    # ── I/O ──────────────────────────────────────────────────────────────

    def save_vectors(self, output: str | None = None):
        """Write ``<output>.source`` and ``<output>.target``.

        One ``<word> <dim floats>`` line per vocabulary entry; a file is
        skipped when its vocabulary is empty.
        """
        output = output or self.args.output
        if not output:
            raise ValueError("no output path given for saving vectors")
        v = self.vocab
        if v.nwords > 0:
            _write_vectors(output + ".source", "source", self.input,
                           v.nwords, v.get_word)
        if v.ntargets > 0:
            _write_vectors(output + ".target", "target", self.output,
                           v.ntargets, v.get_target)

    # ── training ─────────────────────────────────────────────────────────

    @classmethod
    def train(cls, data, **kwargs) -> Word2Vec:
        """Train on *data* with keyword options of :class:`Args`.

        *data* is a file path or an iterable of token lists. Iterables are
        spilled to a temp file first.
        """
        if isinstance(data, os.PathLike):
            data = os.fspath(data)
        if not isinstance(data, str):
            tmp = tempfile.NamedTemporaryFile(
                mode="w", suffix=".txt", delete=False, encoding="utf-8")
            try:
                for tokens in data:
                    tmp.write(" ".join(tokens) + "\n")
                tmp.close()
                return cls.train(tmp.name, **kwargs)
            finally:
                try:
                    os.unlink(tmp.name)
                except OSError:
                    pass

        return cls.fit(Args(input=data, **kwargs))

    @classmethod
    def fit(cls, args: Args) -> Word2Vec:
        _check_corpus(args.input)
        vocab = Vocab.read_from_file(args.input, args)

        input = Matrix(vocab.nwords + vocab.bucket, args.dim)
        input.uniform(1.0 / args.dim, seed=args.seed)
        output = Matrix(vocab.nwords, args.dim).zero()

        model = cls(args=args, vocab=vocab, input=input, output=output)
        model._start_threads()
        return model

    def _start_threads(self):
        args, vocab = self.args, self.vocab
        state = self.state = TrainingState()
        monitor = ProgressMonitor(state, budget=args.epoch * vocab.ntokens,
                                  lr=args.lr, threads=args.thread,
                                  verbose=args.verbose)
        errors: list[Exception] = []
        workers = []
        if vocab.nwords > 0:
            targets = Targets.from_counts(vocab.get_counts(), args.loss,
                                          seed=args.seed)
            workers = [threading.Thread(target=self._run_worker,
                                        args=(i, state, targets, errors),
                                        name=f"w2v-worker-{i}")
                       for i in range(args.thread)]
        elif args.verbose > 0:
            print("Empty vocabulary, nothing to train", file=sys.stderr)

        for w in workers:
            w.start()
        monitor.run(workers)
        for w in workers:
            w.join()
        if errors:
            raise errors[0]
        monitor.finish()

    def _run_worker(self, thread_id, state, targets, errors):
        try:
            self._train_thread(thread_id, state, targets)
        except Exception as e:
            # re-raised by _start_threads once every worker has joined
            errors.append(e)

    def _train_thread(self, thread_id: int, state: TrainingState,
                      targets: Targets):
        args, vocab = self.args, self.vocab
        budget = args.epoch * vocab.ntokens
        model = Model(self.input, self.output, args,
                      thread_id=thread_id, targets=targets)

        with CorpusReader(args.input) as reader:
            reader.seek(thread_id * reader.size // args.thread)
            local_tokens = 0
            while state.token_count < budget:
                progress = state.token_count / budget
                lr = annealed_lr(args.lr, progress)
                ntokens, line = vocab.get_line(reader, model)
                local_tokens += ntokens
                skipgram(model, lr, line, vocab)
                if local_tokens > args.lr_update_rate:
                    state.add_tokens(local_tokens)
                    local_tokens = 0
                    if thread_id == 0 and args.verbose > 1:
                        state.set_loss(model.get_loss())
            if thread_id == 0:
                state.set_loss(model.get_loss())


def _write_vectors(path, kind, matrix, n, name_of):
    try:
        f = open(path, "w", encoding="utf-8")
    except OSError as e:
        raise ValueError(
            f"{path} cannot be opened for saving {kind} embedding.") from e
    with f:
        for i in range(n):
            vec = matrix.row(i)
            f.write(name_of(i) + " "
                    + " ".join(f"{x:.5g}" for x in vec) + "\n")


# ── CLI ──────────────────────────────────────────────────────────────────────


def _cli(argv=None) -> int:
    p = argparse.ArgumentParser(prog="w2v")
    sub = p.add_subparsers(dest="cmd", metavar="<command>")

    for name, help_text in COMMANDS.items():
        tr = sub.add_parser(name, help=help_text)
        tr.add_argument("corpus")
        tr.add_argument("-o", "--output", required=True)
        tr.add_argument("--dim",            type=int,   default=100)
        tr.add_argument("--ws",             type=int,   default=5)
        tr.add_argument("--epoch",          type=int,   default=5)
        tr.add_argument("--lr",             type=float, default=0.05)
        tr.add_argument("--lr-update-rate", type=int,   default=100)
        tr.add_argument("--thread",         type=int,   default=12)
        tr.add_argument("--min-count",      type=int,   default=5)
        tr.add_argument("--neg",            type=int,   default=5)
        tr.add_argument("--loss",           choices=("ns", "hs"), default="ns")
        tr.add_argument("--t",              type=float, default=1e-4)
        tr.add_argument("--bucket",         type=int,   default=2_000_000)
        tr.add_argument("--minn",           type=int,   default=3)
        tr.add_argument("--maxn",           type=int,   default=6)
        tr.add_argument("--radical",        default="")
        tr.add_argument("--seed",           type=int,   default=0)
        tr.add_argument("--verbose",        type=int,   default=2)

    args = p.parse_args(argv)
    if args.cmd is None:
        p.print_help(sys.stderr)
        return 1

    if args.verbose > 0:
        print(f"Train embedding using {args.cmd} model", file=sys.stderr)
    try:
        m = Word2Vec.train(
            args.corpus, output=args.output, model=args.cmd,
            dim=args.dim, ws=args.ws, epoch=args.epoch, lr=args.lr,
            lr_update_rate=args.lr_update_rate, thread=args.thread,
            min_count=args.min_count, neg=args.neg, loss=args.loss,
            t=args.t, bucket=args.bucket, minn=args.minn, maxn=args.maxn,
            radical=args.radical, seed=args.seed, verbose=args.verbose)
        m.save_vectors()
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    if args.verbose > 0:
        print(f"Train embedding using {args.cmd} model has finished",
              file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(_cli())
