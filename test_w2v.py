"""w2v building-block tests: vocabulary, corpus cursor, sampling, model.

Usage:
    python3 -m pytest test_w2v.py -v
"""

import os
import tempfile
import threading

import numpy as np
import pytest

from w2v import (
    EOS, Args, CorpusReader, Matrix, Model, TrainingState, Vocab,
    _huffman_tree, annealed_lr, char_ngrams, context_bounds, seek_line_start,
    skipgram, uniform_int, worker_seed,
)

DIM = 8


def _write(text):
    f = tempfile.NamedTemporaryFile(
        mode="w", suffix=".txt", delete=False, prefix="w2v_", encoding="utf-8")
    f.write(text)
    f.close()
    return f.name


@pytest.fixture
def corpus():
    path = _write("a b a\nb a c\n")
    yield path
    os.unlink(path)


def _vocab(path, **kw):
    kw.setdefault("min_count", 1)
    kw.setdefault("verbose", 0)
    kw.setdefault("dim", DIM)
    args = Args(input=path, **kw)
    return args, Vocab.read_from_file(path, args)


def _model(args, vocab):
    inp = Matrix(vocab.nwords + vocab.bucket, args.dim).uniform(
        1.0 / args.dim, seed=0)
    out = Matrix(vocab.nwords, args.dim).zero()
    model = Model(inp, out, args, thread_id=1)
    model.set_target_counts(vocab.get_counts())
    return model


class TestVocab:

    def test_sorted_by_count_with_eos(self, corpus):
        """Words sorted by descending count, </s> counted once per line."""
        _, v = _vocab(corpus)
        assert v.words == ["a", EOS, "b", "c"]
        assert list(v.get_counts()) == [3, 2, 2, 1]
        assert v.eos_id == 1
        assert v.ntokens == 8

    def test_min_count_prunes(self, corpus):
        _, v = _vocab(corpus, min_count=2)
        assert v.words == ["a", EOS, "b"]
        assert v.get_id("c") == -1
        # pruned tokens still count toward the corpus size
        assert v.ntokens == 8

    def test_literal_eos_merges(self):
        """A literal </s> token shares the end-of-line id."""
        path = _write("x </s>\n")
        try:
            _, v = _vocab(path)
        finally:
            os.unlink(path)
        assert v.words[0] == EOS
        assert v.get_counts()[0] == 2
        assert v.words.count(EOS) == 1

    def test_empty_corpus(self):
        path = _write("")
        try:
            _, v = _vocab(path)
        finally:
            os.unlink(path)
        assert v.nwords == 0
        assert v.ntokens == 0

    def test_skipgram_groups_are_singletons(self, corpus):
        _, v = _vocab(corpus)
        for i in range(v.nwords):
            assert list(v.source_group(i)) == [i]

    def test_subword_groups(self, corpus):
        """Each word's group is itself plus hashed n-gram rows."""
        _, v = _vocab(corpus, model="subword", bucket=50, minn=1, maxn=2)
        for i in range(v.nwords):
            g = v.source_group(i)
            assert g[0] == i
            if v.get_word(i) == EOS:
                assert len(g) == 1
            else:
                assert len(g) > 1
                assert all(v.nwords <= r < v.nwords + 50 for r in g[1:])

    def test_subradical_groups(self, corpus):
        rad = _write("a X\nb Y\n")
        try:
            _, v = _vocab(corpus, model="subradical", bucket=1000,
                          radical=rad)
        finally:
            os.unlink(rad)
        # character + radical for "a" and "b", character only for "c"
        assert len(v.source_group(v.get_id("a"))) == 3
        assert len(v.source_group(v.get_id("c"))) == 2


class TestCharNgrams:

    def test_boundary_markers(self):
        assert char_ngrams("ab", 3, 3) == ["<ab", "ab>"]

    def test_single_boundary_char_skipped(self):
        assert char_ngrams("a", 1, 2) == ["<a", "a", "a>"]


class TestArgs:

    @pytest.mark.parametrize("kw", [
        {"model": "cbow"},
        {"loss": "softmax"},
        {"dim": 0},
        {"thread": 0},
        {"lr": 0.0},
        {"model": "subradical"},
        {"model": "subword", "minn": 4, "maxn": 3},
        {"model": "subword", "bucket": 0},
    ])
    def test_invalid(self, kw):
        with pytest.raises(ValueError):
            Args(input="x", **kw)

    def test_bucket_rows(self):
        assert Args(input="x").bucket_rows == 0
        assert Args(input="x", model="subchar_chinese", bucket=7).bucket_rows == 7


class TestSeekLineStart:

    @pytest.mark.parametrize("offset,expected", [
        (0, 0), (1, 3), (3, 3), (4, 6), (7, 0), (8, 0),
    ])
    def test_offsets(self, offset, expected):
        buf = np.frombuffer(b"ab\ncd\nef", dtype=np.uint8)
        assert seek_line_start(buf, len(buf), offset) == expected


class TestReadLine:

    def test_lines_in_order_then_wrap(self, corpus):
        """Reads line by line; the cursor wraps to the start at EOF."""
        args, v = _vocab(corpus, t=1.0)
        model = _model(args, v)
        a, b, c, e = (v.get_id(w) for w in ("a", "b", "c", EOS))
        with CorpusReader(corpus) as reader:
            n, line = v.get_line(reader, model)
            assert (n, list(line)) == (4, [a, b, a, e])
            n, line = v.get_line(reader, model)
            assert (n, list(line)) == (4, [b, a, c, e])
            n, line = v.get_line(reader, model)
            assert (n, len(line)) == (0, 0)
            assert reader.pos == 0
            n, line = v.get_line(reader, model)
            assert list(line) == [a, b, a, e]

    def test_seek_resyncs_to_line(self, corpus):
        args, v = _vocab(corpus, t=1.0)
        model = _model(args, v)
        with CorpusReader(corpus) as reader:
            assert reader.seek(4) == 6
            _, line = v.get_line(reader, model)
            assert v.get_word(line[0]) == "b"

    def test_oov_skipped(self, corpus):
        args, v = _vocab(corpus, t=1.0, min_count=2)
        model = _model(args, v)
        with CorpusReader(corpus) as reader:
            v.get_line(reader, model)
            n, line = v.get_line(reader, model)
        assert n == 3
        assert [v.get_word(i) for i in line] == ["b", "a", EOS]

    def test_subsampling_drops_frequent(self):
        """With a tiny t most occurrences of a dominant word are dropped."""
        path = _write(("the " * 200 + "rare\n") * 5)
        try:
            args, v = _vocab(path, t=1e-4)
            model = _model(args, v)
            kept = 0
            with CorpusReader(path) as reader:
                for _ in range(5):
                    n, line = v.get_line(reader, model)
                    assert n == 202
                    kept += int(np.sum(line == v.get_id("the")))
        finally:
            os.unlink(path)
        assert kept < 200


class TestContextSampler:

    def test_context_bounds(self):
        assert context_bounds(1, 1, 4) == (0, 2)
        assert context_bounds(1, 2, 4) == (0, 3)
        assert context_bounds(0, 5, 1) == (0, 0)

    def test_uniform_int_range(self):
        state = np.array([worker_seed(0, 0), 0], dtype=np.int64)
        draws = {int(uniform_int(state, 1, 5)) for _ in range(1000)}
        assert draws == {1, 2, 3, 4, 5}

    def test_window_one_pairs(self):
        """ws=1 gives exactly the adjacent pairs of the line."""
        path = _write("a b c d\n")
        try:
            args, v = _vocab(path, ws=1, loss="hs")
        finally:
            os.unlink(path)
        model = _model(args, v)
        line = np.array([v.get_id(w) for w in "abcd"], dtype=np.int32)
        assert skipgram(model, 0.05, line, v) == 6

    def test_window_scenario(self):
        """Position 1 of a 4-word line: boundary 1 -> {0, 2}, 2 -> {0, 2, 3}."""
        def positions(w, boundary, n):
            lo, hi = context_bounds(w, boundary, n)
            return {p for p in range(lo, hi + 1) if p != w}

        assert positions(1, 1, 4) == {0, 2}
        assert positions(1, 2, 4) == {0, 2, 3}

    @pytest.mark.parametrize("thread_id", range(6))
    def test_per_position_windows_replayed(self, thread_id):
        """Replaying the window draws predicts the exact update count."""
        path = _write("a b c d\n")
        try:
            args, v = _vocab(path, ws=2, loss="hs")
        finally:
            os.unlink(path)
        model = _model(args, v)
        model.state[0] = worker_seed(args.seed, thread_id)
        line = np.array([v.get_id(w) for w in "abcd"], dtype=np.int32)

        # hs draws nothing else from the generator, so the replay is exact
        replay = model.state.copy()
        expected = 0
        for w in range(len(line)):
            boundary = int(uniform_int(replay, 1, args.ws))
            assert 1 <= boundary <= args.ws
            lo, hi = context_bounds(w, boundary, len(line))
            expected += hi - lo
        assert skipgram(model, 0.05, line, v) == expected
        assert model.state[0] == replay[0]
        assert model.stats[1] == expected

    def test_update_count_bounded(self, corpus):
        args, v = _vocab(corpus, ws=3, loss="hs")
        model = _model(args, v)
        rng = np.random.RandomState(0)
        for _ in range(20):
            line = rng.randint(0, v.nwords, size=rng.randint(1, 12)).astype(np.int32)
            n = skipgram(model, 0.05, line, v)
            assert 0 < n <= 2 * 3 * len(line) or len(line) == 1

    def test_empty_and_single_line(self, corpus):
        args, v = _vocab(corpus, loss="hs")
        model = _model(args, v)
        assert skipgram(model, 0.05, np.zeros(0, np.int32), v) == 0
        assert skipgram(model, 0.05, np.array([0], np.int32), v) == 0

    def test_only_line_rows_touched(self):
        """Input rows of words outside the line are left alone."""
        path = _write("a b c d e\n")
        try:
            args, v = _vocab(path)
        finally:
            os.unlink(path)
        model = _model(args, v)
        line = np.array([v.get_id("a"), v.get_id("b")], dtype=np.int32)
        before = model.input.data.copy()
        skipgram(model, 0.1, line, v)
        others = [i for i in range(v.nwords) if i not in set(line)]
        assert np.array_equal(model.input.data[others], before[others])
        assert not np.array_equal(model.input.data[line], before[line])


class TestAnneal:

    def test_linear(self):
        assert annealed_lr(0.05, 0.0) == pytest.approx(0.05)
        assert annealed_lr(0.05, 0.5) == pytest.approx(0.025)

    def test_floor(self):
        assert annealed_lr(0.05, 0.9999) == pytest.approx(5e-6)
        assert annealed_lr(0.05, 1.5) == pytest.approx(5e-6)

    def test_non_increasing(self):
        lrs = [annealed_lr(0.1, p) for p in np.linspace(0, 1.2, 50)]
        assert all(x >= y for x, y in zip(lrs, lrs[1:]))


class TestModel:

    def _args(self, **kw):
        return Args(input="x", dim=4, verbose=0, **kw)

    def test_update_needs_targets(self):
        m = Model(Matrix(3, 4), Matrix(3, 4), self._args())
        with pytest.raises(RuntimeError):
            m.update([0], 1, 0.1)

    def test_first_ns_loss(self):
        """Zeroed output rows give loss (1 + neg) * log 2 on the first step."""
        args = self._args(neg=5)
        m = Model(Matrix(3, 4).uniform(0.25, seed=0), Matrix(3, 4).zero(), args)
        m.set_target_counts(np.array([5, 3, 2]))
        assert m.get_loss() == 0.0
        m.update([1], 0, 0.001)
        assert m.get_loss() == pytest.approx(6 * np.log(2), rel=1e-3)

    def test_bounds_checked(self):
        args = self._args()
        m = Model(Matrix(3, 4), Matrix(3, 4), args)
        m.set_target_counts(np.array([5, 3, 2]))
        with pytest.raises(IndexError):
            m.update([99], 0, 0.1)
        with pytest.raises(IndexError):
            m.update([0], 3, 0.1)

    @pytest.mark.parametrize("loss", ["ns", "hs"])
    def test_learning_raises_score(self, loss):
        args = self._args(loss=loss, neg=2)
        inp = Matrix(4, 4).uniform(0.25, seed=0)
        out = Matrix(4, 4).zero()
        m = Model(inp, out, args)
        m.set_target_counts(np.array([8, 4, 2, 1]))
        for _ in range(100):
            m.update([1], 0, 0.1)
        assert m.get_loss() > 0
        assert np.any(out.data != 0)
        if loss == "ns":
            score = 1 / (1 + np.exp(-out.data[0] @ inp.data[1]))
            assert score > 0.5

    def test_huffman_paths(self):
        offsets, nodes, codes = _huffman_tree(np.array([5.0, 3.0, 2.0, 1.0]))
        lengths = np.diff(offsets)
        assert len(lengths) == 4
        assert np.all(lengths >= 1)
        assert lengths[0] <= lengths[-1]
        assert np.all((nodes >= 0) & (nodes < 3))
        assert set(codes.tolist()) <= {0, 1}
        paths = {tuple(codes[offsets[i]:offsets[i + 1]]) for i in range(4)}
        assert len(paths) == 4

    def test_huffman_single_word(self):
        offsets, nodes, _ = _huffman_tree(np.array([3.0]))
        assert list(offsets) == [0, 0]
        assert len(nodes) == 0


class TestMatrix:

    def test_uniform_bounds(self):
        m = Matrix(10, 5).uniform(0.2, seed=1)
        assert m.data.dtype == np.float32
        assert np.all(np.abs(m.data) <= 0.2)
        assert (m.m, m.n) == (10, 5)

    def test_row_bounds(self):
        m = Matrix(2, 3)
        with pytest.raises(IndexError):
            m.row(2)
        with pytest.raises(IndexError):
            m.row(-1)


class TestConcurrency:

    def test_worker_seeds_distinct(self):
        seeds = [worker_seed(0, i) for i in range(16)]
        assert len(set(seeds)) == 16
        assert all(s > 0 for s in seeds)
        assert worker_seed(2147483645, 1) > 0

    def test_model_seeded_by_thread(self):
        """A worker's generator starts at worker_seed(seed, thread_id)."""
        args = Args(input="x", dim=4, seed=7, verbose=0)
        for tid in range(4):
            m = Model(Matrix(3, 4), Matrix(3, 4), args, thread_id=tid)
            assert m.state[0] == worker_seed(7, tid)

    def test_token_count_under_contention(self):
        state = TrainingState()

        def add():
            for _ in range(10_000):
                state.add_tokens(1)

        threads = [threading.Thread(target=add) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert state.token_count == 80_000
        assert state.loss == -1.0
