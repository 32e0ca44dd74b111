"""Tests for the DRY repetition penalty.

Vocabulary (letters_vocab fixture): 0 'a', 1 'b', 2 'c', 3 'd', 4 '\\n',
5 'x\\n', 6 ' ', 7 'e:', 8 ':', 9 '**'.
"""

import pytest
import torch

from chayana.errors import SamplerConfigError
from chayana.sampling.candidates import CandidateSet
from chayana.sampling.dry import DRY, overlapping_token_sequences, z_array
from chayana.tokenizer.vocab import StaticVocabulary


def _zeros() -> CandidateSet:
    return CandidateSet.from_logits(torch.zeros(10))


def _penalties(stage: DRY, history: list[int]) -> list[float]:
    for token in history:
        stage.accept(token)
    cur = _zeros()
    stage.apply(cur)
    return [-x for x in cur.logits.tolist()]


class TestZArray:
    def test_known_values(self):
        assert z_array([1, 0, 2, 1, 0, 2, 1, 0]) == [8, 0, 0, 5, 0, 0, 2, 0]

    def test_empty(self):
        assert z_array([]) == []

    def test_all_equal(self):
        assert z_array([3, 3, 3, 3]) == [4, 3, 2, 1]


class TestBreakerProcessing:
    def test_single_token_breakers(self, letters_vocab: StaticVocabulary):
        seqs = overlapping_token_sequences(letters_vocab, "\n", max_tail_len=20)
        assert seqs == {4: [()], 5: [()]}

    def test_multi_token_breaker_tails(self, letters_vocab: StaticVocabulary):
        # 'e:' and ':' both end with ':', the start of ':**'; the rest '**' is token 9
        seqs = overlapping_token_sequences(letters_vocab, ":**", max_tail_len=20)
        assert seqs == {7: [(9,)], 8: [(9,)]}

    def test_tail_truncated(self, letters_vocab: StaticVocabulary):
        seqs = overlapping_token_sequences(letters_vocab, ":abcd", max_tail_len=2)
        assert seqs[8] == [(0, 1)]

    def test_null_byte_rejected(self, letters_vocab: StaticVocabulary):
        with pytest.raises(SamplerConfigError):
            DRY(letters_vocab, 1.0, 2.0, 2, -1, ["ok", "bad\x00"])

    def test_bytes_breakers_accepted(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 1.0, 2.0, 2, -1, [b"\n"])
        assert stage.sequence_breakers == ["\n"]

    def test_empty_breaker_skipped(self, letters_vocab: StaticVocabulary, caplog):
        with caplog.at_level("WARNING"):
            DRY(letters_vocab, 1.0, 2.0, 2, -1, [""])
        assert "empty DRY sequence breaker" in caplog.text


class TestPenalty:
    def test_penalizes_continuation_of_repeat(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 1.0, 2.0, 2, -1, [])
        penalties = _penalties(stage, [0, 1, 2, 0, 1, 2, 0, 1])
        # 'c' would extend the 5-token repeat 'a b c a b': 2^(5 - 2)
        assert penalties[2] == pytest.approx(8.0)
        assert sum(penalties) == pytest.approx(8.0)

    def test_short_repeats_are_free(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 1.0, 2.0, 3, -1, [])
        penalties = _penalties(stage, [0, 1, 2, 3, 0, 1])
        assert all(p == 0.0 for p in penalties)

    def test_multiplier_scales(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 0.5, 2.0, 2, -1, [])
        penalties = _penalties(stage, [0, 1, 2, 0, 1])
        assert penalties[2] == pytest.approx(0.5)

    def test_breaker_token_is_never_penalized(self, letters_vocab: StaticVocabulary):
        history = [0, 1, 4, 0, 1, 4, 0, 1]
        without = _penalties(DRY(letters_vocab, 1.0, 2.0, 2, -1, []), history)
        assert without[4] == pytest.approx(8.0)

        with_breaker = _penalties(DRY(letters_vocab, 1.0, 2.0, 2, -1, ["\n"]), history)
        assert all(p == 0.0 for p in with_breaker)

    def test_breaker_limits_repeat_length(self, letters_vocab: StaticVocabulary):
        # 'a \n b' repeats; the repeat may not reach back across the newline
        history = [0, 4, 1, 2, 0, 4, 1]
        without = _penalties(DRY(letters_vocab, 1.0, 2.0, 1, -1, []), history)
        assert without[2] == pytest.approx(4.0)

        with_breaker = _penalties(DRY(letters_vocab, 1.0, 2.0, 1, -1, ["\n"]), history)
        assert with_breaker[2] == pytest.approx(1.0)
        assert sum(with_breaker) == pytest.approx(1.0)

    def test_window_limits_history(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 1.0, 2.0, 2, 3, [])
        for token in [0, 1, 2, 0, 1]:
            stage.accept(token)
        assert stage.history() == [2, 0, 1]
        cur = _zeros()
        stage.apply(cur)
        assert torch.all(cur.logits == 0.0)

    def test_exponent_is_clamped(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 1.0, 1000.0, 1, -1, [])
        penalties = _penalties(stage, [0] * 60)
        assert torch.isfinite(torch.tensor(penalties)).all()
        assert penalties[0] > 0.0


class TestState:
    def test_disabled_stage_keeps_no_history(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 0.0, 2.0, 2, -1, ["\n"])
        stage.accept(1)
        assert stage.history() == []
        assert not stage.enabled

    def test_reset_and_clone(self, letters_vocab: StaticVocabulary):
        stage = DRY(letters_vocab, 1.0, 2.0, 2, -1, [])
        stage.accept(0)
        clone = stage.clone()
        clone.accept(1)
        assert stage.history() == [0]
        assert clone.history() == [0, 1]
        stage.reset()
        assert stage.history() == []
