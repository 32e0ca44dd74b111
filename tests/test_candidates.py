"""Tests for the candidate set."""

import pytest
import torch

from chayana.sampling.candidates import Candidate, CandidateSet
from chayana.sampling.selectors import Greedy


class TestConstruction:
    def test_from_logits_assigns_ids_by_position(self):
        cur = CandidateSet.from_logits(torch.tensor([0.5, -1.0, 2.0]))
        assert cur.token_ids() == [0, 1, 2]
        assert cur.logits.tolist() == [0.5, -1.0, 2.0]
        assert not cur.sorted

    def test_is_sorted_is_trusted(self):
        cur = CandidateSet.from_logits([0.0, 1.0], is_sorted=True)
        assert cur.sorted
        cur.sort_()
        # caller asserted sorted, so no reordering happens
        assert cur.token_ids() == [0, 1]

    def test_accepts_plain_lists(self):
        cur = CandidateSet.from_logits([3, 1, 2])
        assert len(cur) == 3
        assert cur.logits.dtype == torch.float32

    def test_does_not_alias_caller_tensor(self):
        scores = torch.tensor([1.0, 2.0, 3.0])
        cur = CandidateSet.from_logits(scores)
        cur.logits[0] = 100.0
        assert scores[0].item() == 1.0

    def test_mismatched_lengths_rejected(self):
        with pytest.raises(ValueError):
            CandidateSet(torch.tensor([0, 1]), torch.tensor([1.0]))

    def test_from_candidates_keeps_order(self):
        cur = CandidateSet.from_candidates([Candidate(7, 1.0), Candidate(3, 2.0)])
        assert cur.token_ids() == [7, 3]


class TestSelection:
    def test_selected_absent_before_terminal_stage(self, ramp: CandidateSet):
        assert ramp.selected_token() is None

    def test_apply_delegates_to_stage(self, ramp: CandidateSet):
        ramp.apply(Greedy())
        assert ramp.selected_token() == 9

    def test_truncation_clears_selection(self, ramp: CandidateSet):
        ramp.apply(Greedy())
        ramp.truncate_(3)
        assert ramp.selected_token() is None


class TestInPlaceHelpers:
    def test_sort_is_descending_and_stable(self):
        cur = CandidateSet.from_logits([1.0, 3.0, 1.0, 2.0])
        cur.sort_()
        assert cur.token_ids() == [1, 3, 0, 2]
        assert cur.sorted

    def test_softmax_normalizes(self, ramp: CandidateSet):
        ramp.softmax_()
        assert ramp.probs.sum().item() == pytest.approx(1.0, abs=1e-6)
        assert ramp.token_ids()[0] == 9
        assert torch.all(ramp.probs[:-1] >= ramp.probs[1:])

    def test_truncate_keeps_prefix(self, ramp: CandidateSet):
        ramp.truncate_(4)
        assert ramp.token_ids() == [0, 1, 2, 3]

    def test_keep_preserves_order(self, ramp: CandidateSet):
        ramp.keep_(ramp.ids % 2 == 0)
        assert ramp.token_ids() == [0, 2, 4, 6, 8]

    def test_candidates_snapshot(self):
        cur = CandidateSet.from_logits([0.0, 1.0])
        records = cur.candidates()
        assert records == [Candidate(0, 0.0, 0.0), Candidate(1, 1.0, 0.0)]

    def test_softmax_without_finite_max_has_no_mass(self):
        cur = CandidateSet.from_logits(torch.full((3,), float("-inf")))
        cur.softmax_()
        assert cur.probs.tolist() == [0.0, 0.0, 0.0]


class TestFromScores:
    def test_vector(self):
        cur = CandidateSet.from_scores(torch.tensor([0.5, 1.5]))
        assert cur.logits.tolist() == [0.5, 1.5]

    def test_matrix_row(self):
        scores = torch.tensor([[0.0, 1.0], [2.0, 3.0], [4.0, 5.0]])
        assert CandidateSet.from_scores(scores, idx=1).logits.tolist() == [2.0, 3.0]
        assert CandidateSet.from_scores(scores).logits.tolist() == [4.0, 5.0]

    @pytest.mark.parametrize("idx", [1, -2])
    def test_vector_has_single_row(self, idx: int):
        with pytest.raises(IndexError):
            CandidateSet.from_scores(torch.tensor([0.0, 1.0]), idx=idx)

    def test_rank_checked(self):
        with pytest.raises(ValueError):
            CandidateSet.from_scores(torch.zeros(2, 2, 2))
