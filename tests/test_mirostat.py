"""Tests for Mirostat 1.0 and 2.0."""

import pytest
import torch

from chayana.sampling.candidates import CandidateSet
from chayana.sampling.mirostat import MirostatV1, MirostatV2


class TestMirostatV2:
    def test_single_candidate_moves_mu(self):
        stage = MirostatV2(seed=1, tau=5.0, eta=0.1)
        assert stage.mu == pytest.approx(10.0)

        cur = CandidateSet.from_logits([3.0])
        stage.apply(cur)

        assert cur.selected_token() == 0
        # surprisal 0, error -5, mu 10 + 0.1 * 5
        assert stage.mu == pytest.approx(10.5)

    def test_peaked_distribution_selects_peak(self, peaked_logits: torch.Tensor):
        stage = MirostatV2(seed=3, tau=1.0, eta=0.1)
        cur = CandidateSet.from_logits(peaked_logits)
        stage.apply(cur)
        assert cur.selected_token() == 42
        assert len(cur) == 1

    def test_empty_set_selects_nothing(self):
        stage = MirostatV2(seed=1, tau=5.0, eta=0.1)
        cur = CandidateSet.from_logits(torch.tensor([]))
        stage.apply(cur)
        assert cur.selected_token() is None
        assert stage.mu == pytest.approx(10.0)

    def test_seed_is_reproducible(self):
        gen = torch.Generator().manual_seed(5)
        rows = [torch.randn(32, generator=gen) for _ in range(10)]

        def run() -> list[int]:
            stage = MirostatV2(seed=77, tau=3.0, eta=0.2)
            out = []
            for row in rows:
                cur = CandidateSet.from_logits(row)
                stage.apply(cur)
                out.append(cur.selected_token())
            return out

        assert run() == run()

    def test_reset_restores_mu(self):
        stage = MirostatV2(seed=1, tau=5.0, eta=0.1)
        stage.apply(CandidateSet.from_logits([3.0]))
        stage.reset()
        assert stage.mu == pytest.approx(10.0)

    def test_clone_copies_mu(self):
        stage = MirostatV2(seed=1, tau=5.0, eta=0.1)
        stage.apply(CandidateSet.from_logits([3.0]))
        clone = stage.clone()
        assert clone.mu == pytest.approx(10.5)
        clone.apply(CandidateSet.from_logits([3.0]))
        assert stage.mu == pytest.approx(10.5)
        assert clone.mu == pytest.approx(11.0)


class TestMirostatV1:
    def test_peaked_distribution_selects_peak(self, peaked_logits: torch.Tensor):
        stage = MirostatV1(n_vocab=100, seed=1, tau=5.0, eta=0.1)
        cur = CandidateSet.from_logits(peaked_logits)
        stage.apply(cur)
        assert cur.selected_token() == 42
        # near-zero surprisal pushes mu up by eta * tau
        assert stage.mu == pytest.approx(10.5, abs=1e-3)

    def test_zipf_distribution_cutoff(self):
        # p_i ~ 1 / (i + 1)^s gives s_hat = s exactly
        n, s, tau = 50, 1.5, 3.0
        logits = -s * torch.log(torch.arange(1, n + 1, dtype=torch.float32))
        stage = MirostatV1(n_vocab=n, seed=1, tau=tau, eta=0.1)

        mu = 2.0 * tau
        expected = int(((s - 1.0) * 2.0**mu / (1.0 - n ** -(s - 1.0))) ** (1.0 / s))
        assert expected == 11

        cur = CandidateSet.from_logits(logits)
        stage.apply(cur)
        assert len(cur) == expected
        assert cur.token_ids() == list(range(expected))
        assert cur.selected_token() in range(expected)

    def test_flat_distribution_keeps_every_candidate(self):
        stage = MirostatV1(n_vocab=8, seed=1, tau=5.0, eta=0.1)
        cur = CandidateSet.from_logits(torch.zeros(8))
        stage.apply(cur)
        assert len(cur) == 8
        assert cur.selected_token() in range(8)

    def test_seed_is_reproducible(self):
        gen = torch.Generator().manual_seed(8)
        rows = [torch.randn(64, generator=gen) * 3 for _ in range(10)]

        def run() -> list[int]:
            stage = MirostatV1(n_vocab=64, seed=2024, tau=4.0, eta=0.1)
            out = []
            for row in rows:
                cur = CandidateSet.from_logits(row)
                stage.apply(cur)
                out.append(cur.selected_token())
            return out

        assert run() == run()

    def test_reset_restores_mu(self, peaked_logits: torch.Tensor):
        stage = MirostatV1(n_vocab=100, seed=1, tau=5.0, eta=0.1)
        stage.apply(CandidateSet.from_logits(peaked_logits))
        assert stage.mu != pytest.approx(10.0)
        stage.reset()
        assert stage.mu == pytest.approx(10.0)
