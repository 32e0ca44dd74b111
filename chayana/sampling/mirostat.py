"""Mirostat: adaptive truncation that steers surprisal towards a target.

Both variants keep a running control value ``mu`` (initially ``2 * tau``),
truncate the candidates to a cutoff derived from it, draw a token, and then
move ``mu`` by ``eta * (tau - observed_surprisal)``. Both are terminal.

Paper: https://arxiv.org/abs/2007.14966 (tokens are used instead of words).
"""

from __future__ import annotations

import logging
import math

from chayana.sampling.base import (
    SamplerStage,
    clone_generator,
    make_generator,
    resolve_seed,
    sample_index,
)
from chayana.sampling.candidates import CandidateSet
from chayana.sampling.truncation import apply_top_k

logger = logging.getLogger(__name__)


class _MirostatBase(SamplerStage):
    def __init__(self, seed: int, tau: float, eta: float):
        super().__init__()
        self.seed = seed
        self.seed_cur = resolve_seed(seed)
        self.tau = float(tau)
        self.eta = float(eta)
        self.mu = 2.0 * self.tau
        self._rng = make_generator(self.seed_cur)

    def _draw_and_update(self, cur: CandidateSet) -> None:
        cur.softmax_()
        idx = sample_index(cur.probs, self._rng)
        cur.selected = idx
        if idx is None:
            logger.debug(f"{self.name}: no finite distribution to draw from; mu unchanged")
            return

        observed_surprise = -math.log2(float(cur.probs[idx]))
        e = observed_surprise - self.tau
        self.mu = self.mu - self.eta * e

    def reset(self) -> None:
        self.mu = 2.0 * self.tau
        self.seed_cur = resolve_seed(self.seed)
        self._rng = make_generator(self.seed_cur)

    def _clone_state(self, new: SamplerStage) -> None:
        new._rng = clone_generator(self._rng)


class MirostatV1(_MirostatBase):
    """Mirostat 1.0.

    Args:
        n_vocab: Vocabulary size.
        seed: Seed for the stage's own generator.
        tau: Target surprisal (cross-entropy). Higher means more surprising text.
        eta: Learning rate for updating ``mu`` from the observed error.
        m: Number of top tokens used to estimate the Zipf exponent ``s_hat``
            (the paper uses 100).
    """

    name = "mirostat"

    def __init__(self, n_vocab: int, seed: int, tau: float, eta: float, m: int = 100):
        super().__init__(seed, tau, eta)
        self.n_vocab = int(n_vocab)
        self.m = int(m)

    def apply(self, cur: CandidateSet) -> None:
        if len(cur) == 0:
            return
        cur.softmax_()

        k = self._estimate_k(cur)
        apply_top_k(cur, max(k, 1))
        self._draw_and_update(cur)

    def _estimate_k(self, cur: CandidateSet) -> int:
        probs = cur.probs.tolist()

        # least-squares fit of log(p_i / p_i+1) against log((i+2) / (i+1))
        sum_ti_bi = 0.0
        sum_ti_sq = 0.0
        for i in range(min(self.m - 1, len(probs) - 1)):
            if probs[i + 1] <= 0.0:
                break
            t_i = math.log((i + 2) / (i + 1))
            b_i = math.log(probs[i] / probs[i + 1])
            sum_ti_bi += t_i * b_i
            sum_ti_sq += t_i * t_i
        if sum_ti_sq == 0.0:
            return 1
        s_hat = sum_ti_bi / sum_ti_sq

        epsilon_hat = s_hat - 1.0
        try:
            k = math.pow(
                (epsilon_hat * math.pow(2.0, self.mu)) / (1.0 - math.pow(self.n_vocab, -epsilon_hat)),
                1.0 / s_hat,
            )
        except (ValueError, ZeroDivisionError, OverflowError):
            # flat or degenerate distributions have no meaningful Zipf fit
            logger.debug(f"mirostat: no k estimate for s_hat={s_hat:.4f}, mu={self.mu:.4f}")
            return len(probs)
        if not math.isfinite(k):
            return len(probs)
        return int(k)

    def __repr__(self) -> str:
        return (
            f"MirostatV1(n_vocab={self.n_vocab}, seed={self.seed_cur}, tau={self.tau}, "
            f"eta={self.eta}, m={self.m}, mu={self.mu:.4f})"
        )


class MirostatV2(_MirostatBase):
    """Mirostat 2.0: truncate directly at surprisal ``mu``.

    Args:
        seed: Seed for the stage's own generator.
        tau: Target surprisal.
        eta: Learning rate for ``mu``.
    """

    name = "mirostat-v2"

    def apply(self, cur: CandidateSet) -> None:
        if len(cur) == 0:
            return
        cur.softmax_()

        # probs are descending, so surprisal is ascending; cut at the first one above mu
        surprisal = [-math.log2(p) if p > 0.0 else math.inf for p in cur.probs.tolist()]
        n_keep = next((i for i, s in enumerate(surprisal) if s > self.mu), len(surprisal))
        cur.truncate_(max(n_keep, 1))

        self._draw_and_update(cur)

    def __repr__(self) -> str:
        return (
            f"MirostatV2(seed={self.seed_cur}, tau={self.tau}, eta={self.eta}, mu={self.mu:.4f})"
        )
