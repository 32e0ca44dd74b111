"""Truncation samplers: top-k, top-p, min-p, locally typical, XTC.

Each one shrinks the candidate set according to a different notion of
"plausible token". All of them work on a sorted view and honour a
``min_keep`` floor where the criterion could otherwise empty the set.
"""

from __future__ import annotations

import math

import torch

from chayana.sampling.base import (
    SamplerStage,
    clone_generator,
    make_generator,
    resolve_seed,
)
from chayana.sampling.candidates import CandidateSet


def apply_top_k(cur: CandidateSet, k: int) -> None:
    """Sort and keep the ``k`` highest logits. ``k <= 0`` leaves the set alone."""
    if k <= 0:
        return
    cur.sort_()
    cur.truncate_(k)


class TopK(SamplerStage):
    """Top-K sampling, "The Curious Case of Neural Text Degeneration"
    (https://arxiv.org/abs/1904.09751)."""

    name = "top-k"

    def __init__(self, k: int):
        super().__init__()
        self.k = int(k)

    def apply(self, cur: CandidateSet) -> None:
        apply_top_k(cur, self.k)

    def __repr__(self) -> str:
        return f"TopK(k={self.k})"


class TopP(SamplerStage):
    """Nucleus sampling: smallest prefix with cumulative probability >= p."""

    name = "top-p"

    def __init__(self, p: float, min_keep: int = 1):
        super().__init__()
        self.p = float(p)
        self.min_keep = int(min_keep)

    def apply(self, cur: CandidateSet) -> None:
        if self.p >= 1.0 or len(cur) == 0:
            return
        cur.softmax_()

        cum = torch.cumsum(cur.probs, dim=0)
        positions = torch.arange(1, len(cur) + 1)
        hits = torch.nonzero((cum >= self.p) & (positions >= self.min_keep))
        if hits.numel() == 0:
            return
        cur.truncate_(int(hits[0]) + 1)

    def __repr__(self) -> str:
        return f"TopP(p={self.p}, min_keep={self.min_keep})"


class MinP(SamplerStage):
    """Min-P sampling: keep tokens with p >= ``p`` * max p.

    Evaluated on logits: ``p_i >= p * p_max`` is ``l_i >= l_max + log(p)``.
    """

    name = "min-p"

    def __init__(self, p: float, min_keep: int = 1):
        super().__init__()
        self.p = float(p)
        self.min_keep = int(min_keep)

    def apply(self, cur: CandidateSet) -> None:
        if self.p <= 0.0 or len(cur) == 0:
            return
        cur.sort_()

        min_logit = float(cur.logits[0]) + math.log(self.p)
        n_keep = int((cur.logits >= min_logit).sum())
        cur.truncate_(max(n_keep, self.min_keep))

    def __repr__(self) -> str:
        return f"MinP(p={self.p}, min_keep={self.min_keep})"


class Typical(SamplerStage):
    """Locally typical sampling, https://arxiv.org/abs/2202.00666.

    Ranks candidates by how close their surprisal is to the distribution's
    entropy and keeps the most typical ones until their mass exceeds ``p``.
    The result is in typicality order, not probability order.
    """

    name = "typical"

    def __init__(self, p: float, min_keep: int = 1):
        super().__init__()
        self.p = float(p)
        self.min_keep = int(min_keep)

    def apply(self, cur: CandidateSet) -> None:
        if self.p >= 1.0 or len(cur) == 0:
            return
        cur.softmax_()

        log_probs = torch.log(cur.probs)
        nonzero = cur.probs > 0.0
        entropy = float(-(cur.probs[nonzero] * log_probs[nonzero]).sum())

        shifted = torch.abs(-log_probs - entropy)
        order = torch.sort(shifted, stable=True).indices

        cum = torch.cumsum(cur.probs[order], dim=0)
        positions = torch.arange(len(cur))
        hits = torch.nonzero((cum > self.p) & (positions >= self.min_keep - 1))
        last_idx = int(hits[0]) + 1 if hits.numel() > 0 else len(cur)

        cur.permute_(order[:last_idx], is_sorted=False)

    def __repr__(self) -> str:
        return f"Typical(p={self.p}, min_keep={self.min_keep})"


class XTC(SamplerStage):
    """Exclude Top Choices (https://github.com/oobabooga/text-generation-webui/pull/6335).

    With probability ``p`` per step, drops every candidate whose probability
    is at least ``t`` except the least likely of them, which pushes the model
    off its most predictable continuations while keeping one viable choice.
    """

    name = "xtc"

    def __init__(self, p: float, t: float, min_keep: int = 1, seed: int = 0):
        super().__init__()
        self.p = float(p)
        self.t = float(t)
        self.min_keep = int(min_keep)
        self.seed = seed
        self.seed_cur = resolve_seed(seed)
        self._rng = make_generator(self.seed_cur)

    def apply(self, cur: CandidateSet) -> None:
        if self.p <= 0.0 or self.t > 0.5 or len(cur) < 2:
            return

        chance = float(torch.rand(1, generator=self._rng))
        if chance > self.p:
            return

        cur.softmax_()

        # probs are descending, so the above-threshold run is a prefix
        n_above = int((cur.probs >= self.t).sum())
        pos_last = max(n_above - 1, 0)

        if len(cur) - pos_last >= self.min_keep and pos_last > 0:
            cur.permute_(torch.arange(pos_last, len(cur)), is_sorted=True)

    def reset(self) -> None:
        self.seed_cur = resolve_seed(self.seed)
        self._rng = make_generator(self.seed_cur)

    def _clone_state(self, new: SamplerStage) -> None:
        new._rng = clone_generator(self._rng)

    def __repr__(self) -> str:
        return f"XTC(p={self.p}, t={self.t}, min_keep={self.min_keep}, seed={self.seed_cur})"
