"""Terminal selectors: the stages that actually pick a token."""

from __future__ import annotations

import torch

from chayana.sampling.base import (
    SamplerStage,
    clone_generator,
    make_generator,
    resolve_seed,
    sample_index,
)
from chayana.sampling.candidates import CandidateSet


class Greedy(SamplerStage):
    """Select the highest logit. Ties go to the first candidate in current order."""

    name = "greedy"

    def apply(self, cur: CandidateSet) -> None:
        if len(cur) == 0:
            return
        # torch.argmax returns the first maximal index
        cur.selected = int(torch.argmax(cur.logits))


class Dist(SamplerStage):
    """Softmax the candidates and draw one token weighted by probability.

    Args:
        seed: Seed for this stage's own generator. `DEFAULT_SEED` picks a
            random one.
    """

    name = "dist"

    def __init__(self, seed: int):
        super().__init__()
        self.seed = seed
        self.seed_cur = resolve_seed(seed)
        self._rng = make_generator(self.seed_cur)

    def apply(self, cur: CandidateSet) -> None:
        if len(cur) == 0:
            return
        cur.softmax_()
        cur.selected = sample_index(cur.probs, self._rng)

    def reset(self) -> None:
        self.seed_cur = resolve_seed(self.seed)
        self._rng = make_generator(self.seed_cur)

    def _clone_state(self, new: SamplerStage) -> None:
        new._rng = clone_generator(self._rng)

    def __repr__(self) -> str:
        return f"Dist(seed={self.seed_cur})"
