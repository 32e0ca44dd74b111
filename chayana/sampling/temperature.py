"""Temperature scaling, fixed and entropy-adaptive."""

from __future__ import annotations

import math

import torch

from chayana.sampling.base import SamplerStage
from chayana.sampling.candidates import CandidateSet


def apply_temperature(cur: CandidateSet, t: float) -> None:
    """l_i' = l_i / t. For t <= 0 the max logit is kept, the rest become -inf."""
    if len(cur) == 0:
        return
    if t <= 0.0:
        # first max wins; order is left untouched
        max_i = int(torch.argmax(cur.logits))
        keep = cur.logits[max_i].clone()
        cur.logits.fill_(float("-inf"))
        cur.logits[max_i] = keep
        return
    cur.logits = cur.logits / t


class Temperature(SamplerStage):
    """Divide every logit by ``t``; ``t <= 0`` degenerates to argmax pass-through."""

    name = "temp"

    def __init__(self, t: float):
        super().__init__()
        self.t = float(t)

    def apply(self, cur: CandidateSet) -> None:
        apply_temperature(cur, self.t)

    def __repr__(self) -> str:
        return f"Temperature(t={self.t})"


class ExtendedTemperature(SamplerStage):
    """Dynamic temperature (entropy sampling), https://arxiv.org/abs/2309.02772.

    The temperature used for a step lies in ``[t - delta, t + delta]`` and
    grows with the normalized entropy of the current distribution raised to
    ``exponent``: a model that is already unsure gets flattened further, a
    confident one gets sharpened.
    """

    name = "temp-ext"

    def __init__(self, t: float, delta: float, exponent: float):
        super().__init__()
        self.t = float(t)
        self.delta = float(delta)
        self.exponent = float(exponent)

    def apply(self, cur: CandidateSet) -> None:
        if self.delta <= 0.0:
            apply_temperature(cur, self.t)
            return

        # entropy is zero for a single candidate
        if len(cur) <= 1:
            return

        min_temp = max(0.0, self.t - self.delta)
        max_temp = self.t + self.delta

        cur.softmax_()
        max_entropy = math.log(len(cur))
        p = cur.probs[cur.probs > 0.0]
        entropy = float(-(p * torch.log(p)).sum())
        normalized_entropy = entropy / max_entropy

        dyn_temp = min_temp + (max_temp - min_temp) * math.pow(normalized_entropy, self.exponent)

        apply_temperature(cur, dyn_temp)
        # scaling keeps the order, so this only refreshes probabilities
        cur.softmax_()

    def __repr__(self) -> str:
        return f"ExtendedTemperature(t={self.t}, delta={self.delta}, exponent={self.exponent})"
