"""Repetition, frequency and presence penalties over recent history."""

from __future__ import annotations

from collections import Counter, deque

import torch

from chayana.sampling.base import SamplerStage
from chayana.sampling.candidates import CandidateSet


class Penalties(SamplerStage):
    """Penalize tokens that appear in the last ``last_n`` accepted tokens.

    For a candidate seen ``c > 0`` times in the window:
      - repeat: logit /= repeat if logit > 0, else logit *= repeat
      - frequency: logit -= c * freq
      - presence: logit -= present

    Args:
        last_n: Window size. 0 disables the stage, negative keeps the whole
            history.
        repeat: Multiplicative penalty, 1.0 = disabled.
        freq: Per-occurrence penalty, 0.0 = disabled.
        present: Flat penalty for any occurrence, 0.0 = disabled.
    """

    name = "penalties"

    def __init__(
        self,
        last_n: int,
        repeat: float = 1.0,
        freq: float = 0.0,
        present: float = 0.0,
    ):
        super().__init__()
        self.last_n = int(last_n)
        self.repeat = float(repeat)
        self.freq = float(freq)
        self.present = float(present)

        self._prev: deque[int] = deque(maxlen=self.last_n if self.last_n > 0 else None)
        self._counts: Counter[int] = Counter()

    @property
    def is_neutral(self) -> bool:
        return self.repeat == 1.0 and self.freq == 0.0 and self.present == 0.0

    def accept(self, token: int) -> None:
        if self.last_n == 0:
            return
        token = int(token)
        if self._prev.maxlen is not None and len(self._prev) == self._prev.maxlen:
            old = self._prev[0]
            self._counts[old] -= 1
            if self._counts[old] == 0:
                del self._counts[old]
        self._prev.append(token)
        self._counts[token] += 1

    def apply(self, cur: CandidateSet) -> None:
        if self.last_n == 0 or self.is_neutral or not self._counts:
            return

        counts = torch.tensor(
            [self._counts.get(t, 0) for t in cur.ids.tolist()],
            dtype=torch.float32,
        )
        seen = counts > 0
        if not bool(seen.any()):
            return

        logits = cur.logits
        scaled = torch.where(logits <= 0.0, logits * self.repeat, logits / self.repeat)
        penalized = scaled - counts * self.freq - self.present
        cur.logits = torch.where(seen, penalized, logits)
        cur.sorted = False

    def history(self) -> list[int]:
        """Tokens currently in the window, oldest first."""
        return list(self._prev)

    def reset(self) -> None:
        self._prev.clear()
        self._counts.clear()

    def _clone_state(self, new: SamplerStage) -> None:
        new._prev = deque(self._prev, maxlen=self._prev.maxlen)
        new._counts = Counter(self._counts)

    def __repr__(self) -> str:
        return (
            f"Penalties(last_n={self.last_n}, repeat={self.repeat}, "
            f"freq={self.freq}, present={self.present})"
        )
