"""Candidate set: the mutable token array every sampler stage operates on.

A candidate is a (token id, logit, probability) triple. The set stores them
as three parallel CPU tensors plus a ``sorted`` flag (descending by logit)
and an optional ``selected`` index written only by terminal stages.
Probabilities are not maintained automatically; stages that need them call
`softmax_()`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import torch

if TYPE_CHECKING:
    from chayana.sampling.base import SamplerStage


@dataclass(frozen=True)
class Candidate:
    """One token under consideration.

    Attributes:
        token_id: Token identifier in ``[0, vocab_size)``.
        logit: Raw (possibly transformed) score.
        p: Probability, meaningful only after normalization.
    """

    token_id: int
    logit: float
    p: float = 0.0


class CandidateSet:
    """Ordered, mutable set of token candidates.

    Usage:
        cur = CandidateSet.from_logits(torch.tensor([0.0, 1.0, 2.0]))
        cur.apply(Greedy())
        cur.selected_token()  # 2
    """

    def __init__(
        self,
        ids: torch.Tensor,
        logits: torch.Tensor,
        probs: Optional[torch.Tensor] = None,
        is_sorted: bool = False,
    ):
        """Build a set from parallel id/logit(/prob) tensors.

        Args:
            ids: Token ids, shape (n,). Must be unique.
            logits: Scores, shape (n,).
            probs: Probabilities, shape (n,). Zeros if omitted.
            is_sorted: Caller assertion that logits are in descending order.
        """
        ids = torch.as_tensor(ids, dtype=torch.long).reshape(-1).cpu()
        logits = torch.as_tensor(logits, dtype=torch.float32).reshape(-1).cpu()
        if ids.shape != logits.shape:
            raise ValueError(
                f"ids and logits must have the same length, got {ids.numel()} and {logits.numel()}"
            )
        if probs is None:
            probs = torch.zeros_like(logits)
        else:
            probs = torch.as_tensor(probs, dtype=torch.float32).reshape(-1).cpu()

        # clone so stages never write through to the caller's buffers
        self.ids = ids.clone()
        self.logits = logits.clone()
        self.probs = probs.clone()
        self.sorted = is_sorted
        self.selected: Optional[int] = None

    @classmethod
    def from_logits(cls, scores, is_sorted: bool = False) -> CandidateSet:
        """Build a set from a raw score vector indexed by token id.

        Args:
            scores: 1-D tensor or array-like; ``scores[i]`` is the logit of token ``i``.
            is_sorted: Caller assertion, not verified.
        """
        logits = torch.as_tensor(scores, dtype=torch.float32).detach().reshape(-1)
        ids = torch.arange(logits.numel(), dtype=torch.long)
        return cls(ids, logits, is_sorted=is_sorted)

    @classmethod
    def from_scores(cls, scores, idx: int = -1) -> CandidateSet:
        """Build a set from the ``idx``-th output row of an evaluation.

        Args:
            scores: One logits vector of shape (vocab_size,) or a matrix of
                shape (n_outputs, vocab_size).
            idx: Row to use; negative counts from the end. A single vector
                only has row 0 (or -1).

        Raises:
            IndexError: If ``idx`` does not name a row.
            ValueError: If ``scores`` is neither 1-D nor 2-D.
        """
        logits = torch.as_tensor(scores).detach()
        if logits.dim() == 1:
            if idx not in (0, -1):
                raise IndexError(f"Output index {idx} out of range for a single logits vector")
            return cls.from_logits(logits)
        if logits.dim() == 2:
            return cls.from_logits(logits[idx])
        raise ValueError(f"Expected 1-D or 2-D logits, got shape {tuple(logits.shape)}")

    @classmethod
    def from_candidates(cls, candidates: list[Candidate], is_sorted: bool = False) -> CandidateSet:
        """Build a set from explicit `Candidate` records, keeping their order."""
        return cls(
            torch.tensor([c.token_id for c in candidates], dtype=torch.long),
            torch.tensor([c.logit for c in candidates], dtype=torch.float32),
            torch.tensor([c.p for c in candidates], dtype=torch.float32),
            is_sorted=is_sorted,
        )

    # ─── Stage entry point ───────────────────────────────────────────────────

    def apply(self, stage: SamplerStage) -> None:
        """Run one stage (or chain) on this set, in place."""
        stage.apply(self)

    def selected_token(self) -> Optional[int]:
        """Token id picked by a terminal stage, or None if none has run."""
        if self.selected is None:
            return None
        if not 0 <= self.selected < len(self):
            return None
        return int(self.ids[self.selected])

    # ─── In-place helpers used by stages ────────────────────────────────────

    def sort_(self) -> None:
        """Stable sort by descending logit; no-op if already sorted."""
        if self.sorted:
            return
        order = torch.sort(self.logits, descending=True, stable=True).indices
        self._reindex(order)
        self.sorted = True

    def softmax_(self) -> None:
        """Sort, then recompute probabilities from logits.

        If the largest logit is not finite there is no distribution and every
        probability is set to zero.
        """
        self.sort_()
        if len(self) == 0:
            return
        # after sorting, logits[0] is the max
        if not bool(torch.isfinite(self.logits[0])):
            self.probs = torch.zeros_like(self.logits)
            return
        exp = torch.exp(self.logits - self.logits[0])
        self.probs = exp / exp.sum()

    def truncate_(self, n: int) -> None:
        """Keep the first ``n`` candidates in current order."""
        n = max(0, min(n, len(self)))
        self.ids = self.ids[:n]
        self.logits = self.logits[:n]
        self.probs = self.probs[:n]
        self._drop_selection()

    def keep_(self, mask: torch.Tensor) -> None:
        """Keep candidates where ``mask`` is true, preserving order."""
        mask = torch.as_tensor(mask, dtype=torch.bool)
        self.ids = self.ids[mask]
        self.logits = self.logits[mask]
        self.probs = self.probs[mask]
        self._drop_selection()

    def permute_(self, order: torch.Tensor, is_sorted: bool = False) -> None:
        """Reorder (and optionally subset) candidates by index tensor ``order``."""
        self._reindex(order)
        self.sorted = is_sorted

    def _reindex(self, order: torch.Tensor) -> None:
        self.ids = self.ids[order]
        self.logits = self.logits[order]
        self.probs = self.probs[order]
        self._drop_selection()

    def _drop_selection(self) -> None:
        self.selected = None

    # ─── Inspection ─────────────────────────────────────────────────────────

    def candidates(self) -> list[Candidate]:
        """Snapshot of the current candidates as records."""
        return [
            Candidate(token_id=int(i), logit=float(l), p=float(p))
            for i, l, p in zip(self.ids.tolist(), self.logits.tolist(), self.probs.tolist())
        ]

    def token_ids(self) -> list[int]:
        return self.ids.tolist()

    def __len__(self) -> int:
        return self.ids.numel()

    def __repr__(self) -> str:
        return (
            f"CandidateSet(size={len(self)}, sorted={self.sorted}, "
            f"selected={self.selected_token()})"
        )
