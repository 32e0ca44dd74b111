"""Sampler chain: an ordered composite that owns its stages.

Stages run in declared order on one shared `CandidateSet`; each stage sees
the in-place result of the previous one, so order is part of correctness.
Building a chain transfers exclusive ownership of every stage to it: the
caller must not keep using the stage objects, and freeing the chain frees
each stage exactly once.

Usage:
    chain = SamplerChain([Penalties(64, 1.1), TopK(40), Temperature(0.8), Dist(seed=42)])
    token = chain.sample(logits)
    chain.accept(token)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from chayana.errors import NoSelectionError, SamplerConfigError, SamplerFreedError
from chayana.sampling.base import SamplerStage
from chayana.sampling.candidates import CandidateSet

logger = logging.getLogger(__name__)


@dataclass
class ChainPerf:
    """Performance counters of a chain.

    A sample is counted when its token is accepted, so ``n_sample`` is the
    number of `SamplerChain.accept` calls. The time covers both `apply` and
    `accept`.

    Attributes:
        t_sample_ms: Cumulative time spent in `SamplerChain.apply` and `SamplerChain.accept`.
        n_sample: Number of accepted tokens.
    """

    t_sample_ms: float = 0.0
    n_sample: int = 0

    @property
    def avg_sample_ms(self) -> float:
        return self.t_sample_ms / self.n_sample if self.n_sample else 0.0


class SamplerChain(SamplerStage):
    """Ordered composite of sampler stages.

    A chain used to select tokens should end with a terminal stage
    (`Greedy`, `Dist`, `MirostatV1` or `MirostatV2`). A chain is itself a
    stage and can be nested inside another chain.
    """

    name = "chain"

    def __init__(self, stages: Iterable[SamplerStage] = (), track_counters: bool = True):
        """Build a chain, taking ownership of every stage.

        Args:
            stages: Stages in application order. They belong to the chain afterwards.
            track_counters: Whether to record timing counters in `apply` and `accept`.

        Raises:
            SamplerConfigError: If a stage is listed twice or already owned elsewhere.
            SamplerFreedError: If a stage was already freed.
        """
        super().__init__()
        self.track_counters = track_counters
        self._stages: list[SamplerStage] = []
        self._perf = ChainPerf()

        stages = list(stages)
        # validate everything before taking ownership of anything
        seen: set[int] = set()
        for stage in stages:
            if id(stage) in seen:
                raise SamplerConfigError(
                    f"Sampler '{stage.name}' appears twice in the same chain",
                    context={"stage": stage.name},
                )
            seen.add(id(stage))
            if stage.is_freed:
                raise SamplerFreedError(f"Sampler '{stage.name}' was already freed")
            if stage.owner is not None:
                raise SamplerConfigError(
                    f"Sampler '{stage.name}' is already owned by another chain",
                    context={"stage": stage.name},
                )
            if stage is self:
                raise SamplerConfigError("A chain cannot contain itself")

        for stage in stages:
            self.add(stage)

    @classmethod
    def simple(cls, stages: Iterable[SamplerStage]) -> SamplerChain:
        """Same as the constructor with counters enabled."""
        return cls(stages, track_counters=True)

    def add(self, stage: SamplerStage) -> None:
        """Append a stage, taking ownership of it."""
        self._check_alive()
        if any(s is stage for s in self._stages):
            raise SamplerConfigError(
                f"Sampler '{stage.name}' appears twice in the same chain",
                context={"stage": stage.name},
            )
        stage._take_ownership(self)
        self._stages.append(stage)

    # ─── Sampling ────────────────────────────────────────────────────────────

    def apply(self, cur: CandidateSet) -> None:
        """Run every stage in order on ``cur``."""
        self._check_alive()
        t0 = time.perf_counter() if self.track_counters else 0.0

        for stage in self._stages:
            stage.apply(cur)

        if self.track_counters:
            self._perf.t_sample_ms += (time.perf_counter() - t0) * 1000.0

    def sample(self, scores, idx: int = -1, accept: bool = False) -> int:
        """Select a token from the ``idx``-th output of the last evaluation.

        Args:
            scores: Raw logits, either one vector of shape (vocab_size,) or a
                matrix of shape (n_outputs, vocab_size).
            idx: Row of ``scores`` to sample from; negative counts from the end.
            accept: Also feed the selected token to `accept`.

        Returns:
            The selected token id.

        Raises:
            NoSelectionError: If no stage selected a token.
        """
        self._check_alive()
        cur = CandidateSet.from_scores(scores, idx)
        self.apply(cur)

        token = cur.selected_token()
        if token is None:
            raise NoSelectionError(self.stage_names(), len(cur))
        if accept:
            self.accept(token)
        return token

    def accept(self, token: int) -> None:
        """Forward the chosen token to every stage, in order."""
        self._check_alive()
        t0 = time.perf_counter() if self.track_counters else 0.0

        for stage in self._stages:
            stage.accept(token)

        if self.track_counters:
            self._perf.t_sample_ms += (time.perf_counter() - t0) * 1000.0
            self._perf.n_sample += 1

    def accept_many(self, tokens: Iterable[int]) -> None:
        """Accept each token in order, e.g. to prime history with a prompt."""
        for token in tokens:
            self.accept(token)

    def with_tokens(self, tokens: Iterable[int]) -> SamplerChain:
        """`accept_many`, returning the chain for fluent construction."""
        self.accept_many(tokens)
        return self

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def reset(self) -> None:
        """Reset every stage to its freshly constructed state."""
        self._check_alive()
        for stage in self._stages:
            stage.reset()

    def clone(self) -> SamplerChain:
        """Independent chain with cloned stages and their current state."""
        self._check_alive()
        return SamplerChain(
            [stage.clone() for stage in self._stages],
            track_counters=self.track_counters,
        )

    def _release(self) -> None:
        # every stage gets its release even if an earlier one fails
        errors: list[Exception] = []
        for stage in self._stages:
            try:
                stage._free_owned()
            except Exception as e:
                logger.warning(f"Failed to free sampler '{stage.name}': {e}")
                errors.append(e)
        logger.debug(f"Freed sampler chain [{', '.join(self.stage_names())}]")
        if errors:
            raise errors[0]

    def __enter__(self) -> SamplerChain:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.is_freed:
            self.free()

    def _check_alive(self) -> None:
        if self.is_freed:
            raise SamplerFreedError("Sampler chain used after free")

    # ─── Performance counters ────────────────────────────────────────────────

    def perf(self) -> ChainPerf:
        """Copy of the current counters."""
        return ChainPerf(self._perf.t_sample_ms, self._perf.n_sample)

    def perf_reset(self) -> None:
        self._perf = ChainPerf()

    def perf_log(self) -> None:
        """Log a one-line timing summary at INFO level."""
        p = self._perf
        logger.info(
            f"sampling time = {p.t_sample_ms:10.2f} ms / {p.n_sample:5d} runs "
            f"({p.avg_sample_ms:8.2f} ms per run)"
        )

    # ─── Inspection ──────────────────────────────────────────────────────────

    def stage_names(self) -> list[str]:
        return [stage.name for stage in self._stages]

    @property
    def stages(self) -> tuple[SamplerStage, ...]:
        """Read-only view of the owned stages, for inspection only."""
        return tuple(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __getitem__(self, i: int) -> SamplerStage:
        return self._stages[i]

    def __iter__(self) -> Iterator[SamplerStage]:
        return iter(self._stages)

    def __repr__(self) -> str:
        return f"SamplerChain({' -> '.join(self.stage_names())})"


def build_chain(stages: Iterable[Optional[SamplerStage]], track_counters: bool = True) -> SamplerChain:
    """Build a chain from stages, skipping ``None`` placeholders for disabled ones."""
    return SamplerChain([s for s in stages if s is not None], track_counters=track_counters)
