"""Sampler stage contract and seeded randomness helpers.

Every stage implements ``apply`` (mutate a `CandidateSet` in place) and may
implement ``accept`` (observe the token that was finally chosen). Stages own
their private state exclusively; once a stage is added to a chain the chain
is its only owner and the only thing allowed to free it.
"""

from __future__ import annotations

import copy
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import torch

from chayana.errors import SamplerConfigError, SamplerFreedError
from chayana.sampling.candidates import CandidateSet

logger = logging.getLogger(__name__)

# Seed value meaning "pick a fresh random seed".
DEFAULT_SEED = 0xFFFFFFFF


def resolve_seed(seed: int) -> int:
    """Map `DEFAULT_SEED` to a fresh seed from OS entropy; keep any other seed."""
    seed = int(seed) & 0xFFFFFFFF
    if seed == DEFAULT_SEED:
        seed = int.from_bytes(os.urandom(4), "little")
        logger.debug(f"Drew random sampler seed {seed}")
    return seed


def make_generator(seed: int) -> torch.Generator:
    """A CPU generator owned by exactly one stage."""
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    return generator


def clone_generator(generator: torch.Generator) -> torch.Generator:
    """Independent generator continuing from the same state."""
    clone = torch.Generator(device="cpu")
    clone.set_state(generator.get_state())
    return clone


def sample_index(probs: torch.Tensor, generator: torch.Generator) -> Optional[int]:
    """Draw one index weighted by ``probs``.

    Returns None when ``probs`` is not a usable distribution (empty, non-finite
    or with no positive mass).
    """
    if probs.numel() == 0 or not bool(torch.isfinite(probs).all()):
        return None
    if bool((probs < 0.0).any()) or not float(probs.sum()) > 0.0:
        return None
    return int(torch.multinomial(probs, num_samples=1, generator=generator).item())


class SamplerStage(ABC):
    """One transformation in a sampler chain.

    Subclasses set ``name`` and implement `apply`; stateful ones also
    override `accept`, `reset` and `_clone_state`.
    """

    name: str = "stage"

    def __init__(self) -> None:
        self._owner: Optional[object] = None
        self._freed = False

    @abstractmethod
    def apply(self, cur: CandidateSet) -> None:
        """Transform ``cur`` in place."""

    def accept(self, token: int) -> None:
        """Observe the chosen token. Stateless stages ignore it."""

    def reset(self) -> None:
        """Return to the freshly constructed state."""

    def clone(self) -> SamplerStage:
        """Independent, unowned copy including the current state."""
        if self._freed:
            raise SamplerFreedError(f"Cannot clone freed sampler '{self.name}'")
        new = copy.copy(self)
        new._owner = None
        self._clone_state(new)
        return new

    def _clone_state(self, new: SamplerStage) -> None:
        """Give ``new`` its own copies of mutable state. Shallow by default."""

    def free(self) -> None:
        """Release the stage. Must happen exactly once.

        Raises:
            SamplerConfigError: If a chain owns the stage; only the chain may free it.
            SamplerFreedError: If the stage was already freed.
        """
        if self._owner is not None:
            raise SamplerConfigError(
                f"Sampler '{self.name}' is owned by a chain; free the chain instead",
                context={"stage": self.name},
            )
        self._free_owned()

    def _free_owned(self) -> None:
        """Release path used by the owning chain."""
        if self._freed:
            raise SamplerFreedError(f"Sampler '{self.name}' freed twice")
        self._freed = True
        self._release()

    def _release(self) -> None:
        """Drop external resources held by the stage."""

    @property
    def is_freed(self) -> bool:
        return self._freed

    @property
    def owner(self) -> Optional[object]:
        return self._owner

    def _take_ownership(self, owner: object) -> None:
        if self._freed:
            raise SamplerFreedError(f"Sampler '{self.name}' was already freed")
        if self._owner is not None and self._owner is not owner:
            raise SamplerConfigError(
                f"Sampler '{self.name}' is already owned by another chain",
                context={"stage": self.name},
            )
        self._owner = owner

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
