"""Grammar-constrained sampling.

The grammar language itself lives outside this package. A grammar engine is
any callable that turns ``(grammar_str, grammar_root, vocab)`` into a
`GrammarOracle`: an automaton cursor that can say which token ids are
admissible next and can consume one token at a time.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

import torch

from chayana.errors import SamplerConfigError, check_no_null_bytes
from chayana.sampling.base import SamplerStage
from chayana.sampling.candidates import CandidateSet
from chayana.tokenizer.vocab import Vocabulary

logger = logging.getLogger(__name__)


@runtime_checkable
class GrammarOracle(Protocol):
    """Cursor into a grammar automaton."""

    def admissible(self, token_ids: Sequence[int]) -> Sequence[bool]:
        """For each token id, whether it may come next in the current state."""
        ...

    def accept(self, token_id: int) -> None:
        """Advance the automaton by one token."""
        ...

    def clone(self) -> GrammarOracle:
        """Independent cursor at the same state."""
        ...


GrammarEngine = Callable[[str, str, Vocabulary], GrammarOracle]


class Grammar(SamplerStage):
    """Remove every candidate the grammar does not admit in its current state.

    An empty ``grammar_str`` produces an inert stage.

    Args:
        vocab: Vocabulary the grammar matches token text against.
        grammar_str: Grammar source text.
        grammar_root: Name of the start rule.
        engine: Factory building an oracle from the three values above.

    Raises:
        SamplerConfigError: If ``grammar_str`` or ``grammar_root`` contains a null byte.
    """

    name = "grammar"

    def __init__(
        self,
        vocab: Vocabulary,
        grammar_str: str | bytes,
        grammar_root: str | bytes,
        engine: Optional[GrammarEngine] = None,
    ):
        super().__init__()
        self.grammar_str = check_no_null_bytes(grammar_str, "grammar_str")
        self.grammar_root = check_no_null_bytes(grammar_root, "grammar_root")
        self.vocab = vocab
        self.engine = engine

        self._oracle: Optional[GrammarOracle] = self._build_oracle()

    def _build_oracle(self) -> Optional[GrammarOracle]:
        if not self.grammar_str:
            return None
        if self.engine is None:
            raise SamplerConfigError("A grammar engine is required for a non-empty grammar")
        logger.debug(f"Building grammar oracle (root={self.grammar_root!r})")
        return self.engine(self.grammar_str, self.grammar_root, self.vocab)

    @property
    def is_active(self) -> bool:
        return self._oracle is not None

    def apply(self, cur: CandidateSet) -> None:
        if self._oracle is None or len(cur) == 0:
            return
        mask = torch.as_tensor(list(self._oracle.admissible(cur.ids.tolist())), dtype=torch.bool)
        if mask.numel() != len(cur):
            raise ValueError(
                f"Grammar oracle returned {mask.numel()} verdicts for {len(cur)} candidates"
            )
        # a filtered subset keeps its relative order
        cur.keep_(mask)

    def accept(self, token: int) -> None:
        if self._oracle is None:
            return
        self._oracle.accept(int(token))

    def reset(self) -> None:
        self._oracle = self._build_oracle()

    def _clone_state(self, new: SamplerStage) -> None:
        if self._oracle is not None:
            new._oracle = self._oracle.clone()

    def _release(self) -> None:
        self._oracle = None

    def __repr__(self) -> str:
        return f"Grammar(root={self.grammar_root!r}, active={self.is_active})"
