"""Config-driven sampler: a standard chain plus a separately held grammar stage.

`CommonSampler` assembles the usual chain from a `SamplingConfig`:

    penalties -> [dry, top_k, typ_p, top_p, min_p, xtc, temperature] -> dist
    penalties -> dry -> greedy                                 (temp <= 0)
    penalties -> temperature -> mirostat / mirostat-v2         (mirostat 1 / 2)

The grammar is kept out of the chain so that sampling can either filter by
grammar first, or sample freely and only fall back to grammar filtering when
the freely sampled token turns out to be inadmissible (cheaper when the
grammar rarely rejects).
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Optional

import torch

from chayana.config import SamplingConfig
from chayana.errors import NoSelectionError, SamplerConfigError
from chayana.sampling.base import SamplerStage
from chayana.sampling.candidates import CandidateSet
from chayana.sampling.chain import SamplerChain, build_chain
from chayana.sampling.dry import DRY
from chayana.sampling.grammar import Grammar, GrammarEngine
from chayana.sampling.mirostat import MirostatV1, MirostatV2
from chayana.sampling.penalties import Penalties
from chayana.sampling.selectors import Dist, Greedy
from chayana.sampling.temperature import ExtendedTemperature, Temperature
from chayana.sampling.truncation import XTC, MinP, TopK, TopP, Typical
from chayana.tokenizer.vocab import Vocabulary

logger = logging.getLogger(__name__)

# Tokens used by mirostat v1 to estimate s_hat, as in the paper.
MIROSTAT_M = 100


class CommonSampler:
    """Sampler chain + grammar + accepted-token history, built from a config.

    Usage:
        sampler = CommonSampler(vocab, SamplingConfig(temp=0.7, top_k=20, seed=1))
        token = sampler.sample(logits)
        sampler.accept(token)
    """

    def __init__(
        self,
        vocab: Vocabulary,
        config: Optional[SamplingConfig] = None,
        grammar_engine: Optional[GrammarEngine] = None,
    ):
        """Build the grammar stage and the chain.

        Args:
            vocab: Model vocabulary.
            config: Sampling parameters. Defaults to `SamplingConfig()`.
            grammar_engine: Grammar engine; required if ``config.grammar`` is set.

        Raises:
            SamplerConfigError: On invalid grammar text or sampler settings.
        """
        self.vocab = vocab
        self.config = config or SamplingConfig()

        self.grammar = Grammar(vocab, self.config.grammar, self.config.grammar_root, grammar_engine)
        self.chain = build_chain(self._build_stages(), track_counters=self.config.track_counters)
        self.prev: deque[int] = deque(maxlen=max(self.config.n_prev, 1))

        logger.info(f"sampler params: {self.config.describe()}")
        logger.info(f"sampler chain: logits -> {' -> '.join(self.chain.stage_names())}")

    @classmethod
    def _from_parts(
        cls,
        vocab: Vocabulary,
        config: SamplingConfig,
        grammar: Grammar,
        chain: SamplerChain,
        prev: Iterable[int],
    ) -> CommonSampler:
        sampler = cls.__new__(cls)
        sampler.vocab = vocab
        sampler.config = config
        sampler.grammar = grammar
        sampler.chain = chain
        sampler.prev = deque(prev, maxlen=max(config.n_prev, 1))
        return sampler

    def _build_stages(self) -> list[Optional[SamplerStage]]:
        cfg = self.config
        min_keep = cfg.min_keep

        stages: list[Optional[SamplerStage]] = []
        penalties = Penalties(cfg.penalty_last_n, cfg.penalty_repeat, cfg.penalty_freq, cfg.penalty_present)
        if cfg.penalty_last_n != 0 and not penalties.is_neutral:
            stages.append(penalties)

        if cfg.is_greedy:
            if "dry" in cfg.samplers:
                stages.append(self._dry())
            stages.append(Greedy())
            return stages

        if cfg.mirostat == 0:
            for name in cfg.samplers:
                stages.append(self._named_stage(name, min_keep))
            stages.append(Dist(cfg.seed))
        elif cfg.mirostat == 1:
            n_vocab = cfg.n_vocab if cfg.n_vocab is not None else self.vocab.n_vocab
            stages.append(Temperature(cfg.temp))
            stages.append(MirostatV1(n_vocab, cfg.seed, cfg.mirostat_tau, cfg.mirostat_eta, MIROSTAT_M))
        elif cfg.mirostat == 2:
            stages.append(Temperature(cfg.temp))
            stages.append(MirostatV2(cfg.seed, cfg.mirostat_tau, cfg.mirostat_eta))
        else:
            raise SamplerConfigError(f"Unknown mirostat version {cfg.mirostat}")
        return stages

    def _dry(self) -> Optional[SamplerStage]:
        cfg = self.config
        if cfg.dry_multiplier == 0.0 or cfg.dry_penalty_last_n == 0:
            return None
        return DRY(
            self.vocab,
            cfg.dry_multiplier,
            cfg.dry_base,
            cfg.dry_allowed_length,
            cfg.dry_penalty_last_n,
            cfg.dry_sequence_breakers,
        )

    def _named_stage(self, name: str, min_keep: int) -> Optional[SamplerStage]:
        cfg = self.config
        if name == "dry":
            return self._dry()
        if name == "top_k":
            return TopK(cfg.top_k) if cfg.top_k > 0 else None
        if name == "typ_p":
            return Typical(cfg.typ_p, min_keep) if cfg.typ_p < 1.0 else None
        if name == "top_p":
            return TopP(cfg.top_p, min_keep) if cfg.top_p < 1.0 else None
        if name == "min_p":
            return MinP(cfg.min_p, min_keep) if cfg.min_p > 0.0 else None
        if name == "xtc":
            if cfg.xtc_probability <= 0.0:
                return None
            return XTC(cfg.xtc_probability, cfg.xtc_threshold, min_keep, cfg.seed)
        if name == "temperature":
            if cfg.dynatemp_range > 0.0:
                return ExtendedTemperature(cfg.temp, cfg.dynatemp_range, cfg.dynatemp_exponent)
            return Temperature(cfg.temp)
        raise SamplerConfigError(f"Unknown sampler '{name}'", context={"samplers": cfg.samplers})

    # ─── Sampling ────────────────────────────────────────────────────────────

    def sample(self, scores, idx: int = -1, grammar_first: bool = False) -> int:
        """Select a token from the ``idx``-th row of ``scores``.

        Args:
            scores: Logits of shape (vocab_size,) or (n_outputs, vocab_size).
            idx: Output row to sample from.
            grammar_first: Filter by grammar before the chain instead of
                checking the chain's choice afterwards.

        Returns:
            The selected token id. Not accepted yet; call `accept`.

        Raises:
            NoSelectionError: If nothing could be selected (e.g. the grammar
                rejects every candidate).
        """
        cur = CandidateSet.from_scores(scores, idx)
        if grammar_first:
            self.grammar.apply(cur)
        self.chain.apply(cur)
        token = self._selected(cur)

        if grammar_first or not self.grammar.is_active:
            return token

        check = CandidateSet(torch.tensor([token]), torch.tensor([1.0]))
        self.grammar.apply(check)
        if len(check) == 1:
            return token

        logger.debug(f"Token {token} rejected by grammar; resampling with grammar applied first")
        cur = CandidateSet.from_scores(scores, idx)
        self.grammar.apply(cur)
        self.chain.apply(cur)
        return self._selected(cur)

    def _selected(self, cur: CandidateSet) -> int:
        token = cur.selected_token()
        if token is None:
            raise NoSelectionError(self.chain.stage_names(), len(cur))
        return token

    def accept(self, token: int, accept_grammar: bool = True) -> None:
        """Record the chosen token in the chain, optionally the grammar, and the history."""
        if accept_grammar:
            self.grammar.accept(token)
        self.chain.accept(token)
        self.prev.append(int(token))

    def accept_many(self, tokens: Iterable[int], accept_grammar: bool = True) -> None:
        for token in tokens:
            self.accept(token, accept_grammar)

    def last(self) -> Optional[int]:
        """Most recently accepted token, if any."""
        return self.prev[-1] if self.prev else None

    def prev_str(self, n: int) -> str:
        """Text of the last ``n`` accepted tokens."""
        tokens = list(self.prev)[-n:] if n > 0 else []
        return "".join(self.vocab.token_to_piece(t) for t in tokens)

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def reset(self) -> None:
        self.grammar.reset()
        self.chain.reset()
        self.prev.clear()

    def clone(self) -> CommonSampler:
        """Independent sampler with the same configuration and state."""
        return CommonSampler._from_parts(
            self.vocab,
            self.config.model_copy(deep=True),
            self.grammar.clone(),
            self.chain.clone(),
            self.prev,
        )

    def free(self) -> None:
        self.grammar.free()
        self.chain.free()

    def __enter__(self) -> CommonSampler:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.chain.is_freed:
            self.free()

    def __repr__(self) -> str:
        return f"CommonSampler({self.chain!r}, grammar={self.grammar!r})"
