"""Vocabulary access for vocabulary-aware samplers.

The DRY and grammar stages need to know what text each token id stands for
and how a string tokenizes. This module exposes that through a small
`Vocabulary` protocol, with a HuggingFace-backed implementation for real
models and a static piece-list implementation for tests and embedded use.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Vocabulary(Protocol):
    """What the pipeline needs to know about a model's vocabulary."""

    @property
    def n_vocab(self) -> int:
        """Number of token ids; valid ids are ``0 .. n_vocab - 1``."""
        ...

    @property
    def n_ctx_train(self) -> Optional[int]:
        """Training context length, if known. Used for "-1 = context size"."""
        ...

    def token_to_piece(self, token_id: int) -> str:
        """Text of a single token, special tokens rendered."""
        ...

    def tokenize(self, text: str) -> list[int]:
        """Tokenize text without adding special tokens."""
        ...


class HFVocabulary:
    """HuggingFace tokenizer wrapper exposing the `Vocabulary` protocol.

    Usage:
        vocab = HFVocabulary("gpt2")
        vocab.token_to_piece(50256)  # '<|endoftext|>'
    """

    def __init__(
        self,
        model_path: str,
        trust_remote_code: bool = False,
        n_ctx_train: Optional[int] = None,
    ):
        """Initialize from a HuggingFace model name or local directory.

        Args:
            model_path: HuggingFace model name or local directory.
            trust_remote_code: Whether to trust remote code for custom tokenizers.
            n_ctx_train: Override for the training context length. Defaults
                to the tokenizer's ``model_max_length`` when it is a real limit.
        """
        from transformers import AutoTokenizer

        logger.info(f"Loading tokenizer: {model_path}")
        tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        self._init_from_tokenizer(tokenizer, n_ctx_train)

    @classmethod
    def from_tokenizer(cls, tokenizer, n_ctx_train: Optional[int] = None) -> HFVocabulary:
        """Wrap an already-loaded ``PreTrainedTokenizerBase``."""
        vocab = cls.__new__(cls)
        vocab._init_from_tokenizer(tokenizer, n_ctx_train)
        return vocab

    def _init_from_tokenizer(self, tokenizer, n_ctx_train: Optional[int]) -> None:
        self._tokenizer = tokenizer
        if n_ctx_train is None:
            max_len = getattr(tokenizer, "model_max_length", None)
            # HF uses a huge sentinel (int(1e30)) when the limit is unknown
            if isinstance(max_len, int) and 0 < max_len < 10_000_000:
                n_ctx_train = max_len
        self._n_ctx_train = n_ctx_train
        logger.info(
            f"Vocabulary loaded: n_vocab={self.n_vocab}, n_ctx_train={self._n_ctx_train}"
        )

    @property
    def n_vocab(self) -> int:
        # len() includes added special tokens, vocab_size does not
        return len(self._tokenizer)

    @property
    def n_ctx_train(self) -> Optional[int]:
        return self._n_ctx_train

    def token_to_piece(self, token_id: int) -> str:
        return self._tokenizer.decode([token_id], skip_special_tokens=False)

    def tokenize(self, text: str) -> list[int]:
        return self._tokenizer.encode(text, add_special_tokens=False)

    @property
    def underlying(self):
        """Access the underlying HuggingFace tokenizer."""
        return self._tokenizer


class StaticVocabulary:
    """Vocabulary defined by an explicit list of token pieces.

    Token id ``i`` is ``pieces[i]``. Tokenization is greedy longest-match
    from the left; characters no piece covers are dropped.
    """

    def __init__(self, pieces: Sequence[str], n_ctx_train: Optional[int] = None):
        self._pieces = list(pieces)
        self._n_ctx_train = n_ctx_train
        self._lookup: dict[str, int] = {}
        for token_id, piece in enumerate(self._pieces):
            # first id wins for duplicate pieces
            self._lookup.setdefault(piece, token_id)
        self._max_piece_len = max((len(p) for p in self._pieces), default=0)

    @property
    def n_vocab(self) -> int:
        return len(self._pieces)

    @property
    def n_ctx_train(self) -> Optional[int]:
        return self._n_ctx_train

    def token_to_piece(self, token_id: int) -> str:
        return self._pieces[token_id]

    def tokenize(self, text: str) -> list[int]:
        ids: list[int] = []
        pos = 0
        while pos < len(text):
            for length in range(min(self._max_piece_len, len(text) - pos), 0, -1):
                token_id = self._lookup.get(text[pos:pos + length])
                if token_id is not None:
                    ids.append(token_id)
                    pos += length
                    break
            else:
                logger.debug(f"No piece covers {text[pos]!r}; dropping it")
                pos += 1
        return ids

    def __repr__(self) -> str:
        return f"StaticVocabulary(n_vocab={self.n_vocab})"
