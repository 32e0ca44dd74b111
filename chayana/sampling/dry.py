"""DRY ("Don't Repeat Yourself") repetition suppression.

Designed by p-e-w (https://github.com/oobabooga/text-generation-webui/pull/5677).
A candidate is penalized when emitting it would extend a token sequence that
already occurred in the recent history, by ``multiplier * base^(n - allowed_length)``
where ``n`` is the length of the repeat it would continue.

Sequence breakers (e.g. newlines, quotes) bound how far back a repeat may
reach, so that boilerplate at sentence boundaries is not treated as
repetition. Because a breaker string may span several tokens, breakers are
pre-processed into (head token, tail token sequence) pairs once, against the
vocabulary, at construction time.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Iterable, Optional

import torch

from chayana.errors import check_no_null_bytes
from chayana.sampling.base import SamplerStage
from chayana.sampling.candidates import CandidateSet
from chayana.tokenizer.vocab import Vocabulary

logger = logging.getLogger(__name__)

# Breakers longer than this many characters are truncated.
MAX_CHAR_LEN = 40
# Tail token sequences longer than this are truncated.
MAX_SEQ_LEN = 20
# log(FLT_MAX); keeps multiplier * base^exp finite in float32.
FLOAT_MAX_LOG = 88.7228391


def z_array(seq: list[int]) -> list[int]:
    """Z-algorithm: z[k] is the length of the longest common prefix of seq and seq[k:]."""
    n = len(seq)
    z = [0] * n
    if n == 0:
        return z
    z[0] = n
    left = right = 0
    for k in range(1, n):
        if k < right:
            z[k] = min(right - k, z[k - left])
        while k + z[k] < n and seq[z[k]] == seq[k + z[k]]:
            z[k] += 1
        if k + z[k] > right:
            left, right = k, k + z[k]
    return z


def overlapping_token_sequences(
    vocab: Vocabulary,
    breaker: str,
    max_tail_len: int,
) -> dict[int, list[tuple[int, ...]]]:
    """Find every way a token can start ``breaker``.

    A token whose text contains the whole breaker maps to an empty tail. A
    token whose text ends with a proper prefix of the breaker maps to the
    tokenization of the rest of the breaker.
    """
    sequences: dict[int, list[tuple[int, ...]]] = {}
    head = breaker[0]
    for token_id in range(vocab.n_vocab):
        word = vocab.token_to_piece(token_id)
        if breaker in word:
            tails = sequences.setdefault(token_id, [])
            if () not in tails:
                tails.append(())
            continue

        pos = word.find(head)
        while pos != -1:
            i = 1
            match = True
            while i < len(breaker) and pos + i < len(word):
                if word[pos + i] != breaker[i]:
                    match = False
                    break
                i += 1
            if match:
                tail = tuple(vocab.tokenize(breaker[i:])[:max_tail_len])
                tails = sequences.setdefault(token_id, [])
                if tail not in tails:
                    tails.append(tail)
            pos = word.find(head, pos + 1)
    return sequences


class DRY(SamplerStage):
    """Penalize continuations of sequences already present in the history.

    Args:
        vocab: Vocabulary used to resolve sequence breakers and context size.
        multiplier: Penalty scale, 0.0 = disabled.
        base: Exponential base, must be >= 1.0 for the stage to be active.
        allowed_length: Repeats up to this length are free.
        penalty_last_n: How many recent tokens to scan. 0 disables, -1 means
            the vocabulary's training context size (unbounded if unknown).
        sequence_breakers: Strings (or UTF-8 bytes) that end a repeat.

    Raises:
        SamplerConfigError: If a sequence breaker contains a null byte.
    """

    name = "dry"

    def __init__(
        self,
        vocab: Vocabulary,
        multiplier: float,
        base: float,
        allowed_length: int,
        penalty_last_n: int,
        sequence_breakers: Iterable[str | bytes] = (),
    ):
        super().__init__()
        breakers = [check_no_null_bytes(b, "DRY sequence breaker") for b in sequence_breakers]

        self.multiplier = float(multiplier)
        self.base = float(base)
        self.allowed_length = int(allowed_length)
        self.penalty_last_n = int(penalty_last_n)
        self.total_context_size: Optional[int] = vocab.n_ctx_train

        if self.penalty_last_n < 0:
            window = self.total_context_size
        else:
            window = self.penalty_last_n
        self._window: Optional[int] = window

        self._restart_sequences: dict[int, list[tuple[int, ...]]] = {}
        if self.enabled:
            self._restart_sequences = self._process_breakers(vocab, breakers)
        self.sequence_breakers = breakers

        self._last_tokens: deque[int] = deque(maxlen=window)

    @property
    def enabled(self) -> bool:
        return (
            self.multiplier != 0.0
            and self.base >= 1.0
            and self.penalty_last_n != 0
            and self._window != 0
        )

    @staticmethod
    def _process_breakers(
        vocab: Vocabulary,
        breakers: list[str],
    ) -> dict[int, list[tuple[int, ...]]]:
        restart: dict[int, list[tuple[int, ...]]] = {}
        for breaker in breakers:
            if not breaker:
                logger.warning("Skipping empty DRY sequence breaker")
                continue
            if len(breaker) > MAX_CHAR_LEN:
                logger.warning(
                    f"DRY sequence breaker {breaker[:MAX_CHAR_LEN]!r}... is longer than "
                    f"{MAX_CHAR_LEN} characters; truncating"
                )
                breaker = breaker[:MAX_CHAR_LEN]
            for token_id, tails in overlapping_token_sequences(vocab, breaker, MAX_SEQ_LEN).items():
                merged = restart.setdefault(token_id, [])
                for tail in tails:
                    if tail not in merged:
                        merged.append(tail)
        logger.debug(
            f"DRY: {len(breakers)} sequence breakers map to {len(restart)} head tokens"
        )
        return restart

    def accept(self, token: int) -> None:
        if not self.enabled:
            return
        self._last_tokens.append(int(token))

    def apply(self, cur: CandidateSet) -> None:
        if not self.enabled or len(cur) == 0:
            return

        last_n_repeat = len(self._last_tokens)
        if self.total_context_size is not None:
            last_n_repeat = min(last_n_repeat, self.total_context_size)
        if last_n_repeat <= self.allowed_length:
            return

        # rev[i] is the i-th most recent token
        rev = list(self._last_tokens)[::-1][:last_n_repeat]

        rep_limit = self._repeat_limit(rev)
        if rep_limit < self.allowed_length:
            return

        max_token_repeat = self._max_token_repeats(rev, rep_limit)
        if not max_token_repeat:
            return

        max_exponent = 0
        if self.base > 1.000001:
            max_exponent = int(FLOAT_MAX_LOG / math.log(self.base))

        penalties = torch.zeros_like(cur.logits)
        for idx, token_id in enumerate(cur.ids.tolist()):
            repeat_len = max_token_repeat.get(token_id)
            if repeat_len is None:
                continue
            # a token that is a whole breaker by itself never extends a repeat
            if () in self._restart_sequences.get(token_id, ()):
                continue
            repeat_exp = repeat_len - self.allowed_length
            if max_exponent > 0 and repeat_exp > max_exponent:
                repeat_exp = max_exponent
            penalties[idx] = self.multiplier * math.pow(self.base, repeat_exp)

        cur.logits = cur.logits - penalties
        cur.sorted = False

    def _repeat_limit(self, rev: list[int]) -> int:
        """Distance back to the most recent restart sequence, or the full window."""
        for i, token in enumerate(rev):
            tails = self._restart_sequences.get(token)
            if not tails:
                continue
            longest_match = -1
            for tail in tails:
                seq_len = len(tail)
                # the head is rev[i]; the tail continues towards the present
                if longest_match < seq_len <= i and all(
                    tail[offset] == rev[i - offset - 1] for offset in range(seq_len)
                ):
                    longest_match = seq_len
            if longest_match >= 0:
                return i - longest_match
        return len(rev)

    def _max_token_repeats(self, rev: list[int], rep_limit: int) -> dict[int, int]:
        """For each token that would continue a repeat, the longest such repeat."""
        z = z_array(rev)
        max_token_repeat: dict[int, int] = {}
        for k in range(1, len(rev)):
            repeat_len = min(z[k], rep_limit)
            if repeat_len < self.allowed_length:
                continue
            # the sequence ending k tokens back was followed by rev[k - 1]
            token = rev[k - 1]
            if max_token_repeat.get(token, -1) < repeat_len:
                max_token_repeat[token] = repeat_len
        return max_token_repeat

    def history(self) -> list[int]:
        return list(self._last_tokens)

    def reset(self) -> None:
        self._last_tokens.clear()

    def _clone_state(self, new: SamplerStage) -> None:
        new._last_tokens = deque(self._last_tokens, maxlen=self._last_tokens.maxlen)

    def __repr__(self) -> str:
        return (
            f"DRY(multiplier={self.multiplier}, base={self.base}, "
            f"allowed_length={self.allowed_length}, penalty_last_n={self.penalty_last_n}, "
            f"breakers={len(self.sequence_breakers)})"
        )
