"""Pytest configuration and shared fixtures."""

import pytest
import torch

from chayana.sampling.candidates import CandidateSet
from chayana.tokenizer.vocab import StaticVocabulary


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests (tokenizer downloads, etc.)",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow"):
        return
    skip_slow = pytest.mark.skip(reason="Need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def ramp_logits() -> torch.Tensor:
    """Logits 0, 1, ..., 9 for token ids 0..9."""
    return torch.arange(10, dtype=torch.float32)


@pytest.fixture
def ramp(ramp_logits: torch.Tensor) -> CandidateSet:
    return CandidateSet.from_logits(ramp_logits)


@pytest.fixture
def peaked_logits() -> torch.Tensor:
    """Logits where token 42 of 100 dominates."""
    logits = torch.full((100,), -10.0)
    logits[42] = 10.0
    return logits


@pytest.fixture
def letters_vocab() -> StaticVocabulary:
    """Tiny vocabulary: single letters, a newline, and a few merged pieces."""
    return StaticVocabulary(
        ["a", "b", "c", "d", "\n", "x\n", " ", "e:", ":", "**"],
        n_ctx_train=128,
    )


class LiteralGrammarOracle:
    """Test oracle accepting exactly one literal string, token by token."""

    def __init__(self, text: str, vocab: StaticVocabulary, pos: int = 0):
        self.text = text
        self.vocab = vocab
        self.pos = pos

    def admissible(self, token_ids):
        rest = self.text[self.pos:]
        return [
            bool(self.vocab.token_to_piece(t)) and rest.startswith(self.vocab.token_to_piece(t))
            for t in token_ids
        ]

    def accept(self, token_id: int) -> None:
        piece = self.vocab.token_to_piece(token_id)
        assert self.text[self.pos:].startswith(piece), f"{piece!r} not admissible"
        self.pos += len(piece)

    def clone(self) -> "LiteralGrammarOracle":
        return LiteralGrammarOracle(self.text, self.vocab, self.pos)


@pytest.fixture
def literal_engine():
    """Grammar engine whose grammar source is the literal text to produce."""
    built = []

    def engine(grammar_str, grammar_root, vocab):
        oracle = LiteralGrammarOracle(grammar_str, vocab)
        built.append(oracle)
        return oracle

    engine.built = built
    return engine
