"""chayana configuration system.

Pydantic models with YAML loading support. `SamplingConfig` carries every
parameter the common sampler needs to assemble a chain; `PipelineConfig`
composes it with the logging settings of an application.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from chayana.sampling.base import DEFAULT_SEED

SamplerName = Literal["dry", "top_k", "typ_p", "top_p", "min_p", "xtc", "temperature"]


class SamplingConfig(BaseModel):
    """Parameters for building a sampler chain.

    Neutral values disable a stage: ``top_k <= 0``, ``top_p = 1.0``,
    ``min_p = 0.0``, ``typ_p = 1.0``, ``xtc_probability = 0.0``,
    ``penalty_repeat = 1.0`` with zero frequency/presence penalties,
    ``dry_multiplier = 0.0``, ``dynatemp_range = 0.0``. ``temp <= 0``
    selects greedy decoding.
    """

    seed: int = DEFAULT_SEED  # DEFAULT_SEED = random seed
    n_prev: int = 64  # accepted tokens kept by the common sampler
    n_vocab: int | None = None  # for mirostat v1; defaults to the vocabulary size
    min_keep: int = 0  # floor for truncating samplers; 0 = none

    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    xtc_probability: float = 0.0
    xtc_threshold: float = 0.10  # > 0.5 disables XTC
    typ_p: float = 1.0
    temp: float = 0.80
    dynatemp_range: float = 0.0
    dynatemp_exponent: float = 1.0

    penalty_last_n: int = 64  # 0 = disabled, -1 = whole history
    penalty_repeat: float = 1.0
    penalty_freq: float = 0.0
    penalty_present: float = 0.0

    dry_multiplier: float = 0.0
    dry_base: float = 1.75
    dry_allowed_length: int = 2
    dry_penalty_last_n: int = -1  # 0 = disabled, -1 = context size
    dry_sequence_breakers: list[str] = Field(default_factory=lambda: ["\n", ":", "\"", "*"])

    mirostat: Literal[0, 1, 2] = 0
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1

    grammar: str = ""
    grammar_root: str = "root"

    track_counters: bool = True
    samplers: list[SamplerName] = Field(
        default_factory=lambda: ["dry", "top_k", "typ_p", "top_p", "min_p", "xtc", "temperature"]
    )

    @field_validator("seed")
    @classmethod
    def _seed_is_u32(cls, v: int) -> int:
        if not 0 <= v <= 0xFFFFFFFF:
            raise ValueError(f"seed must fit in 32 unsigned bits, got {v}")
        return v

    @property
    def is_greedy(self) -> bool:
        return self.temp <= 0.0

    def describe(self) -> str:
        """One-line parameter summary for logs."""
        return (
            f"repeat_last_n = {self.penalty_last_n}, repeat_penalty = {self.penalty_repeat:.3f}, "
            f"frequency_penalty = {self.penalty_freq:.3f}, presence_penalty = {self.penalty_present:.3f}, "
            f"dry_multiplier = {self.dry_multiplier:.3f}, dry_base = {self.dry_base:.3f}, "
            f"dry_allowed_length = {self.dry_allowed_length}, dry_penalty_last_n = {self.dry_penalty_last_n}, "
            f"top_k = {self.top_k}, top_p = {self.top_p:.3f}, min_p = {self.min_p:.3f}, "
            f"xtc_probability = {self.xtc_probability:.3f}, xtc_threshold = {self.xtc_threshold:.3f}, "
            f"typical_p = {self.typ_p:.3f}, temp = {self.temp:.3f}, "
            f"mirostat = {self.mirostat}, mirostat_lr = {self.mirostat_eta:.3f}, "
            f"mirostat_ent = {self.mirostat_tau:.3f}"
        )


class LoggingConfig(BaseModel):
    """Application logging settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class PipelineConfig(BaseModel):
    """Top-level configuration, composed of sub-configs."""

    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineConfig:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        return cls.model_validate(raw or {})

    @classmethod
    def default(cls) -> PipelineConfig:
        """Return default configuration."""
        return cls()

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(),
                f,
                default_flow_style=False,
                sort_keys=False,
            )


def configure_logging(level: str = "INFO") -> None:
    """Install the default log format for applications using chayana."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
