"""Exception hierarchy for the sampling pipeline.

Configuration problems surface at stage construction time, invariant
violations surface when a chain is driven in an order that cannot produce a
token. Backend failures (allocation, tensor ops) are never caught here.
"""

from __future__ import annotations

from typing import Any, Optional


class ChayanaError(Exception):
    """Base exception for all chayana errors.

    Attributes:
        message: Human-readable error description.
        context: Optional dict of additional context for debugging.
    """

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __repr__(self) -> str:
        ctx_str = f", context={self.context}" if self.context else ""
        return f"{self.__class__.__name__}({self.message!r}{ctx_str})"


class SamplerConfigError(ChayanaError, ValueError):
    """A stage or chain could not be constructed from the given arguments.

    Raised for text arguments with embedded null bytes (grammar source, root
    rule name, DRY sequence breakers), unknown sampler names, invalid
    mirostat modes, and stages that already belong to another chain.
    """


class NoSelectionError(ChayanaError, RuntimeError):
    """A chain finished applying without any terminal stage selecting a token."""

    def __init__(self, stages: list[str], num_candidates: int) -> None:
        super().__init__(
            f"No token selected after applying [{', '.join(stages)}] to "
            f"{num_candidates} candidates; the chain must end with a terminal "
            f"sampler (greedy, dist, mirostat, mirostat_v2)",
            context={"stages": stages, "num_candidates": num_candidates},
        )


class SamplerFreedError(ChayanaError, RuntimeError):
    """A stage or chain was used or freed after it had already been freed."""


def check_no_null_bytes(value: str | bytes, what: str) -> str:
    """Return ``value`` as text, rejecting embedded null bytes.

    Args:
        value: Text or UTF-8 bytes supplied by the caller.
        what: Name of the argument, used in the error message.

    Raises:
        SamplerConfigError: If ``value`` contains a null byte or is not UTF-8.
    """
    if isinstance(value, bytes):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SamplerConfigError(f"{what} is not valid UTF-8: {e}") from e
    if "\x00" in value:
        raise SamplerConfigError(
            f"{what} must not contain null bytes",
            context={"value": value},
        )
    return value
