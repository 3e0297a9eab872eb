"""Built-in chunk strategies controlling when text updates are emitted."""

from __future__ import annotations

import re
from typing import Sequence

from chatloop.stream.types import ChunkStrategy


class ImmediateStrategy:
    """Emit on every chunk."""

    def should_emit(self, chunk: str, accumulated: str) -> bool:
        return True


class PunctuationStrategy:
    """Emit when the chunk contains punctuation or a newline."""

    _punctuation = re.compile(r"[.,!?;:\n]")

    def should_emit(self, chunk: str, accumulated: str) -> bool:
        return self._punctuation.search(chunk) is not None


class BatchStrategy:
    """Emit every ``batch_size`` chunks."""

    def __init__(self, batch_size: int = 5):
        self.batch_size = batch_size
        self._chunk_count = 0

    def should_emit(self, chunk: str, accumulated: str) -> bool:
        self._chunk_count += 1
        if self._chunk_count >= self.batch_size:
            self._chunk_count = 0
            return True
        return False

    def reset(self) -> None:
        self._chunk_count = 0


class WordBoundaryStrategy:
    """Emit when the chunk ends with whitespace so words are never cut."""

    _boundary = re.compile(r"\s$")

    def should_emit(self, chunk: str, accumulated: str) -> bool:
        return self._boundary.search(chunk) is not None


class CompositeStrategy:
    """Emit if any of the wrapped strategies says so."""

    def __init__(self, strategies: Sequence[ChunkStrategy]):
        self.strategies = list(strategies)

    def should_emit(self, chunk: str, accumulated: str) -> bool:
        return any(s.should_emit(chunk, accumulated) for s in self.strategies)

    def reset(self) -> None:
        for s in self.strategies:
            reset = getattr(s, "reset", None)
            if reset is not None:
                reset()


def create_strategy(name: str, batch_size: int = 5) -> ChunkStrategy:
    """Build a strategy from a config name.

    Names are ``immediate``, ``punctuation``, ``batch`` and
    ``word-boundary``; join several with ``+`` for a composite, e.g.
    ``punctuation+word-boundary``.
    """
    names = [n.strip() for n in name.split("+") if n.strip()]
    if len(names) > 1:
        return CompositeStrategy([create_strategy(n, batch_size) for n in names])

    key = names[0] if names else "immediate"
    if key == "immediate":
        return ImmediateStrategy()
    if key == "punctuation":
        return PunctuationStrategy()
    if key == "batch":
        return BatchStrategy(batch_size)
    if key == "word-boundary":
        return WordBoundaryStrategy()
    raise ValueError(f"Unknown chunk strategy: {name}")
