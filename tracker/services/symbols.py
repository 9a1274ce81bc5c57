"""Cache of tracked token symbols, refreshed periodically from storage."""

import logging
from typing import Callable, Iterable

logger = logging.getLogger(__name__)


class SymbolCache:
    """Read-mostly set of tracked symbols.

    ``refresh()`` swaps in a new frozenset, so readers on any trader session
    see either the old set or the new one, never a partial update.
    """

    def __init__(self, loader: Callable[[], Iterable[str]]):
        self._loader = loader
        self._symbols: frozenset[str] = frozenset()

    def refresh(self) -> int:
        symbols = frozenset(self._loader())
        self._symbols = symbols
        logger.info(f"Symbol cache refreshed: {len(symbols)} tracked symbols")
        return len(symbols)

    def is_tracked(self, symbol: str) -> bool:
        return symbol in self._symbols

    def __len__(self) -> int:
        return len(self._symbols)
