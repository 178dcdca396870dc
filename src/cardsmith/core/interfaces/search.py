"""Search backend protocol used by the SEARCH capability."""

from typing import Any, Protocol


class SearchBackendProtocol(Protocol):
    async def search(self, query: str, max_results: int = 5) -> list[dict[str, Any]]:
        """Return hits as dicts with at least ``title`` and ``snippet`` keys."""
        ...
