"""Collision-free environment variable prefixes for repeated connections."""
import logging
import re
from typing import Dict

logger = logging.getLogger(__name__)

KIND_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


class NamespaceAllocator:
    """Hands out KIND_<n>_ prefixes, n counting from 1 per kind."""

    def __init__(self):
        self._counts: Dict[str, int] = {}

    def allocate(self, kind: str) -> str:
        if not KIND_PATTERN.match(kind):
            raise ValueError(f"Invalid namespace kind '{kind}': must match {KIND_PATTERN.pattern}")
        count = self._counts.get(kind, 0) + 1
        self._counts[kind] = count
        prefix = f"{kind}_{count}_"
        logger.debug(f"Allocated namespace prefix {prefix}")
        return prefix

    def count(self, kind: str) -> int:
        """Number of prefixes handed out so far for kind."""
        return self._counts.get(kind, 0)
