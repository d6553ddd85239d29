"""Key/value persistence interface.

Ledger records are JSON documents stored under per-account keys. A missing
key means "new record"; writes overwrite the whole document.
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

from papertrade.core.errors import PersistenceWriteError

logger = structlog.get_logger(__name__)


class PersistenceAdapter(ABC):
    """Abstract async key/value store."""

    async def initialize(self) -> None:
        """Prepare the backend. No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None if the key is missing."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Raises:
            PersistenceWriteError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""
        pass

    async def get_json(self, key: str) -> Optional[Any]:
        """Load and decode a JSON document.

        Undecodable documents are logged and reported as missing so callers
        fall back to their defaults.
        """
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("persistence.malformed_record", key=key, error=str(e))
            return None

    async def set_json(self, key: str, value: Any) -> None:
        """Encode ``value`` as JSON and store it."""
        try:
            raw = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            raise PersistenceWriteError(key, f"serialization failed: {e}") from e
        await self.set(key, raw)


class InMemoryPersistence(PersistenceAdapter):
    """Dict-backed store for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self.write_count = 0

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise PersistenceWriteError(key, f"expected str, got {type(value).__name__}")
        self._data[key] = value
        self.write_count += 1

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
