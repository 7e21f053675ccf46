"""
stratum/providers/local.py

A simulated provider persisted to a JSON file, so objects created by one CLI
run are still there for the next. Behaves exactly like MemoryProvider
otherwise.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import aiofiles

from stratum.errors import ProviderError
from stratum.providers.base import ResourceSchema
from stratum.providers.memory import MemoryProvider

logger = logging.getLogger(__name__)


class LocalProvider(MemoryProvider):
    """MemoryProvider whose objects are loaded from and saved to `path`."""

    name = "local"

    def __init__(
        self,
        path: str,
        schemas: Optional[List[ResourceSchema]] = None,
        latency: Optional[Dict[str, float]] = None,
    ) -> None:
        super().__init__(schemas=schemas, latency=latency)
        self.path = path
        self._save_lock = asyncio.Lock()

    async def open(self) -> None:
        if not os.path.exists(self.path):
            return
        async with aiofiles.open(self.path, "r") as f:
            text = await f.read()
        try:
            data = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Corrupt provider data in {self.path}: {exc}") from exc
        self.objects = data.get("objects", {})
        self._counter = int(data.get("counter", 0))
        logger.debug("Loaded %d objects from %s", len(self.objects), self.path)

    async def _save(self) -> None:
        async with self._save_lock:
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            payload = {"counter": self._counter, "objects": self.objects}
            tmp_path = f"{self.path}.tmp"
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(payload, indent=2, sort_keys=True))
            os.replace(tmp_path, self.path)

    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        resource_id = await super().create(resource_type, attributes)
        await self._save()
        return resource_id

    async def update(
        self, resource_type: str, resource_id: str, attributes: Dict[str, Any]
    ) -> None:
        await super().update(resource_type, resource_id, attributes)
        await self._save()

    async def delete(self, resource_type: str, resource_id: str) -> None:
        await super().delete(resource_type, resource_id)
        await self._save()
