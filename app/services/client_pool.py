from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from bulkgen.client import ContextReaper, GenerationClient
from bulkgen.models import GenerationContext, ReferenceImage
from bulkgen.utils import credential_hash

logger = logging.getLogger(__name__)

ClientBuilder = Callable[[str], GenerationClient]


@dataclass
class PoolEntry:
    client: GenerationClient
    context: Optional[GenerationContext] = None
    generation_count: int = 0
    last_used: float = field(default_factory=time.monotonic)


class ClientPool:
    """LRU cache of per-credential clients and their generation contexts.

    Entries are keyed by the credential hash. A context is recreated after
    ``refresh_every`` generations or once it has been invalidated; the old
    one is deleted remotely in the background.
    """

    def __init__(
        self,
        build: ClientBuilder,
        *,
        max_size: int = 5,
        refresh_every: int = 10,
        reaper: Optional[ContextReaper] = None,
    ) -> None:
        self._build = build
        self.reaper = reaper or ContextReaper()
        self.max_size = max_size
        self.refresh_every = refresh_every
        self._entries: "OrderedDict[str, PoolEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, credential: str) -> bool:
        return credential_hash(credential) in self._entries

    def entry_for(self, credential: str) -> PoolEntry:
        key = credential_hash(credential)
        entry = self._entries.get(key)
        if entry is None:
            if len(self._entries) >= self.max_size:
                evicted_key, evicted = self._entries.popitem(last=False)
                logger.info("Evicting least recently used client %s", evicted_key[:8])
                if evicted.context is not None:
                    self.reaper.discard(evicted.client, evicted.context)
            entry = PoolEntry(client=self._build(credential))
            self._entries[key] = entry
        else:
            self._entries.move_to_end(key)
        entry.last_used = time.monotonic()
        return entry

    async def acquire(
        self, credential: str, label: str, references: Sequence[ReferenceImage] = ()
    ) -> tuple[GenerationClient, GenerationContext]:
        """Return the client for ``credential`` and a context ready for the next call."""

        entry = self.entry_for(credential)
        stale = entry.context is not None and entry.context.references != list(references)
        if entry.context is None or stale or entry.generation_count >= self.refresh_every:
            if entry.context is not None:
                logger.info("Refreshing generation context after %d uses", entry.generation_count)
                self.reaper.discard(entry.client, entry.context)
                entry.context = None
            entry.context = await entry.client.create_context(label, references)
            entry.generation_count = 0
        entry.generation_count += 1
        return entry.client, entry.context

    def invalidate(self, credential: str) -> None:
        """Forget the cached context so the next acquire starts fresh."""

        entry = self._entries.get(credential_hash(credential))
        if entry is None or entry.context is None:
            return
        logger.info("Invalidating generation context %s", entry.context.context_id)
        self.reaper.discard(entry.client, entry.context)
        entry.context = None
        entry.generation_count = 0

    def clear(self) -> None:
        for entry in self._entries.values():
            if entry.context is not None:
                self.reaper.discard(entry.client, entry.context)
        self._entries.clear()
