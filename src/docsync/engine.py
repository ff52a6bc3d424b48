"""High level entry point used by the CLI and the web app.

``SyncEngine`` manages profiles and, for each opened profile, the store,
embedding provider, orchestrator and change watcher that belong to it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from docsync.config import (
    DEFAULT_EXTENSIONS,
    AppConfig,
    EmbeddingSettings,
    ProfileConfig,
    ProfileRegistry,
    SourceSettings,
)
from docsync.embedding.encoder import EmbeddingProvider, create_embedding_provider
from docsync.errors import SyncAlreadyRunning
from docsync.index.projection import CoordinateProjector
from docsync.index.search import HybridSearcher, SearchOutcome
from docsync.index.storage import DualIndexStore
from docsync.ingestion.chunker import Chunker, ChunkerConfig
from docsync.ingestion.extractors import ExtractorRegistry
from docsync.models import Chunk, QueryResult, SyncState
from docsync.sync.orchestrator import SyncOrchestrator
from docsync.sync.sources import DocumentSource, DriveSource, GoogleDriveClient, LocalFolderSource
from docsync.sync.watcher import LocalChangeWatcher, PollingChangeWatcher

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[[EmbeddingSettings], EmbeddingProvider]
SourceFactory = Callable[[ProfileConfig], DocumentSource]

MAX_NEIGHBORS = 50


def create_source(profile: ProfileConfig) -> DocumentSource:
    settings = profile.source
    if settings.kind == "drive":
        client = GoogleDriveClient(token_env=settings.token_env)
        return DriveSource(
            client,
            settings.folder_id or "",
            profile.extensions,
            recursive=profile.recursive,
            drive_id=settings.drive_id,
            root_name=settings.root_name,
        )
    return LocalFolderSource(settings.root or ".", profile.extensions, recursive=profile.recursive)


def create_watcher(profile: ProfileConfig, config: AppConfig):
    if profile.source.kind == "drive":
        return PollingChangeWatcher(config.drive_poll_interval)
    return LocalChangeWatcher(
        profile.source.root or ".", profile.extensions, recursive=profile.recursive
    )


@dataclass
class ProfileRuntime:
    profile: ProfileConfig
    store: DualIndexStore
    provider: EmbeddingProvider
    source: DocumentSource
    searcher: HybridSearcher
    orchestrator: SyncOrchestrator
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    watch_task: Optional[asyncio.Task] = None

    @property
    def watching(self) -> bool:
        return self.watch_task is not None and not self.watch_task.done()


class SyncEngine:
    """Profiles plus their sync lifecycles and query access."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        registry: ProfileRegistry | None = None,
        provider_factory: ProviderFactory = create_embedding_provider,
        source_factory: SourceFactory = create_source,
        watcher_factory: Callable[[ProfileConfig, AppConfig], object] = create_watcher,
        extractors: ExtractorRegistry | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.registry = registry or ProfileRegistry(self.config)
        self.provider_factory = provider_factory
        self.source_factory = source_factory
        self.watcher_factory = watcher_factory
        self.extractors = extractors or ExtractorRegistry()
        self._runtimes: Dict[str, ProfileRuntime] = {}
        self._open_lock = asyncio.Lock()

    # Profiles

    def create_profile(
        self,
        name: str,
        source: SourceSettings,
        *,
        embedding: EmbeddingSettings | None = None,
        extensions: Sequence[str] | None = None,
        recursive: bool = True,
        profile_id: str = "",
    ) -> ProfileConfig:
        profile = ProfileConfig(
            id=profile_id,
            name=name,
            source=source,
            embedding=embedding or EmbeddingSettings(),
            extensions=list(extensions) if extensions is not None else list(DEFAULT_EXTENSIONS),
            recursive=recursive,
        )
        return self.registry.create(profile)

    def list_profiles(self) -> List[ProfileConfig]:
        return self.registry.list()

    def get_profile(self, profile_id: str) -> ProfileConfig:
        return self.registry.get(profile_id)

    async def delete_profile(self, profile_id: str) -> None:
        """Stop syncing, close the store and remove the profile's storage."""
        self.registry.get(profile_id)
        await self._close_runtime(profile_id)
        self.registry.delete(profile_id)

    # Runtime

    async def _runtime(self, profile_id: str) -> ProfileRuntime:
        runtime = self._runtimes.get(profile_id)
        if runtime is not None:
            return runtime
        async with self._open_lock:
            runtime = self._runtimes.get(profile_id)
            if runtime is None:
                runtime = await self._open(self.registry.get(profile_id))
                self._runtimes[profile_id] = runtime
        return runtime

    async def _open(self, profile: ProfileConfig) -> ProfileRuntime:
        provider = self.provider_factory(profile.embedding)
        dimension = await asyncio.to_thread(provider.dimension)
        storage_path = profile.storage_path or self.config.default_storage_path(profile.id)
        store = await asyncio.to_thread(
            DualIndexStore, storage_path, dimension=dimension, provider_id=provider.provider_id
        )
        source = self.source_factory(profile)
        chunker = Chunker(
            ChunkerConfig(
                min_tokens=self.config.min_tokens,
                max_tokens=self.config.max_tokens,
                overlap_ratio=self.config.overlap_ratio,
            )
        )
        orchestrator = SyncOrchestrator(
            profile.id,
            source,
            store,
            provider,
            extractors=self.extractors,
            chunker=chunker,
            projector=CoordinateProjector(store),
            max_workers=self.config.max_workers,
        )
        searcher = HybridSearcher(store, provider, oversample=self.config.oversample)
        LOGGER.info("Opened profile %s at %s", profile.id, storage_path)
        return ProfileRuntime(profile, store, provider, source, searcher, orchestrator)

    async def _close_runtime(self, profile_id: str) -> None:
        runtime = self._runtimes.pop(profile_id, None)
        if runtime is None:
            return
        await self._stop_runtime(runtime)
        runtime.store.close()
        runtime.provider.close()
        runtime.source.close()

    async def close(self) -> None:
        for profile_id in list(self._runtimes):
            await self._close_runtime(profile_id)

    # Sync lifecycle

    async def start_sync(self, profile_id: str) -> SyncState:
        """Run an initial sync and keep watching the source for changes."""
        runtime = await self._runtime(profile_id)
        if runtime.watching:
            raise SyncAlreadyRunning(f"Sync for profile {profile_id!r} is already running")
        runtime.stop_event = asyncio.Event()
        watcher = self.watcher_factory(runtime.profile, self.config)
        runtime.watch_task = asyncio.create_task(
            self._watch(runtime, watcher), name=f"watch-{profile_id}"
        )
        runtime.orchestrator.trigger()
        LOGGER.info("Started sync for profile %s", profile_id)
        return runtime.orchestrator.state

    async def _watch(self, runtime: ProfileRuntime, watcher) -> None:
        try:
            await watcher.run(runtime.orchestrator.request_run, runtime.stop_event)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Change watcher for profile %s stopped", runtime.profile.id)

    async def _stop_runtime(self, runtime: ProfileRuntime) -> None:
        runtime.stop_event.set()
        task = runtime.watch_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        runtime.watch_task = None
        await runtime.orchestrator.stop()

    async def stop_sync(self, profile_id: str) -> SyncState:
        """Stop watching and cancel in-flight work; committed files stay."""
        self.registry.get(profile_id)
        runtime = self._runtimes.get(profile_id)
        if runtime is None:
            return (await self._runtime(profile_id)).orchestrator.state
        await self._stop_runtime(runtime)
        LOGGER.info("Stopped sync for profile %s", profile_id)
        return runtime.orchestrator.state

    async def run_once(self, profile_id: str) -> SyncState:
        """One scan-and-process pass without watching."""
        runtime = await self._runtime(profile_id)
        return await runtime.orchestrator.run_once()

    async def wait_idle(self, profile_id: str) -> SyncState:
        runtime = await self._runtime(profile_id)
        return await runtime.orchestrator.wait()

    async def get_sync_state(self, profile_id: str) -> SyncState:
        return (await self._runtime(profile_id)).orchestrator.state

    async def is_syncing(self, profile_id: str) -> bool:
        runtime = await self._runtime(profile_id)
        return runtime.watching or runtime.orchestrator.is_running

    async def stats(self, profile_id: str) -> dict:
        runtime = await self._runtime(profile_id)
        return await asyncio.to_thread(runtime.store.stats)

    # Queries

    async def search_outcome(self, profile_id: str, query: str, top_k: int = 10) -> SearchOutcome:
        runtime = await self._runtime(profile_id)
        return await asyncio.to_thread(runtime.searcher.run, query, top_k=top_k)

    async def search(self, profile_id: str, query: str, top_k: int = 10) -> List[QueryResult]:
        return (await self.search_outcome(profile_id, query, top_k)).results

    async def map_points(self, profile_id: str, limit: int = 600) -> List[dict]:
        runtime = await self._runtime(profile_id)
        return await asyncio.to_thread(runtime.store.map_points, limit)

    async def get_chunks(
        self,
        profile_id: str,
        document: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Chunk]:
        """Chunks of one document (file identifier or source url), inclusive range."""
        runtime = await self._runtime(profile_id)
        return await asyncio.to_thread(runtime.store.chunk_range, document, start, end)

    async def neighbors(
        self, profile_id: str, chunk_id: str, limit: int = 10
    ) -> List[Tuple[Chunk, float]]:
        runtime = await self._runtime(profile_id)
        limit = max(1, min(limit, MAX_NEIGHBORS))
        return await asyncio.to_thread(runtime.store.neighbors, chunk_id, limit=limit)

    # Maintenance

    async def set_embedding_provider(self, profile_id: str, settings: EmbeddingSettings) -> bool:
        """Switch provider; a different provider drops all vectors and re-embeds.

        Returns True when existing vectors were invalidated.
        """
        runtime = await self._runtime(profile_id)
        await runtime.orchestrator.stop()
        provider = self.provider_factory(settings)
        dimension = await asyncio.to_thread(provider.dimension)
        reset = await asyncio.to_thread(
            runtime.store.configure_embedding, dimension, provider.provider_id
        )
        old_provider = runtime.provider
        runtime.provider = provider
        runtime.searcher.provider = provider
        runtime.orchestrator.set_provider(provider)
        old_provider.close()

        runtime.profile.embedding = settings
        self.registry.update(runtime.profile)
        if reset:
            LOGGER.info(
                "Profile %s switched to %s (dimension %d); re-embedding",
                profile_id,
                provider.provider_id,
                dimension,
            )
            runtime.orchestrator.trigger()
        return reset

    async def reembed(self, profile_id: str) -> SyncState:
        """Fill in missing vectors; waits for an active sync run to finish first."""
        runtime = await self._runtime(profile_id)
        return await runtime.orchestrator.reembed()

    async def clear_profile(self, profile_id: str) -> None:
        """Delete every indexed chunk and file record but keep the profile."""
        runtime = await self._runtime(profile_id)
        await runtime.orchestrator.stop()
        await asyncio.to_thread(runtime.store.clear_all)
        LOGGER.info("Cleared profile %s", profile_id)
