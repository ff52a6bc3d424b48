"""Per-profile sync lifecycle: scan, diff, process, persist.

A run lists the source, diffs it against the stored FileRecords and then
pushes every new or changed file through extract -> chunk -> embed -> commit
on a bounded set of concurrent workers. A FileRecord only changes in the
same transaction that commits the file's chunks, so a failure part way
through a file leaves its previous version intact.

Blocking work (source I/O, extraction, SQLite) runs in worker threads via
``asyncio.to_thread``; the event loop only coordinates.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import time
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Set

from docsync.embedding.encoder import EmbeddingProvider, embed_with_retry
from docsync.errors import DimensionMismatch, DocSyncError, ProviderError, SourceUnreachable
from docsync.index.projection import CoordinateProjector
from docsync.index.storage import DualIndexStore
from docsync.ingestion.chunker import Chunker
from docsync.ingestion.extractors import ExtractedText, ExtractorRegistry
from docsync.models import Chunk, ChunkDraft, FileFailure, FileRecord, SyncPhase, SyncState
from docsync.sync.sources import DocumentSource, SourceFile
from docsync.utils.files import fingerprint

LOGGER = logging.getLogger(__name__)

REEMBED_BATCH = 64


def make_chunk_id(source_url: str, position: int) -> str:
    """Stable chunk identity: file identity plus position."""
    return hashlib.sha256(f"{source_url}#{position}".encode("utf-8")).hexdigest()


def build_chunks(file: SourceFile, drafts: Sequence[ChunkDraft]) -> List[Chunk]:
    return [
        Chunk(
            chunk_id=make_chunk_id(file.source_url, draft.position),
            content=draft.content,
            section=draft.section,
            heading_hierarchy=list(draft.heading_hierarchy),
            chunk_index=draft.position,
            total_chunks=draft.total,
            source_url=file.source_url,
            content_hash=fingerprint(draft.content.encode("utf-8")),
            file_id=file.identifier,
        )
        for draft in drafts
    ]


def failure_kind(exc: BaseException) -> str:
    if isinstance(exc, DocSyncError):
        return type(exc).__name__
    return "UnexpectedError"


@dataclass(slots=True)
class FileOutcome:
    processed: bool = False
    skipped: bool = False
    written: int = 0
    deleted: int = 0


class SyncOrchestrator:
    """Owns the write side of one profile's store."""

    def __init__(
        self,
        profile_id: str,
        source: DocumentSource,
        store: DualIndexStore,
        provider: EmbeddingProvider,
        *,
        extractors: ExtractorRegistry | None = None,
        chunker: Chunker | None = None,
        projector: CoordinateProjector | None = None,
        max_workers: int = 4,
    ) -> None:
        self.profile_id = profile_id
        self.source = source
        self.store = store
        self.provider = provider
        self.extractors = extractors or ExtractorRegistry()
        self.chunker = chunker or Chunker()
        self.projector = projector
        self.max_workers = max(1, max_workers)
        self._state = store.load_sync_state(profile_id)
        if self._state.phase in (SyncPhase.SCANNING, SyncPhase.PROCESSING):
            # interrupted by a crash or shutdown; nothing is running now
            self._state.phase = SyncPhase.IDLE
        self._run_task: Optional[asyncio.Task] = None
        self._rerun_requested = False
        self._stopping = False

    @property
    def state(self) -> SyncState:
        return replace(self._state, failures=list(self._state.failures))

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def set_provider(self, provider: EmbeddingProvider) -> None:
        self.provider = provider

    def trigger(self) -> asyncio.Task:
        """Start a run, or fold this request into the run in progress.

        A request arriving while a run is active schedules exactly one more
        pass after it finishes.
        """
        if self.is_running:
            self._rerun_requested = True
            LOGGER.debug("[%s] Sync already running; coalescing request", self.profile_id)
            return self._run_task  # type: ignore[return-value]
        self._run_task = asyncio.create_task(self._run_loop(), name=f"sync-{self.profile_id}")
        return self._run_task

    async def run_once(self) -> SyncState:
        await self.trigger()
        return self.state

    async def wait(self) -> SyncState:
        """Wait for the active run, including coalesced passes, to finish."""
        task = self._run_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        return self.state

    async def reembed(self) -> SyncState:
        """Embed chunks without vectors as this profile's single active run.

        Waits for any run in progress first; sync requests arriving meanwhile
        are coalesced into a pass that follows the re-embed.
        """
        while self.is_running:
            await self.wait()
        self._run_task = asyncio.create_task(self._reembed_loop(), name=f"reembed-{self.profile_id}")
        return await self.wait()

    async def _reembed_loop(self) -> None:
        self._rerun_requested = False
        changed = await self.reembed_missing()
        if changed and self.projector is not None:
            await self._refresh_projection()
        await self._persist_state()
        if self._rerun_requested and not self._stopping:
            await self._run_loop()

    async def request_run(self) -> None:
        """Change-notification callback."""
        if not self._stopping:
            self.trigger()

    async def stop(self) -> None:
        """Cancel the active run; committed files stay committed."""
        self._stopping = True
        try:
            task = self._run_task
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            self._stopping = False
            self._rerun_requested = False

    async def _run_loop(self) -> None:
        while True:
            self._rerun_requested = False
            await self._run_pass()
            if not self._rerun_requested or self._stopping:
                return
            LOGGER.info("[%s] Changes arrived during sync; running again", self.profile_id)

    async def _persist_state(self) -> None:
        await asyncio.to_thread(self.store.save_sync_state, self.state)

    async def _fail_scan(self, message: str) -> None:
        state = self._state
        state.phase = SyncPhase.ERROR
        state.last_error = message
        state.last_run_at = time.time()
        await self._persist_state()

    async def _run_pass(self) -> None:
        state = self._state
        state.reset_counts()
        state.phase = SyncPhase.SCANNING
        started = time.monotonic()
        LOGGER.info("[%s] Scanning source", self.profile_id)

        try:
            try:
                files = await asyncio.to_thread(self.source.list_files)
                known = await asyncio.to_thread(self.store.list_file_records)
            except SourceUnreachable as exc:
                LOGGER.error("[%s] Source unreachable: %s", self.profile_id, exc)
                await self._fail_scan(str(exc))
                return
            except Exception as exc:
                LOGGER.exception("[%s] Scanning failed", self.profile_id)
                await self._fail_scan(f"Scanning failed: {exc}")
                return

            current = {file.identifier: file for file in files}
            removed = sorted(set(known) - set(current))
            state.files_seen = len(files)
            state.phase = SyncPhase.PROCESSING
            LOGGER.info(
                "[%s] Found %d files (%d tracked, %d removed)",
                self.profile_id,
                len(files),
                len(known),
                len(removed),
            )

            changed = await self._remove_files(removed)

            semaphore = asyncio.Semaphore(self.max_workers)
            outcomes = await asyncio.gather(
                *(self._process_guarded(file, known.get(file.identifier), semaphore) for file in files)
            )
            for outcome in outcomes:
                if outcome is None:
                    continue
                if outcome.skipped:
                    state.files_skipped += 1
                elif outcome.processed:
                    state.files_processed += 1
                changed = changed or outcome.written > 0 or outcome.deleted > 0

            if not self.store.vectors_ready():
                changed = await self.reembed_missing() or changed

            if changed and self.projector is not None:
                await self._refresh_projection()

            state.phase = SyncPhase.IDLE
            state.last_run_at = time.time()
            await self._persist_state()
            LOGGER.info(
                "[%s] Sync finished in %.1fs: %d processed, %d skipped, %d failed, %d removed",
                self.profile_id,
                time.monotonic() - started,
                state.files_processed,
                state.files_skipped,
                state.files_failed,
                state.files_removed,
            )
        except asyncio.CancelledError:
            state.phase = SyncPhase.IDLE
            state.last_error = "Sync cancelled"
            state.last_run_at = time.time()
            self.store.save_sync_state(self.state)
            LOGGER.info("[%s] Sync cancelled", self.profile_id)
            raise

    async def _remove_files(self, identifiers: Sequence[str]) -> bool:
        changed = False
        for identifier in identifiers:
            try:
                removed = await asyncio.to_thread(self.store.remove_file, identifier)
            except DocSyncError as exc:
                LOGGER.warning("[%s] Failed to remove %s: %s", self.profile_id, identifier, exc)
                self._state.record_failure(FileFailure(identifier, failure_kind(exc), str(exc)))
                continue
            self._state.files_removed += 1
            changed = True
            LOGGER.info("[%s] Removed %s (%d chunks)", self.profile_id, identifier, removed)
        return changed

    async def _process_guarded(
        self,
        file: SourceFile,
        record: Optional[FileRecord],
        semaphore: asyncio.Semaphore,
    ) -> Optional[FileOutcome]:
        async with semaphore:
            try:
                return await self.process_file(file, record)
            except DocSyncError as exc:
                LOGGER.warning("[%s] Failed %s: %s", self.profile_id, file.display_path, exc)
                self._state.record_failure(FileFailure(file.identifier, failure_kind(exc), str(exc)))
            except Exception as exc:
                LOGGER.exception("[%s] Unexpected error processing %s", self.profile_id, file.display_path)
                self._state.record_failure(FileFailure(file.identifier, failure_kind(exc), str(exc)))
        return None

    def _extract_and_chunk(self, file: SourceFile, data: bytes) -> List[ChunkDraft]:
        extracted: ExtractedText = self.extractors.extract(file.identifier, data, file.extension)
        return self.chunker.chunk(extracted.text, extracted.hints)

    async def process_file(self, file: SourceFile, record: Optional[FileRecord]) -> FileOutcome:
        """Bring one file's chunks up to date, skipping unchanged content."""
        if record is not None and record.mtime == file.mtime:
            return FileOutcome(skipped=True)

        data = await asyncio.to_thread(self.source.read_bytes, file)
        digest = fingerprint(data)
        if record is not None and record.content_hash == digest:
            await asyncio.to_thread(self.store.touch_file, file.identifier, file.mtime)
            LOGGER.debug("[%s] %s touched without content change", self.profile_id, file.display_path)
            return FileOutcome(skipped=True)

        drafts = await asyncio.to_thread(self._extract_and_chunk, file, data)
        chunks = build_chunks(file, drafts)

        signatures = await asyncio.to_thread(
            self.store.chunk_signatures, [chunk.chunk_id for chunk in chunks]
        )
        unchanged: Set[str] = {
            chunk.chunk_id
            for chunk in chunks
            if signatures.get(chunk.chunk_id) == (chunk.content_hash, chunk.total_chunks, True)
        }
        pending = [chunk for chunk in chunks if chunk.chunk_id not in unchanged]
        if pending:
            vectors = await embed_with_retry(self.provider, [chunk.embedding_text for chunk in pending])
            for chunk, vector in zip(pending, vectors):
                chunk.embedding = vector

        new_record = FileRecord(
            identifier=file.identifier,
            mtime=file.mtime,
            content_hash=digest,
            source_url=file.source_url,
            display_path=file.display_path,
        )
        written, deleted = await asyncio.to_thread(
            self.store.commit_file, new_record, chunks, unchanged_ids=unchanged
        )
        LOGGER.info(
            "[%s] Indexed %s: %d chunks (%d written, %d unchanged, %d removed)",
            self.profile_id,
            file.display_path,
            len(chunks),
            written,
            len(unchanged),
            deleted,
        )
        return FileOutcome(processed=True, written=written, deleted=deleted)

    async def reembed_missing(self) -> bool:
        """Embed every stored chunk that has no vector, batch by batch.

        Keyword search keeps working meanwhile; vector search resumes once
        the last missing vector is written.
        """
        total = 0
        try:
            while True:
                chunks = await asyncio.to_thread(self.store.chunks_missing_vectors, REEMBED_BATCH)
                if not chunks:
                    # missing vectors may have been replaced or deleted by file commits
                    await asyncio.to_thread(self.store.finish_reembed)
                    break
                vectors = await embed_with_retry(self.provider, [chunk.embedding_text for chunk in chunks])
                await asyncio.to_thread(
                    self.store.set_embeddings,
                    {chunk.chunk_id: vector for chunk, vector in zip(chunks, vectors)},
                )
                total += len(chunks)
        except (ProviderError, DimensionMismatch) as exc:
            LOGGER.warning("[%s] Re-embedding paused: %s", self.profile_id, exc)
            self._state.last_error = f"Re-embedding paused: {exc}"
        if total:
            LOGGER.info("[%s] Re-embedded %d chunks", self.profile_id, total)
        return total > 0

    async def _refresh_projection(self) -> None:
        try:
            await asyncio.to_thread(self.projector.refresh)
        except Exception:
            # the map is optional; indexing results stand
            LOGGER.exception("[%s] Map projection failed", self.profile_id)
