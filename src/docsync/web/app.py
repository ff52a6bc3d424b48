"""FastAPI application exposing profiles, sync control and search."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Literal

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from docsync import __version__
from docsync.config import AppConfig, EmbeddingSettings, ProfileConfig, SourceSettings
from docsync.engine import SyncEngine
from docsync.errors import (
    ChunkNotFound,
    InvalidCredentials,
    ProfileNotFound,
    ProviderUnavailable,
    SyncAlreadyRunning,
)

LOGGER = logging.getLogger(__name__)


class ProfilePayload(BaseModel):
    name: str
    kind: Literal["local", "drive"] = "local"
    root: str | None = None
    folder_id: str | None = None
    drive_id: str | None = None
    root_name: str = "My Drive"
    token_env: str = "GOOGLE_DRIVE_TOKEN"
    provider: str = "local"
    model_name: str | None = None
    dimension: int | None = None
    extensions: List[str] | None = None
    recursive: bool = True


class SearchPayload(BaseModel):
    query: str
    top_k: int = 10


class EmbeddingPayload(BaseModel):
    provider: str
    model_name: str | None = None
    dimension: int | None = None


class NeighborsPayload(BaseModel):
    chunk_id: str
    limit: int = 50


def _embedding_settings(provider: str, model_name: str | None, dimension: int | None) -> EmbeddingSettings:
    args: dict[str, Any] = {"provider": provider, "dimension": dimension}
    if model_name:
        args["model_name"] = model_name
    try:
        return EmbeddingSettings(**args)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _profile_dict(profile: ProfileConfig) -> dict[str, Any]:
    data = profile.to_dict()
    data["provider_id"] = profile.embedding.provider_id
    return data


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def create_app(engine: SyncEngine | None = None, *, config: AppConfig | None = None) -> FastAPI:
    """Build the API around ``engine`` (or a fresh engine for ``config``)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        try:
            yield
        finally:
            await app.state.engine.close()

    app = FastAPI(title="DocSync API", version=__version__, lifespan=lifespan)
    app.state.engine = engine or SyncEngine(config or AppConfig())
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProfileNotFound)
    async def _not_found(request: Request, exc: ProfileNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ChunkNotFound)
    async def _chunk_not_found(request: Request, exc: ChunkNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SyncAlreadyRunning)
    async def _conflict(request: Request, exc: SyncAlreadyRunning) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(InvalidCredentials)
    async def _bad_credentials(request: Request, exc: InvalidCredentials) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ProviderUnavailable)
    async def _provider_down(request: Request, exc: ProviderUnavailable) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/profiles")
    async def list_profiles(engine: SyncEngine = Depends(get_engine)) -> dict[str, Any]:
        return {"profiles": [_profile_dict(profile) for profile in engine.list_profiles()]}

    @app.post("/profiles", status_code=201)
    async def create_profile(
        payload: ProfilePayload, engine: SyncEngine = Depends(get_engine)
    ) -> dict[str, Any]:
        if not payload.name.strip():
            raise HTTPException(status_code=400, detail="Profile name is required")
        if payload.kind == "local":
            if not payload.root or "\0" in payload.root:
                raise HTTPException(status_code=400, detail="A local profile needs a root folder")
            root = Path(payload.root).expanduser()
            if not root.is_dir():
                raise HTTPException(status_code=400, detail=f"Folder not found: {payload.root}")
            source = SourceSettings(kind="local", root=str(root.resolve()))
        else:
            if not payload.folder_id:
                raise HTTPException(status_code=400, detail="A drive profile needs a folder_id")
            source = SourceSettings(
                kind="drive",
                folder_id=payload.folder_id,
                drive_id=payload.drive_id,
                root_name=payload.root_name,
                token_env=payload.token_env,
            )
        embedding = _embedding_settings(payload.provider, payload.model_name, payload.dimension)
        try:
            profile = engine.create_profile(
                payload.name.strip(),
                source,
                embedding=embedding,
                extensions=payload.extensions,
                recursive=payload.recursive,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"profile": _profile_dict(profile)}

    @app.delete("/profiles/{profile_id}")
    async def delete_profile(profile_id: str, engine: SyncEngine = Depends(get_engine)) -> dict[str, str]:
        await engine.delete_profile(profile_id)
        return {"status": "ok", "deleted_id": profile_id}

    @app.post("/profiles/{profile_id}/sync/start")
    async def start_sync(profile_id: str, engine: SyncEngine = Depends(get_engine)) -> dict[str, Any]:
        state = await engine.start_sync(profile_id)
        return {"status": "started", "state": state.to_dict()}

    @app.post("/profiles/{profile_id}/sync/stop")
    async def stop_sync(profile_id: str, engine: SyncEngine = Depends(get_engine)) -> dict[str, Any]:
        state = await engine.stop_sync(profile_id)
        return {"status": "stopped", "state": state.to_dict()}

    @app.get("/profiles/{profile_id}/sync")
    async def sync_state(profile_id: str, engine: SyncEngine = Depends(get_engine)) -> dict[str, Any]:
        state = await engine.get_sync_state(profile_id)
        return {
            "state": state.to_dict(),
            "running": await engine.is_syncing(profile_id),
            "stats": await engine.stats(profile_id),
        }

    @app.post("/profiles/{profile_id}/search")
    async def search(
        profile_id: str, payload: SearchPayload, engine: SyncEngine = Depends(get_engine)
    ) -> dict[str, Any]:
        query = payload.query.strip()
        if not query:
            raise HTTPException(status_code=400, detail="Empty query")
        top_k = max(1, min(payload.top_k, 50))
        outcome = await engine.search_outcome(profile_id, query, top_k)
        return {
            "results": [result.to_dict() for result in outcome.results],
            "vector_available": outcome.vector_available,
        }

    @app.put("/profiles/{profile_id}/embedding")
    async def set_embedding(
        profile_id: str, payload: EmbeddingPayload, engine: SyncEngine = Depends(get_engine)
    ) -> dict[str, Any]:
        settings = _embedding_settings(payload.provider, payload.model_name, payload.dimension)
        reset = await engine.set_embedding_provider(profile_id, settings)
        return {"status": "ok", "provider_id": settings.provider_id, "reembedding": reset}

    @app.get("/profiles/{profile_id}/map")
    async def map_points(
        profile_id: str, limit: int = 600, engine: SyncEngine = Depends(get_engine)
    ) -> dict[str, Any]:
        limit = max(1, min(limit, 5000))
        return {"points": await engine.map_points(profile_id, limit)}

    @app.post("/profiles/{profile_id}/map/neighbors")
    async def map_neighbors(
        profile_id: str, payload: NeighborsPayload, engine: SyncEngine = Depends(get_engine)
    ) -> dict[str, Any]:
        if not payload.chunk_id:
            raise HTTPException(status_code=400, detail="chunk_id is required")
        hits = await engine.neighbors(profile_id, payload.chunk_id, payload.limit)
        return {
            "chunk_id": payload.chunk_id,
            "neighbors": [dict(chunk.to_dict(), score=score) for chunk, score in hits],
        }

    @app.get("/profiles/{profile_id}/chunks")
    async def document_chunks(
        profile_id: str,
        document: str,
        start: int | None = None,
        end: int | None = None,
        engine: SyncEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        if start is not None and end is not None and end < start:
            raise HTTPException(status_code=400, detail="end must not be before start")
        chunks = await engine.get_chunks(profile_id, document, start, end)
        return {"document": document, "chunks": [chunk.to_dict() for chunk in chunks]}

    @app.post("/profiles/{profile_id}/clear")
    async def clear_profile(profile_id: str, engine: SyncEngine = Depends(get_engine)) -> dict[str, str]:
        await engine.clear_profile(profile_id)
        return {"status": "ok"}

    return app
