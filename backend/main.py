"""FastAPI entrypoint for the Vaultlink backend."""

from __future__ import annotations

import traceback
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from config import VaultlinkConfig
from errors import ConfigurationError
from models import (
    BuildIndexRequest,
    ContextRequest,
    ContextResponsePayload,
    FolderSuggestionPayload,
    IndexStatsPayload,
    LinkTextRequest,
    LinkTextResponsePayload,
    RemoveFileRequest,
    RenameFileRequest,
    ResolveLinksRequest,
    StylePayload,
    UpdateFileRequest,
)
from services import VaultService

vault_service = VaultService(config=VaultlinkConfig.from_env())


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await vault_service.aclose()


app = FastAPI(
    title="Vaultlink Backend",
    description="Semantic index and context linking for a notes vault",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["health"])
async def root():
    return {"status": "ok", "message": "Vaultlink backend is running"}


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "message": "Vaultlink backend is running"}


@app.post("/index/build", tags=["index"])
async def build_index(request: BuildIndexRequest = BuildIndexRequest()):
    try:
        await vault_service.build_index(request.force_rebuild)
        stats = vault_service.get_stats()
        return {"success": True, "total_chunks": stats.total_chunks}
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        traceback.print_exc()
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/context", response_model=ContextResponsePayload, tags=["search"])
async def context(request: ContextRequest):
    passages = await vault_service.retrieve_context(request.text)
    return ContextResponsePayload(passages=passages)


@app.post("/index/update", tags=["index"])
async def update_file(request: UpdateFileRequest):
    try:
        updated = await vault_service.update_file(
            request.document_id, request.content, request.modified_at
        )
        return {"success": True, "updated": updated}
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/index/rename", tags=["index"])
async def rename_file(request: RenameFileRequest):
    try:
        updated = await vault_service.rename_file(
            request.old_document_id,
            request.new_document_id,
            request.content,
            request.modified_at,
        )
        return {"success": True, "updated": updated}
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/index/remove", tags=["index"])
async def remove_file(request: RemoveFileRequest):
    try:
        removed = await vault_service.remove_file(request.document_id)
        return {"success": True, "removed_chunks": removed}
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/index/clear", tags=["index"])
async def clear_index():
    try:
        await vault_service.clear_index()
        return {"success": True}
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/index/stats", response_model=IndexStatsPayload, tags=["index"])
async def stats():
    result = vault_service.get_stats()
    return IndexStatsPayload(
        total_chunks=result.total_chunks,
        total_documents=result.total_documents,
        is_built=result.is_built,
        provider_name=result.provider_name,
    )


@app.get("/style", response_model=StylePayload, tags=["index"])
async def style():
    return StylePayload(style=vault_service.analyze_style())


@app.post("/links/apply", response_model=LinkTextResponsePayload, tags=["links"])
async def apply_links(request: LinkTextRequest):
    try:
        result = await vault_service.apply_context_links(request.text)
        return LinkTextResponsePayload(text=result.text, match_count=result.match_count)
    except Exception as exc:
        traceback.print_exc()
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/links/mark-dirty", tags=["links"])
async def mark_dirty():
    vault_service.mark_dirty()
    return {"success": True}


@app.post("/links/resolve", response_model=LinkTextResponsePayload, tags=["links"])
async def resolve_links(request: ResolveLinksRequest):
    text = await vault_service.resolve_links(request.text, request.auto_link_first_match)
    return LinkTextResponsePayload(text=text, match_count=0)


@app.post("/links/suggest-folder", response_model=FolderSuggestionPayload, tags=["links"])
async def suggest_folder(request: LinkTextRequest):
    folder = await vault_service.suggest_folder(request.text)
    return FolderSuggestionPayload(folder=folder)


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
