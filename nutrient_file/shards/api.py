# -*- coding: utf-8 -*-
"""Shards — API endpoints over the local dataset store."""

from __future__ import annotations

from itertools import islice
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from .errors import (
    DatasetSyncError,
    ManifestFetchError,
    ShardDownloadError,
    ShardValidationError,
    StorageError,
    StorageQuotaError,
    SyncInProgressError,
)
from .models import LoadProgress, ManifestVersion, ShardStatus, SyncSummary, UpdateCheck
from .sync import ShardSynchronizer

dataset_router = APIRouter(prefix="/api/dataset", tags=["Dataset"])
foods_router = APIRouter(prefix="/api/foods", tags=["Foods"])


class DatasetStatusResponse(BaseModel):
    installed: Optional[ManifestVersion] = None
    progress: LoadProgress
    records: int = 0
    shards: List[ShardStatus] = []


def get_synchronizer(request: Request) -> ShardSynchronizer:
    sync = getattr(request.app.state, "synchronizer", None)
    if sync is None:
        raise HTTPException(status_code=503, detail="Dataset store not initialized")
    return sync


def raise_http(exc: DatasetSyncError) -> NoReturn:
    if isinstance(exc, SyncInProgressError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, StorageQuotaError):
        raise HTTPException(status_code=507, detail=f"Not enough storage: {exc}") from exc
    if isinstance(exc, StorageError):
        raise HTTPException(status_code=500, detail=f"Storage error: {exc}") from exc
    if isinstance(exc, ShardValidationError):
        raise HTTPException(status_code=502, detail=f"Shard validation failed ({exc.reason}): {exc}") from exc
    if isinstance(exc, (ManifestFetchError, ShardDownloadError)):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


@dataset_router.get("/status", response_model=DatasetStatusResponse, summary="Installed dataset and shard states")
def dataset_status(sync: ShardSynchronizer = Depends(get_synchronizer)):
    try:
        return DatasetStatusResponse(
            installed=sync.installed_version(),
            progress=sync.progress,
            records=sync.store.count_records(),
            shards=sync.get_statuses(),
        )
    except DatasetSyncError as exc:
        raise_http(exc)


@dataset_router.get("/updates", response_model=UpdateCheck, summary="Compare the remote manifest with the installed one")
def dataset_updates(sync: ShardSynchronizer = Depends(get_synchronizer)):
    try:
        return sync.check_for_updates()
    except DatasetSyncError as exc:
        raise_http(exc)


@dataset_router.post("/sync", response_model=SyncSummary, summary="Download and store every missing shard")
def dataset_sync(sync: ShardSynchronizer = Depends(get_synchronizer)):
    try:
        return sync.load_dataset()
    except DatasetSyncError as exc:
        raise_http(exc)


@foods_router.get("", summary="Records from every stored shard")
def list_foods(
    limit: int = Query(default=100, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    sync: ShardSynchronizer = Depends(get_synchronizer),
) -> List[Dict[str, Any]]:
    try:
        return list(islice(sync.iter_records(), offset, offset + limit))
    except DatasetSyncError as exc:
        raise_http(exc)


@foods_router.get("/{food_id}", summary="One record by FoodID")
def get_food(food_id: str, sync: ShardSynchronizer = Depends(get_synchronizer)) -> Dict[str, Any]:
    try:
        record = sync.get_record(food_id)
    except DatasetSyncError as exc:
        raise_http(exc)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Food {food_id} not found")
    return record
