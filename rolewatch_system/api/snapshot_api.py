"""FastAPI read/delete API over the activity snapshots."""

import time

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from database.ActivityDatabase import StorageError
from loggers.logger_setup import get_logger
from rolewatch_system.snapshots.snapshot_manager import SnapshotManager, SnapshotNotFoundError

logger = get_logger("SnapshotAPI")


def create_app(manager: SnapshotManager, api_key: str) -> FastAPI:
    """
    Build the API application around an existing SnapshotManager.

    Every /api route requires the ``x-api-key`` header to equal ``api_key``.
    """
    app = FastAPI(title="Rolewatch API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def require_api_key(x_api_key: str = Header(default=None)):
        if not x_api_key or x_api_key != api_key:
            raise HTTPException(status_code=401, detail="Unauthorized: Invalid API key")

    @app.get("/")
    async def root():
        return {"status": "Discord Bot API is running"}

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": time.time()}

    @app.get("/api/snapshots", dependencies=[Depends(require_api_key)])
    async def list_snapshots():
        try:
            return await manager.list()
        except StorageError as e:
            logger.error(f"Error listing snapshots: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch snapshots")

    @app.get("/api/snapshots/{snapshot_id}", dependencies=[Depends(require_api_key)])
    async def get_snapshot(snapshot_id: int):
        try:
            snapshot = await manager.get(snapshot_id)
        except StorageError as e:
            logger.error(f"Error fetching snapshot {snapshot_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch snapshot data")

        if snapshot is None:
            raise HTTPException(status_code=404, detail="Snapshot not found")
        return snapshot

    @app.delete("/api/snapshots/{snapshot_id}", dependencies=[Depends(require_api_key)])
    async def delete_snapshot(snapshot_id: int):
        try:
            return await manager.delete(snapshot_id)
        except SnapshotNotFoundError:
            raise HTTPException(status_code=404, detail="Snapshot not found")
        except StorageError as e:
            logger.error(f"Error deleting snapshot {snapshot_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to delete snapshot")

    return app
