"""Local HTTP API for hostsnap snapshots and drift checks."""
from __future__ import annotations

import argparse
import ipaddress
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field

from core import __version__ as APP_VERSION
from core.logging_utils import configure_logging
from core.paths import resolve_working_dir
from core.settings import load_settings, section
from drift.api import DriftService
from drift.engine import InvalidTargetError
from snapshot.api import SnapshotService
from snapshot.errors import (
    InvalidCategoryError,
    SnapshotError,
    SnapshotLockedError,
    SnapshotNotFoundError,
    SnapshotVerificationError,
)
from snapshot.types import BackupResult, SnapshotSummary

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765


class BackupRequest(BaseModel):
    exclude_patterns: List[str] = Field(default_factory=list, description="Extra exclude globs")
    dry_run: bool = Field(default=False, description="Report without writing a snapshot")


class DriftRequest(BaseModel):
    target: str = Field(description="ports, connections, processes, services, users, mounts, packages, configs, files or all")
    category: str = Field(default="all", description="Category holding the baseline")
    files: Optional[List[str]] = Field(default=None, description="Files for the 'files' target")


def _summary_payload(summary: SnapshotSummary) -> Dict[str, Any]:
    return {
        "category": summary.category,
        "key": summary.key,
        "path": str(summary.path),
        "created": summary.created.isoformat() if summary.created else None,
        "complete": summary.complete,
        "is_latest": summary.is_latest,
        "labels": summary.labels,
    }


def _backup_payload(result: BackupResult) -> Dict[str, Any]:
    return {
        "category": result.category,
        "dry_run": result.dry_run,
        "snapshot": result.snapshot_key,
        "path": str(result.directory) if result.directory else None,
        "previous": str(result.previous) if result.previous else None,
        "sources": result.sources,
        "files_copied": result.files_copied,
        "files_linked": result.files_linked,
        "issues": [issue.describe() for issue in result.issues],
    }


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (InvalidCategoryError, InvalidTargetError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, SnapshotNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SnapshotLockedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, SnapshotVerificationError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


class HostsnapAPI:
    """Router helper for snapshot and drift REST endpoints."""

    def __init__(self, service: SnapshotService) -> None:
        self.service = service
        self.drift = DriftService(service)

    def router(self) -> APIRouter:
        router = APIRouter(prefix="/v1", tags=["hostsnap"])

        @router.get("/snapshots/{category}")
        def list_snapshots_endpoint(category: str) -> List[Dict[str, Any]]:
            try:
                return [_summary_payload(item) for item in self.service.list_snapshots(category)]
            except SnapshotError as exc:
                raise _http_error(exc) from exc

        @router.post("/snapshots/{category}")
        def create_snapshot_endpoint(category: str, request: BackupRequest) -> Dict[str, Any]:
            try:
                result = self.service.backup(
                    category,
                    exclude_patterns=request.exclude_patterns,
                    dry_run=request.dry_run,
                )
            except SnapshotError as exc:
                raise _http_error(exc) from exc
            return _backup_payload(result)

        @router.get("/snapshots/{category}/{ref}/verify")
        def verify_snapshot_endpoint(category: str, ref: str) -> Dict[str, Any]:
            try:
                return self.service.verify(category, ref)
            except SnapshotError as exc:
                raise _http_error(exc) from exc

        @router.post("/drift")
        def drift_endpoint(request: DriftRequest) -> Dict[str, Any]:
            try:
                results = self.drift.diff(request.target, request.category, request.files)
            except (InvalidTargetError, SnapshotError) as exc:
                raise _http_error(exc) from exc
            return {
                "target": request.target,
                "category": request.category,
                "results": [result.to_dict() for result in results],
            }

        return router


def create_app(service: Optional[SnapshotService] = None) -> FastAPI:
    service = service or SnapshotService()
    app = FastAPI(title="hostsnap", version=APP_VERSION)
    app.include_router(HostsnapAPI(service).router())

    @app.get("/v1/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "version": APP_VERSION}

    return app


def _resolve_bind_host(candidate: Optional[str]) -> str:
    """Map *candidate* to an IPv4 loopback address or raise ``ValueError``."""

    text = (candidate or "").strip().lower() or DEFAULT_HOST
    if text == "localhost":
        return DEFAULT_HOST
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        address = None
    if isinstance(address, ipaddress.IPv6Address):
        address = address.ipv4_mapped or (ipaddress.IPv4Address(DEFAULT_HOST) if address.is_loopback else address)
    if address is None or not address.is_loopback:
        raise ValueError(f"API server only binds to loopback addresses, got {candidate!r}")
    return str(address)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="hostsnap-api", description="Serve hostsnap over HTTP on localhost.")
    parser.add_argument("--host", help="Loopback address to bind; overrides api.host")
    parser.add_argument("--port", type=int, help="TCP port; overrides api.port")
    parser.add_argument("--working-dir", dest="working_dir", help="Working directory (settings, logs, default store)")
    return parser.parse_args(argv)


def _bind_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PORT
    return port if 0 < port < 65536 else DEFAULT_PORT


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    working_dir = Path(args.working_dir).expanduser() if args.working_dir else resolve_working_dir()
    logger = configure_logging(working_dir)
    settings = load_settings(working_dir)
    api_block = section(settings, "api")
    try:
        host = _resolve_bind_host(args.host or api_block.get("host"))
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    port = _bind_port(args.port or api_block.get("port"))

    app = create_app(SnapshotService(working_dir=working_dir, settings=settings))
    logging.getLogger("hostsnap.api").info("serving on http://%s:%d", host, port)
    print(f"hostsnap API on http://{host}:{port}", flush=True)
    uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info", access_log=False)).run()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
