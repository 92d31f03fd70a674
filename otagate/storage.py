"""
Storage API: serves bundles, only through the storage gate.

There is a single byte-serving route and no static mount, so nothing
(directory listings included) bypasses grant verification.

Run with ``otagate serve storage`` or
``uvicorn otagate.storage:create_storage_app --factory``.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from .codec import GrantCodec
from .config import Settings, build_key_ring, build_metadata_store, build_object_store, load_settings
from .errors import GrantError, IntegrityFault, ObjectNotFound, StoreError
from .gate import StorageGate
from .logging_config import configure_logging
from .middleware import RequestIDMiddleware
from .models import HealthResponse

logger = logging.getLogger(__name__)

FORBIDDEN = "FORBIDDEN"


def build_gate(settings: Settings) -> StorageGate:
    return StorageGate(
        codec=GrantCodec(build_key_ring(settings)),
        object_store=build_object_store(settings),
        metadata_store=build_metadata_store(settings),
        platform_roots=settings.platform_roots,
        leeway=settings.grant_leeway_seconds,
    )


def create_storage_app(
    settings: Optional[Settings] = None,
    gate: Optional[StorageGate] = None,
    configure_logs: bool = True
) -> FastAPI:
    settings = settings or load_settings()
    if configure_logs:
        configure_logging(settings.log_level, json_format=settings.log_json)
    gate = gate or build_gate(settings)

    app = FastAPI(title="otagate storage")
    app.add_middleware(RequestIDMiddleware)
    app.state.gate = gate
    app.state.settings = settings

    @app.get("/healthz", response_model=HealthResponse)
    def healthz():
        return HealthResponse(service="storage", key_generations=len(gate.codec.key_ring.kids))

    @app.get("/files/{resource_path:path}")
    def download(resource_path: str, grant: Optional[str] = Query(default=None)):
        try:
            item = gate.open_download(resource_path, grant)
        except GrantError:
            # Uniform body whatever the reason
            raise HTTPException(403, FORBIDDEN)
        except ObjectNotFound:
            raise HTTPException(404, "NOT_FOUND")
        except IntegrityFault:
            raise HTTPException(500, "INTEGRITY_FAULT")
        except StoreError:
            logger.exception("Object store failure for %s", resource_path)
            raise HTTPException(500, "STORE_ERROR")

        headers = {
            "Content-Length": str(item.size),
            "Cache-Control": "private, no-store",
        }
        if item.content_hash:
            headers["X-Content-SHA256"] = item.content_hash
        return StreamingResponse(iter(item.chunks), media_type="application/octet-stream", headers=headers)

    return app
