"""
Gatekeeper API: update checks and download grant issuance.

Run with ``otagate serve gatekeeper`` or
``uvicorn otagate.gatekeeper:create_gatekeeper_app --factory``.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException

from .codec import GrantCodec
from .config import Settings, build_authenticator, build_key_ring, build_metadata_store, build_object_store, load_settings
from .errors import IntegrityFault, InvalidRequest, StoreError, Unauthorized
from .issuer import GrantIssuer
from .logging_config import configure_logging
from .middleware import RequestIDMiddleware
from .models import HealthResponse
from .security import extract_bearer

logger = logging.getLogger(__name__)


def build_issuer(settings: Settings) -> GrantIssuer:
    codec = GrantCodec(build_key_ring(settings))
    return GrantIssuer(
        metadata_store=build_metadata_store(settings),
        object_store=build_object_store(settings),
        codec=codec,
        authenticator=build_authenticator(settings),
        storage_base_url=settings.storage_base_url,
        grant_ttl=settings.grant_ttl_seconds,
        platform_roots=settings.platform_roots,
        verify_on_issue=settings.verify_on_issue,
    )


def create_gatekeeper_app(
    settings: Optional[Settings] = None,
    issuer: Optional[GrantIssuer] = None,
    configure_logs: bool = True
) -> FastAPI:
    settings = settings or load_settings()
    if configure_logs:
        configure_logging(settings.log_level, json_format=settings.log_json)
    issuer = issuer or build_issuer(settings)

    app = FastAPI(title="otagate gatekeeper")
    app.add_middleware(RequestIDMiddleware)
    app.state.issuer = issuer
    app.state.settings = settings

    @app.get("/healthz", response_model=HealthResponse)
    def healthz():
        return HealthResponse(service="gatekeeper", key_generations=len(issuer.codec.key_ring.kids))

    @app.get("/check")
    def check(
        authorization: Optional[str] = Header(default=None),
        x_app_platform: Optional[str] = Header(default=None),
        x_app_version: Optional[str] = Header(default=None),
    ):
        platform = x_app_platform or settings.default_platform
        try:
            result = issuer.issue_update_check(extract_bearer(authorization), platform, x_app_version)
        except Unauthorized:
            raise HTTPException(401, "UNAUTHORIZED", headers={"WWW-Authenticate": "Bearer"})
        except InvalidRequest as e:
            raise HTTPException(400, f"INVALID_{e.field.upper()}")
        except IntegrityFault:
            raise HTTPException(500, "INTEGRITY_FAULT")
        except StoreError:
            logger.exception("Metadata store failure for platform %s", platform)
            raise HTTPException(500, "STORE_ERROR")
        return result.model_dump(by_alias=True)

    return app
