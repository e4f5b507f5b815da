from __future__ import annotations

from fastapi import APIRouter, Header, Request

from parley_service.app.models import (
    ArtifactResponse,
    ArtifactVersionContentResponse,
    ArtifactVersionsResponse,
    ArtifactVersionSummary,
)
from parley_service.modules.common.deps import get_artifacts, require_auth

router = APIRouter()


@router.get("/artifacts/{artifact_id}", response_model=ArtifactResponse)
async def get_artifact(
    request: Request,
    artifact_id: str,
    authorization: str = Header(default=""),
) -> ArtifactResponse:
    require_auth(request, authorization)
    record = await get_artifacts(request).get(artifact_id)
    return ArtifactResponse.from_record(record)


@router.get("/artifacts/{artifact_id}/versions", response_model=ArtifactVersionsResponse)
async def list_versions(
    request: Request,
    artifact_id: str,
    authorization: str = Header(default=""),
) -> ArtifactVersionsResponse:
    require_auth(request, authorization)
    versions = await get_artifacts(request).list_versions(artifact_id)
    return ArtifactVersionsResponse(
        artifact_id=artifact_id,
        versions=[ArtifactVersionSummary.from_version(version) for version in versions],
    )


@router.get("/artifacts/{artifact_id}/versions/{version}", response_model=ArtifactVersionContentResponse)
async def get_version_content(
    request: Request,
    artifact_id: str,
    version: int,
    authorization: str = Header(default=""),
) -> ArtifactVersionContentResponse:
    require_auth(request, authorization)
    content = await get_artifacts(request).get_version_content(artifact_id, version)
    return ArtifactVersionContentResponse(artifact_id=artifact_id, version=version, content=content)
