"""Provider registry and lifecycle endpoints."""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_lifecycle, get_registry
from ..errors import UnknownProvider
from ..schemas import LifecycleResultModel, ProviderEventRequest
from ..services.lifecycle import ProviderChangeEvent, ProviderLifecycleManager
from ..services.registry import ProviderRegistry

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[dict[str, Any]])
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> list[dict[str, Any]]:
    """Return the registry snapshot with credentials redacted."""

    return [provider.redacted() for provider in registry.snapshot()]


@router.get("/{provider_id}", response_model=dict[str, Any])
async def get_provider(provider_id: str, registry: ProviderRegistry = Depends(get_registry)) -> dict[str, Any]:
    try:
        return registry.get(provider_id).redacted()
    except UnknownProvider as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{provider_id}/events", response_model=LifecycleResultModel)
async def provider_event(
    provider_id: str,
    request: ProviderEventRequest,
    lifecycle: ProviderLifecycleManager = Depends(get_lifecycle),
) -> LifecycleResultModel:
    """Apply a provider change event and report the follow-up actions."""

    try:
        event = ProviderChangeEvent(provider_id=provider_id, action=request.action, config=request.config)
        result = await lifecycle.on_change(event)
    except UnknownProvider as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return LifecycleResultModel(**result.as_dict())
