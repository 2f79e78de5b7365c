from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends

from core.dependencies import get_deployment_mapper, http_error
from core.errors import InventoryError
from schemas.deployments import (
    BatchDeploymentRequest,
    DeploymentPreview,
    DeploymentRequest,
    DeploymentResult,
    DeploymentValidation,
    RecipeInventoryMapping,
)
from services.deployment import RecipeDeploymentMapper

router = APIRouter()


@router.get("/{template_id}/stores/{store_id}/mapping", response_model=RecipeInventoryMapping)
async def get_mapping(
    template_id: UUID,
    store_id: UUID,
    mapper: RecipeDeploymentMapper = Depends(get_deployment_mapper),
):
    try:
        return await mapper.build_mapping(template_id, store_id)
    except InventoryError as e:
        raise http_error(e)


@router.get("/{template_id}/stores/{store_id}/validation", response_model=DeploymentValidation)
async def validate_deployment(
    template_id: UUID,
    store_id: UUID,
    mapper: RecipeDeploymentMapper = Depends(get_deployment_mapper),
):
    try:
        return await mapper.validate_deployment(template_id, store_id)
    except InventoryError as e:
        raise http_error(e)


@router.get("/{template_id}/stores/{store_id}/preview", response_model=DeploymentPreview)
async def preview_deployment(
    template_id: UUID,
    store_id: UUID,
    mapper: RecipeDeploymentMapper = Depends(get_deployment_mapper),
):
    try:
        return await mapper.preview(template_id, store_id)
    except InventoryError as e:
        raise http_error(e)


@router.post("/", response_model=DeploymentResult)
async def deploy(payload: DeploymentRequest, mapper: RecipeDeploymentMapper = Depends(get_deployment_mapper)):
    try:
        return await mapper.deploy(payload.template_id, payload.store_id)
    except InventoryError as e:
        raise http_error(e)


@router.post("/batch", response_model=List[DeploymentResult])
async def deploy_batch(
    payload: BatchDeploymentRequest,
    mapper: RecipeDeploymentMapper = Depends(get_deployment_mapper),
):
    try:
        return await mapper.deploy_to_stores(payload.template_id, payload.store_ids)
    except InventoryError as e:
        raise http_error(e)
