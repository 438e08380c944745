"""
Stack API Endpoints

REST endpoints for managing the learnstack host:
- POST /api/stacks: Provision a stack and hand off its configuration
- GET /api/stacks: List recent stack deployments
- GET /api/stacks/{id}/status: Get deployment status and resource ids
- GET /api/stacks/{id}/outputs: Get the public address and gateway URL
- GET /api/stacks/{id}/health: List running services on the host
- POST /api/stacks/{id}/handoff: Re-run readiness polling and handoff
- POST /api/stacks/{id}/destroy: Tear the stack down
"""

import logging
import uuid

import paramiko
from fastapi import APIRouter, HTTPException, Depends, BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession

from learnstack.config import SettingsError
from learnstack.database.connection import get_db
from learnstack.database.models import DeploymentStatus, StackDeployment
from learnstack.database.repositories import StackDeploymentRepository
from learnstack.services.errors import ProvisioningError
from learnstack.services.stack_service import (
    check_stack_health,
    execute_stack_apply,
    execute_stack_destroy,
    execute_stack_handoff,
)
from learnstack.utilities.schemas import (
    StackActionResponse,
    StackCreateRequest,
    StackDeploymentResponse,
    StackHealthResponse,
    StackOutputsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["stacks"])

OUTPUT_STATUSES = (
    DeploymentStatus.PROVISIONED,
    DeploymentStatus.HANDOFF,
    DeploymentStatus.SUCCESS,
)

HANDOFF_STATUSES = (
    DeploymentStatus.PROVISIONED,
    DeploymentStatus.SUCCESS,
    DeploymentStatus.FAILED,
)

DESTROY_STATUSES = (
    DeploymentStatus.PROVISIONED,
    DeploymentStatus.SUCCESS,
    DeploymentStatus.FAILED,
    DeploymentStatus.DESTROY_FAILED,
)


def _to_response(deployment: StackDeployment) -> StackDeploymentResponse:
    return StackDeploymentResponse(
        id=deployment.id,
        name=deployment.name,
        status=deployment.status.value,
        stage=deployment.stage,
        instance_id=deployment.instance_id,
        private_ip=deployment.private_ip,
        public_ip=deployment.public_ip,
        api_id=deployment.api_id,
        invoke_url=deployment.invoke_url,
        access_rule_id=deployment.access_rule_id,
        running_services=list(deployment.running_services or []),
        output=deployment.output,
        error_message=deployment.error_message,
        created_at=deployment.created_at.isoformat(),
        updated_at=deployment.updated_at.isoformat(),
        completed_at=deployment.completed_at.isoformat() if deployment.completed_at else None
    )


async def _get_deployment(repo: StackDeploymentRepository, deployment_id: uuid.UUID) -> StackDeployment:
    deployment = await repo.get_by_id(deployment_id)
    if not deployment:
        raise HTTPException(
            status_code=404,
            detail="Deployment not found"
        )
    return deployment


# ============================================
# ENDPOINTS
# ============================================

@router.post("/stacks", status_code=202)
async def create_stack(
    request: StackCreateRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
) -> StackActionResponse:
    """
    Provision a new stack.

    Flow:
    1. Create deployment record with status STARTED
    2. Enqueue background task for provisioning and handoff
    3. Return deployment_id with 202 Accepted
    """
    repo = StackDeploymentRepository(db)
    deployment = await repo.create(name=request.name)

    background_tasks.add_task(execute_stack_apply, deployment_id=deployment.id)

    return StackActionResponse(
        deployment_id=deployment.id,
        status=DeploymentStatus.STARTED.value,
        message="Stack provisioning started in background"
    )


@router.get("/stacks")
async def list_stacks(
    limit: int = 50,
    db: AsyncSession = Depends(get_db)
) -> list[StackDeploymentResponse]:
    repo = StackDeploymentRepository(db)
    deployments = await repo.list_recent(limit=limit)
    return [_to_response(deployment) for deployment in deployments]


@router.get("/stacks/{deployment_id}/status")
async def get_stack_status(
    deployment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db)
) -> StackDeploymentResponse:
    """
    Get deployment status and details.

    Raises:
        HTTPException 404: Deployment not found
    """
    repo = StackDeploymentRepository(db)
    deployment = await _get_deployment(repo, deployment_id)
    return _to_response(deployment)


@router.get("/stacks/{deployment_id}/outputs")
async def get_stack_outputs(
    deployment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db)
) -> StackOutputsResponse:
    """
    Get the resolved public address and gateway invoke URL.

    Raises:
        HTTPException 404: Deployment not found
        HTTPException 409: Stack not provisioned yet
    """
    repo = StackDeploymentRepository(db)
    deployment = await _get_deployment(repo, deployment_id)

    if deployment.status not in OUTPUT_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Outputs unavailable while deployment status is {deployment.status.value}"
        )

    return StackOutputsResponse(public_ip=deployment.public_ip, invoke_url=deployment.invoke_url)


@router.get("/stacks/{deployment_id}/health")
async def get_stack_health(
    deployment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db)
) -> StackHealthResponse:
    """
    Query the host for running compose services.

    Raises:
        HTTPException 404: Deployment not found
        HTTPException 409: Stack has not been handed off
        HTTPException 502: Host could not be queried or reached
        HTTPException 503: Provisioning settings are missing
    """
    repo = StackDeploymentRepository(db)
    deployment = await _get_deployment(repo, deployment_id)

    if deployment.status != DeploymentStatus.SUCCESS:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot check health with status {deployment.status.value}, must be success"
        )

    try:
        services = await check_stack_health(deployment)
    except SettingsError as e:
        logger.error(f"Health check for deployment {deployment_id} not configured: {str(e)}")
        raise HTTPException(status_code=503, detail=f"Provisioner not configured: {str(e)}")
    except (ProvisioningError, paramiko.SSHException, OSError) as e:
        logger.error(
            f"Health check failed for deployment {deployment_id}: {str(e)}",
            extra={"deployment_id": str(deployment_id), "error": str(e)}
        )
        raise HTTPException(status_code=502, detail=f"Health check failed: {str(e)}")

    return StackHealthResponse(
        deployment_id=deployment.id,
        running_services=services,
        healthy=bool(services)
    )


@router.post("/stacks/{deployment_id}/handoff", status_code=202)
async def handoff_stack(
    deployment_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
) -> StackActionResponse:
    """
    Re-run readiness polling and configuration handoff.

    Raises:
        HTTPException 404: Deployment not found
        HTTPException 400: No provisioned host, or a run is in progress
    """
    repo = StackDeploymentRepository(db)
    deployment = await _get_deployment(repo, deployment_id)

    if deployment.status not in HANDOFF_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot hand off deployment with status {deployment.status.value}"
        )

    if not (deployment.instance_id and deployment.public_ip and deployment.invoke_url):
        raise HTTPException(
            status_code=400,
            detail="Deployment has no provisioned host to hand off to"
        )

    if not await repo.transition_status(deployment_id, HANDOFF_STATUSES, DeploymentStatus.HANDOFF):
        raise HTTPException(
            status_code=400,
            detail="Another run started for this deployment"
        )
    background_tasks.add_task(execute_stack_handoff, deployment_id=deployment.id)

    return StackActionResponse(
        deployment_id=deployment.id,
        status=DeploymentStatus.HANDOFF.value,
        message="Handoff started in background"
    )


@router.post("/stacks/{deployment_id}/destroy", status_code=202)
async def destroy_stack(
    deployment_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
) -> StackActionResponse:
    """
    Tear the stack down.

    Raises:
        HTTPException 404: Deployment not found
        HTTPException 400: A run is in progress or the stack is already destroyed
    """
    repo = StackDeploymentRepository(db)
    deployment = await _get_deployment(repo, deployment_id)

    if deployment.status not in DESTROY_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot destroy deployment with status {deployment.status.value}"
        )

    if not await repo.transition_status(deployment_id, DESTROY_STATUSES, DeploymentStatus.DESTROYING):
        raise HTTPException(
            status_code=400,
            detail="Another run started for this deployment"
        )
    background_tasks.add_task(execute_stack_destroy, deployment_id=deployment.id)

    return StackActionResponse(
        deployment_id=deployment.id,
        status=DeploymentStatus.DESTROYING.value,
        message="Destroy started in background"
    )
