"""
Stack Service Layer

Background-task entry points for applying, handing off and destroying a
stack. The blocking pipeline runs in a worker thread; every step it reports
is written to the deployment record, so partial state survives a failure and
can be torn down later.
"""

import asyncio
import functools
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from learnstack.config import load_settings
from learnstack.database.connection import AsyncSessionLocal
from learnstack.database.models import DeploymentStatus
from learnstack.database.repositories import StackDeploymentRepository, outputs_from_record
from learnstack.services.aws_conn import get_clients
from learnstack.services.keypair import deployment_key_name
from learnstack.services.stack_pipeline import StackOutputs, StackPipeline
from learnstack.utilities.text_utils import strip_ansi_codes, truncate

# Configure logging
logger = logging.getLogger(__name__)


def _progress_recorder(repo: StackDeploymentRepository, deployment_id: uuid.UUID, loop):
    """
    Build a progress callback usable from the pipeline's worker thread.

    Each call blocks the worker until the outputs are committed.
    """
    def progress(stage: str, outputs: StackOutputs) -> None:
        logger.info(
            f"Deployment {deployment_id} reached {stage}",
            extra={"deployment_id": str(deployment_id), "stage": stage}
        )
        future = asyncio.run_coroutine_threadsafe(
            repo.record_outputs(deployment_id, outputs.model_dump(), stage=stage),
            loop
        )
        future.result()

    return progress


def _summary(outputs: StackOutputs) -> str:
    return "\n".join([
        f"public_ip={outputs.public_ip}",
        f"invoke_url={outputs.invoke_url}",
        f"instance_id={outputs.instance_id}",
        f"running_services={','.join(outputs.running_services)}",
    ])


async def _pipeline(settings, clients) -> StackPipeline:
    settings = settings or load_settings()
    if clients is None:
        clients = await asyncio.to_thread(get_clients, settings)
    return StackPipeline(settings, clients)


def _with_session(func):
    """Open a dedicated session when the caller does not pass one"""
    @functools.wraps(func)
    async def wrapper(deployment_id: uuid.UUID, db: AsyncSession = None, settings=None, clients=None):
        if db is not None:
            return await func(deployment_id, db, settings, clients)
        async with AsyncSessionLocal() as session:
            return await func(deployment_id, session, settings, clients)

    return wrapper


async def _fail(repo, deployment_id, status, action: str, e: Exception) -> None:
    error = truncate(strip_ansi_codes(str(e)))
    logger.error(
        f"{action} failed for deployment {deployment_id}: {error}",
        extra={"deployment_id": str(deployment_id), "error": error},
        exc_info=True
    )
    await repo.update_status(deployment_id, status, error_message=f"{action} failed: {error}")


@_with_session
async def execute_stack_apply(
    deployment_id: uuid.UUID,
    db: AsyncSession,
    settings=None,
    clients=None
):
    """
    Provision the stack and hand off configuration in a background task.

    Flow:
    1. Update status to PROVISIONING
    2. Create keypair, instance, address binding, gateway and access rule
    3. Update status to PROVISIONED, then HANDOFF
    4. Wait for the boot marker, push configuration, launch the stack
    5. Update status to SUCCESS or FAILED

    Args:
        deployment_id: UUID of the deployment record
        db: Database session
        settings: StackSettings, loaded from the environment when omitted
        clients: AwsClients, built from the settings when omitted
    """
    repo = StackDeploymentRepository(db)
    loop = asyncio.get_running_loop()
    progress = _progress_recorder(repo, deployment_id, loop)

    try:
        logger.info(
            f"Starting stack deployment {deployment_id}",
            extra={"deployment_id": str(deployment_id)}
        )
        await repo.update_status(deployment_id, DeploymentStatus.PROVISIONING)
        pipeline = await _pipeline(settings, clients)

        # One key pair per deployment so a new stack never touches another one's key
        outputs = StackOutputs(key_name=deployment_key_name(pipeline.settings.key_name, deployment_id))
        await asyncio.to_thread(pipeline.provision, progress, outputs)
        await repo.update_status(deployment_id, DeploymentStatus.PROVISIONED)

        await repo.update_status(deployment_id, DeploymentStatus.HANDOFF)
        await asyncio.to_thread(pipeline.handoff, outputs, progress)

        logger.info(
            f"Stack deployment {deployment_id} succeeded",
            extra={"deployment_id": str(deployment_id), "public_ip": outputs.public_ip}
        )
        await repo.update_status(deployment_id, DeploymentStatus.SUCCESS, output=_summary(outputs))

    except Exception as e:
        await _fail(repo, deployment_id, DeploymentStatus.FAILED, "Apply", e)


@_with_session
async def execute_stack_handoff(
    deployment_id: uuid.UUID,
    db: AsyncSession,
    settings=None,
    clients=None
):
    """Re-run readiness polling and configuration handoff for a provisioned stack"""
    repo = StackDeploymentRepository(db)
    loop = asyncio.get_running_loop()
    progress = _progress_recorder(repo, deployment_id, loop)

    try:
        deployment = await repo.get_by_id(deployment_id)
        if not deployment:
            raise Exception("Deployment not found")

        logger.info(
            f"Starting handoff for deployment {deployment_id}",
            extra={"deployment_id": str(deployment_id), "public_ip": deployment.public_ip}
        )
        await repo.update_status(deployment_id, DeploymentStatus.HANDOFF)
        pipeline = await _pipeline(settings, clients)

        outputs = StackOutputs(**outputs_from_record(deployment))
        await asyncio.to_thread(pipeline.handoff, outputs, progress)
        await repo.update_status(deployment_id, DeploymentStatus.SUCCESS, output=_summary(outputs))

    except Exception as e:
        await _fail(repo, deployment_id, DeploymentStatus.FAILED, "Handoff", e)


@_with_session
async def execute_stack_destroy(
    deployment_id: uuid.UUID,
    db: AsyncSession,
    settings=None,
    clients=None
):
    """
    Tear the stack down in a background task.

    Flow:
    1. Update status to DESTROYING
    2. Delete gateway, revoke access rule, release address,
       terminate instance, delete keypair
    3. Update status to DESTROYED or DESTROY_FAILED
    """
    repo = StackDeploymentRepository(db)
    loop = asyncio.get_running_loop()
    progress = _progress_recorder(repo, deployment_id, loop)

    try:
        deployment = await repo.get_by_id(deployment_id)
        if not deployment:
            raise Exception("Deployment not found")

        logger.info(
            f"Starting destroy for deployment {deployment_id}",
            extra={"deployment_id": str(deployment_id)}
        )
        await repo.update_status(deployment_id, DeploymentStatus.DESTROYING)
        pipeline = await _pipeline(settings, clients)

        outputs = StackOutputs(**outputs_from_record(deployment))
        await asyncio.to_thread(pipeline.teardown, outputs, progress)
        await repo.update_status(deployment_id, DeploymentStatus.DESTROYED, output="Stack destroyed")

    except Exception as e:
        await _fail(repo, deployment_id, DeploymentStatus.DESTROY_FAILED, "Destroy", e)


async def check_stack_health(deployment, settings=None, clients=None) -> list:
    """List the running compose services of a deployed stack"""
    # Health checks only use SSH, so no AWS clients are needed
    pipeline = StackPipeline(settings or load_settings(), clients)
    outputs = StackOutputs(**outputs_from_record(deployment))
    return await asyncio.to_thread(pipeline.health, outputs)
