from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from typing import Optional, List, Sequence
from datetime import datetime
import uuid

from .models import StackDeployment, DeploymentStatus, TERMINAL_STATUSES

# Columns mirrored from StackOutputs
OUTPUT_FIELDS = (
    "key_name",
    "key_path",
    "key_pair_id",
    "instance_id",
    "private_ip",
    "public_ip",
    "association_id",
    "api_id",
    "api_endpoint",
    "invoke_url",
    "access_rule_id",
    "host_key_fingerprints",
    "running_services",
)


class StackDeploymentRepository:
    """Repository for stack_deployments table operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, name: str) -> StackDeployment:
        """Create a new deployment record with status STARTED"""
        deployment = StackDeployment(
            name=name,
            status=DeploymentStatus.STARTED,
            host_key_fingerprints=[],
            running_services=[]
        )
        self.session.add(deployment)
        await self.session.commit()
        await self.session.refresh(deployment)
        return deployment

    async def get_by_id(self, deployment_id: uuid.UUID) -> Optional[StackDeployment]:
        result = await self.session.execute(
            select(StackDeployment).where(StackDeployment.id == deployment_id)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 50) -> List[StackDeployment]:
        """Get deployment history ordered by created_at DESC"""
        result = await self.session.execute(
            select(StackDeployment)
            .order_by(StackDeployment.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def update_status(
        self,
        deployment_id: uuid.UUID,
        status: DeploymentStatus,
        output: Optional[str] = None,
        error_message: Optional[str] = None,
        stage: Optional[str] = None
    ) -> None:
        """Update deployment status and optional output/error"""
        values = {
            "status": status,
            "updated_at": datetime.utcnow()
        }

        if output is not None:
            values["output"] = output
        if error_message is not None:
            values["error_message"] = error_message
        if stage is not None:
            values["stage"] = stage

        # Set completed_at for terminal states
        if status in TERMINAL_STATUSES:
            values["completed_at"] = datetime.utcnow()

        await self.session.execute(
            update(StackDeployment)
            .where(StackDeployment.id == deployment_id)
            .values(**values)
        )
        await self.session.commit()

    async def transition_status(
        self,
        deployment_id: uuid.UUID,
        allowed: Sequence[DeploymentStatus],
        status: DeploymentStatus
    ) -> bool:
        """
        Set ``status`` only if the current status is one of ``allowed``.

        The check and the update are one statement, so of two concurrent
        callers at most one succeeds.

        Returns:
            True if the row was updated
        """
        result = await self.session.execute(
            update(StackDeployment)
            .where(StackDeployment.id == deployment_id)
            .where(StackDeployment.status.in_(list(allowed)))
            .values(status=status, updated_at=datetime.utcnow(), error_message=None)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def record_outputs(self, deployment_id: uuid.UUID, outputs: dict, stage: Optional[str] = None) -> None:
        """Persist resource identifiers reported by the pipeline"""
        values = {field: outputs.get(field) for field in OUTPUT_FIELDS if field in outputs}
        values["updated_at"] = datetime.utcnow()
        if stage is not None:
            values["stage"] = stage

        await self.session.execute(
            update(StackDeployment)
            .where(StackDeployment.id == deployment_id)
            .values(**values)
        )
        await self.session.commit()


def outputs_from_record(deployment: StackDeployment) -> dict:
    """Resource identifiers of a stored deployment as a plain dict"""
    outputs = {field: getattr(deployment, field) for field in OUTPUT_FIELDS}
    outputs["host_key_fingerprints"] = list(outputs["host_key_fingerprints"] or [])
    outputs["running_services"] = list(outputs["running_services"] or [])
    return outputs
