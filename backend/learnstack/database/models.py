from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base
from datetime import datetime
import uuid
import enum

Base = declarative_base()

class DeploymentStatus(str, enum.Enum):
    STARTED = "started"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    HANDOFF = "handoff"
    SUCCESS = "success"
    FAILED = "failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    DESTROY_FAILED = "destroy_failed"

TERMINAL_STATUSES = (
    DeploymentStatus.SUCCESS,
    DeploymentStatus.FAILED,
    DeploymentStatus.DESTROYED,
    DeploymentStatus.DESTROY_FAILED,
)

class StackDeployment(Base):
    __tablename__ = "stack_deployments"
    
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, index=True)
    status = Column(SQLEnum(DeploymentStatus), nullable=False, default=DeploymentStatus.STARTED, index=True)
    stage = Column(String(50), nullable=True)
    
    # Resource identifiers (see StackOutputs)
    key_name = Column(String(255), nullable=True)
    key_path = Column(String(1024), nullable=True)
    key_pair_id = Column(String(64), nullable=True)
    instance_id = Column(String(64), nullable=True, index=True)
    private_ip = Column(String(45), nullable=True)
    public_ip = Column(String(45), nullable=True)
    association_id = Column(String(64), nullable=True)
    api_id = Column(String(64), nullable=True)
    api_endpoint = Column(String(500), nullable=True)
    invoke_url = Column(String(500), nullable=True)
    access_rule_id = Column(String(64), nullable=True)
    host_key_fingerprints = Column(JSONB, nullable=False, default=list)
    running_services = Column(JSONB, nullable=False, default=list)
    
    output = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
