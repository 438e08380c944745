from typing import List, Optional
import uuid
from pydantic import BaseModel

# ============================================
# MODELS
# ============================================

class StackCreateRequest(BaseModel):
    name: str = "learnstack"

class StackActionResponse(BaseModel):
    deployment_id: uuid.UUID
    status: str
    message: str

class StackOutputsResponse(BaseModel):
    public_ip: Optional[str] = None
    invoke_url: Optional[str] = None

class StackHealthResponse(BaseModel):
    deployment_id: uuid.UUID
    running_services: List[str]
    healthy: bool

class StackDeploymentResponse(BaseModel):
    id: uuid.UUID
    name: str
    status: str
    stage: Optional[str] = None
    instance_id: Optional[str] = None
    private_ip: Optional[str] = None
    public_ip: Optional[str] = None
    api_id: Optional[str] = None
    invoke_url: Optional[str] = None
    access_rule_id: Optional[str] = None
    running_services: List[str] = []
    output: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None
