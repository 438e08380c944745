from .models import Base, StackDeployment, DeploymentStatus, TERMINAL_STATUSES
from .connection import engine, AsyncSessionLocal, get_db, init_models
from .repositories import StackDeploymentRepository

__all__ = [
    "Base",
    "StackDeployment",
    "DeploymentStatus",
    "TERMINAL_STATUSES",
    "engine",
    "AsyncSessionLocal",
    "get_db",
    "init_models",
    "StackDeploymentRepository",
]
