"""
Stack Configuration

Settings for provisioning the learnstack host, read from ``LEARNSTACK_*``
environment variables. ``.env.local`` is loaded first when present.
"""

import os
import logging
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from learnstack.services.routes import ServiceRoute, DEFAULT_SERVICE_ROUTES

logger = logging.getLogger(__name__)

ENV_PREFIX = "LEARNSTACK_"

REQUIRED_SETTINGS = {
    "subnet_id": "LEARNSTACK_SUBNET_ID",
    "security_group_id": "LEARNSTACK_SECURITY_GROUP_ID",
    "eip_allocation_id": "LEARNSTACK_EIP_ALLOCATION_ID",
    "database_security_group_id": "LEARNSTACK_DATABASE_SECURITY_GROUP_ID",
}


class SettingsError(Exception):
    """Raised when required settings are missing or malformed"""
    pass


class ReadinessSettings(BaseModel):
    initial_grace: float = 30.0
    max_attempts: int = 20
    base_delay: float = 5.0
    max_delay: float = 60.0
    deadline: float = 1800.0
    connect_timeout: float = 10.0


class StackSettings(BaseModel):
    region: str = "us-east-1"
    role_arn: Optional[str] = None
    external_id: Optional[str] = None

    # Compute
    image_id: str = "ami-0c7217cdde317cfec"
    instance_type: str = "t2.medium"
    subnet_id: str
    security_group_id: str
    instance_name: str = "learnstack-host"

    # Key pair
    key_name: str = "learnstack-key"
    key_dir: str = "."

    # Networking
    eip_allocation_id: str
    database_security_group_id: str
    database_port: int = 5432

    # Host bootstrap
    repository_url: str = "https://github.com/learnstack/learnstack-platform.git"
    remote_user: str = "ubuntu"
    marker_path: str = "/home/ubuntu/.bootstrap_complete"
    app_dir: str = "/home/ubuntu/learnstack"
    env_file: Optional[str] = None
    ssh_allow_unpinned: bool = False
    host_key_attempts: int = 90
    host_key_delay: float = 20.0

    # Gateway
    gateway_name: str = "learnstack-gateway"
    stage_name: str = "$default"
    routes: List[ServiceRoute] = Field(default_factory=lambda: list(DEFAULT_SERVICE_ROUTES))

    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)

    @property
    def remote_env_file(self) -> str:
        return self.env_file or f"{self.app_dir.rstrip('/')}/.env"


def _env(name: str) -> Optional[str]:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _as_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


def load_settings(env_file: str = ".env.local") -> StackSettings:
    """
    Build StackSettings from the environment.

    Args:
        env_file: dotenv file loaded before reading variables (ignored if absent)

    Returns:
        StackSettings populated from LEARNSTACK_* variables and defaults

    Raises:
        SettingsError: If required AWS identifiers are missing or a value
            cannot be parsed
    """
    load_dotenv(env_file)

    missing = [var for var in REQUIRED_SETTINGS.values() if _env(var[len(ENV_PREFIX):]) is None]
    if missing:
        raise SettingsError(f"Missing required settings: {', '.join(missing)}")

    values = {}
    for field in (
        "region", "role_arn", "external_id", "image_id", "instance_type",
        "subnet_id", "security_group_id", "instance_name", "key_name", "key_dir",
        "eip_allocation_id", "database_security_group_id", "repository_url",
        "remote_user", "marker_path", "app_dir", "env_file", "gateway_name",
        "stage_name",
    ):
        value = _env(field.upper())
        if value is not None:
            values[field] = value

    # AWS_REGION is honoured the same way the S3 clients always did
    if "region" not in values and os.environ.get("AWS_REGION"):
        values["region"] = os.environ["AWS_REGION"]

    try:
        if _env("DATABASE_PORT"):
            values["database_port"] = int(_env("DATABASE_PORT"))
        if _env("HOST_KEY_ATTEMPTS"):
            values["host_key_attempts"] = int(_env("HOST_KEY_ATTEMPTS"))
        if _env("HOST_KEY_DELAY"):
            values["host_key_delay"] = float(_env("HOST_KEY_DELAY"))
        if _env("SSH_ALLOW_UNPINNED"):
            values["ssh_allow_unpinned"] = _as_bool(_env("SSH_ALLOW_UNPINNED"))

        readiness = {}
        for field, cast in (
            ("initial_grace", float),
            ("max_attempts", int),
            ("base_delay", float),
            ("max_delay", float),
            ("deadline", float),
            ("connect_timeout", float),
        ):
            raw = _env(f"READINESS_{field.upper()}")
            if raw is not None:
                readiness[field] = cast(raw)
        values["readiness"] = ReadinessSettings(**readiness)
    except ValueError as e:
        raise SettingsError(f"Invalid numeric setting: {str(e)}")

    settings = StackSettings(**values)
    logger.debug(
        f"Loaded settings for region {settings.region}",
        extra={"region": settings.region, "instance_type": settings.instance_type}
    )
    return settings
