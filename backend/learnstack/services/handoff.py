"""
Configuration Handoff

Once the host is ready, the application's ``.env`` file is pointed at the
freshly provisioned network identity and the container stack is started.

The file is rendered locally and uploaded in one transfer, so a dropped
session never leaves it half edited.
"""

import shlex
import logging
from typing import Iterable, List, Sequence, Tuple

import paramiko

from learnstack.services.errors import ProvisioningError
from learnstack.services.routes import ServiceRoute
from learnstack.utilities.text_utils import truncate

logger = logging.getLogger(__name__)

PUBLIC_IP_KEY = "PUBLIC_IP"
COMPOSE_LOG = "/tmp/learnstack-compose.log"


class HandoffError(ProvisioningError):
    """Custom exception for configuration handoff errors"""
    pass


def handoff_values(public_ip: str, invoke_url: str, routes: Iterable[ServiceRoute]) -> List[Tuple[str, str]]:
    """Ordered (key, value) pairs written into the remote env file"""
    pairs = [(PUBLIC_IP_KEY, public_ip)]
    pairs.extend((route.env_key, invoke_url) for route in routes)
    return pairs


def render_env_file(content: str, pairs: Sequence[Tuple[str, str]]) -> Tuple[str, List[str]]:
    """
    Replace every ``KEY=...`` line whose key is in ``pairs``.

    Lines that do not start with one of the keys are kept byte-identical,
    including their line endings. Keys absent from the file are not added.

    Args:
        content: Current file content
        pairs: Ordered (key, value) replacements

    Returns:
        Tuple of (new content, keys that matched no line)

    Example:
        >>> render_env_file("PUBLIC_IP=old\\nDB=x\\n", [("PUBLIC_IP", "1.2.3.4")])
        ("PUBLIC_IP=1.2.3.4\\nDB=x\\n", [])
    """
    replacements = dict(pairs)
    matched = set()
    lines = []

    # Only "\n" ends a line; other separators str.splitlines knows about stay inside the value
    for line in content.split("\n"):
        body = line[:-1] if line.endswith("\r") else line
        ending = line[len(body):]
        key = body.split("=", 1)[0] if "=" in body else None
        if key in replacements:
            lines.append(f"{key}={replacements[key]}{ending}")
            matched.add(key)
        else:
            lines.append(line)

    missing = [key for key, _ in pairs if key not in matched]
    for key in missing:
        logger.warning(f"Key {key} not present in env file, left unchanged", extra={"key": key})

    return "\n".join(lines), missing


def push_configuration(session, env_path: str, pairs: Sequence[Tuple[str, str]]) -> List[str]:
    """
    Read the remote env file, render it locally and upload the result once.

    Returns:
        Keys that matched no line

    Raises:
        HandoffError: If the file cannot be read or written
    """
    logger.info(f"Updating {env_path} on {session.host}", extra={"hostname": session.host, "path": env_path})
    try:
        current = session.read_file(env_path)
        rendered, missing = render_env_file(current, pairs)
        if rendered != current:
            session.write_file(env_path, rendered)
        else:
            logger.info(f"{env_path} already up to date")
    except (IOError, paramiko.SSHException) as e:
        error_msg = f"Failed to update {env_path}: {str(e)}"
        logger.error(error_msg)
        raise HandoffError(error_msg)
    return missing


def launch_stack(session, app_dir: str, env_file: str) -> None:
    """
    Build and start the container stack in the background.

    ``docker compose up -d`` returns once the containers are created; the
    build itself is detached with nohup so the session is not held open.
    """
    command = (
        f"cd {shlex.quote(app_dir)} && "
        f"nohup docker compose --env-file {shlex.quote(env_file)} up --build -d "
        f"> {COMPOSE_LOG} 2>&1 < /dev/null &"
    )
    logger.info(f"Launching container stack in {app_dir}", extra={"hostname": session.host})
    result = session.run(command, check=False)
    if result.exit_status != 0:
        raise HandoffError(f"Failed to launch stack: {truncate(result.stderr.strip())}")


def check_stack_health(session, app_dir: str) -> List[str]:
    """
    List the compose services currently running on the host.

    Raises:
        HandoffError: If docker compose cannot be queried
    """
    command = f"cd {shlex.quote(app_dir)} && docker compose ps --services --filter status=running"
    result = session.run(command, check=False)
    if result.exit_status != 0:
        raise HandoffError(f"Health check failed: {truncate(result.stderr.strip())}")

    services = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    logger.info(
        f"{len(services)} services running on {session.host}",
        extra={"hostname": session.host, "services": services}
    )
    return services
