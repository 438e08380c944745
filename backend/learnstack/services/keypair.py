"""
Key Pair Service

Generates the SSH keypair used to reach the stack host, keeps the private
half on local disk with owner-read-only permissions and registers the public
half with EC2.
"""

import os
import stat
import logging
from typing import NamedTuple, Tuple

import paramiko
from botocore.exceptions import ClientError, NoCredentialsError

from learnstack.services.errors import ProvisioningError

logger = logging.getLogger(__name__)

KEY_BITS = 4096
PRIVATE_KEY_MODE = stat.S_IRUSR  # 0o400


class KeyPairError(ProvisioningError):
    """Custom exception for key pair errors"""
    pass


class KeyMaterial(NamedTuple):
    key_name: str
    private_key_path: str
    public_key: str


def private_key_path(key_name: str, key_dir: str) -> str:
    return os.path.join(key_dir, f"{key_name}.pem")


def deployment_key_name(base_name: str, deployment_id) -> str:
    """Key pair name unique to one deployment, e.g. ``learnstack-key-1a2b3c4d``"""
    return f"{base_name}-{str(deployment_id)[:8]}"


def generate_keypair(key_name: str, key_dir: str) -> Tuple[paramiko.RSAKey, KeyMaterial]:
    """
    Generate an RSA keypair in memory for ``<key_dir>/<key_name>.pem``.

    Nothing is written here; an existing key file is never replaced because
    it may belong to a running stack.

    Returns:
        Tuple of (private key, KeyMaterial with path and OpenSSH public key line)

    Raises:
        KeyPairError: If the key file already exists
    """
    path = private_key_path(key_name, key_dir)
    if os.path.exists(path):
        raise KeyPairError(f"Private key {path} already exists; refusing to overwrite it")

    logger.info(f"Generating {KEY_BITS}-bit RSA key {key_name}", extra={"key_path": path})
    key = paramiko.RSAKey.generate(KEY_BITS)
    public_key = f"{key.get_name()} {key.get_base64()}"
    return key, KeyMaterial(key_name=key_name, private_key_path=path, public_key=public_key)


def write_private_key(key: paramiko.PKey, path: str) -> None:
    """Create ``path`` with mode 0400 and write the key; fails if the file exists"""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, PRIVATE_KEY_MODE)
        with os.fdopen(fd, "w") as f:
            key.write_private_key(f)
    except (OSError, paramiko.SSHException) as e:
        error_msg = f"Failed to write private key {path}: {str(e)}"
        logger.error(error_msg)
        raise KeyPairError(error_msg)


def create_keypair(ec2, key_name: str, key_dir: str) -> Tuple[KeyMaterial, str]:
    """
    Generate a keypair, import it into EC2, then save the private key.

    The key file is only written once EC2 accepted the public key, so a
    rejected import (e.g. a duplicate name) leaves local files untouched.

    Returns:
        Tuple of (KeyMaterial, EC2 key pair id)

    Raises:
        KeyPairError: If the key file exists, the import is rejected or the
            key cannot be written
    """
    key, material = generate_keypair(key_name, key_dir)
    key_pair_id = register_keypair(ec2, material)
    try:
        write_private_key(key, material.private_key_path)
    except KeyPairError:
        # Without the private half the imported key pair is useless
        delete_keypair(ec2, key_name)
        raise
    return material, key_pair_id


def register_keypair(ec2, material: KeyMaterial) -> str:
    """
    Import the public key into EC2.

    Returns:
        The EC2 key pair id
    """
    logger.info(f"Registering key pair {material.key_name}", extra={"key_name": material.key_name})
    try:
        response = ec2.import_key_pair(
            KeyName=material.key_name,
            PublicKeyMaterial=material.public_key.encode("utf-8"),
        )
    except (ClientError, NoCredentialsError) as e:
        error_msg = f"Failed to register key pair {material.key_name}: {str(e)}"
        logger.error(error_msg)
        raise KeyPairError(error_msg)

    return response["KeyPairId"]


def delete_keypair(ec2, key_name: str, key_path: str = None) -> None:
    """Delete the EC2 key pair and, when given, the local private key file"""
    logger.info(f"Deleting key pair {key_name}", extra={"key_name": key_name})
    try:
        ec2.delete_key_pair(KeyName=key_name)
    except (ClientError, NoCredentialsError) as e:
        error_msg = f"Failed to delete key pair {key_name}: {str(e)}"
        logger.error(error_msg)
        raise KeyPairError(error_msg)

    if key_path and os.path.exists(key_path):
        os.chmod(key_path, stat.S_IRUSR | stat.S_IWUSR)
        os.remove(key_path)
        logger.info(f"Removed private key {key_path}")
