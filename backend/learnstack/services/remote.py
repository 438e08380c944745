"""
Remote Session Layer

SSH access to the stack host with paramiko. Host keys are verified against
fingerprints captured from the instance console at creation time.
"""

import base64
import hashlib
import logging
import posixpath
import uuid
from typing import Iterable, NamedTuple, Optional

import paramiko

from learnstack.services.errors import ProvisioningError
from learnstack.utilities.text_utils import strip_ansi_codes

logger = logging.getLogger(__name__)


class RemoteCommandError(ProvisioningError):
    """A remote command exited non-zero or the session failed"""

    def __init__(self, message: str, exit_status: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr


class HostKeyVerificationError(paramiko.SSHException):
    """The host presented a key that is not pinned"""
    pass


class CommandResult(NamedTuple):
    exit_status: int
    stdout: str
    stderr: str


def host_key_fingerprint(key: paramiko.PKey) -> str:
    """OpenSSH-style ``SHA256:`` fingerprint of a host key"""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


class PinnedFingerprintPolicy(paramiko.MissingHostKeyPolicy):
    """Accept a host key only when its fingerprint is pinned."""

    def __init__(self, fingerprints: Iterable[str]):
        self.fingerprints = set(fingerprints)

    def missing_host_key(self, client, hostname, key):
        fingerprint = host_key_fingerprint(key)
        if fingerprint not in self.fingerprints:
            logger.error(
                f"Rejected {key.get_name()} host key for {hostname}",
                extra={"hostname": hostname, "fingerprint": fingerprint}
            )
            raise HostKeyVerificationError(
                f"Host key {fingerprint} for {hostname} does not match pinned fingerprints"
            )
        client.get_host_keys().add(hostname, key.get_name(), key)
        logger.debug(f"Accepted pinned host key {fingerprint} for {hostname}")


class RemoteSession:
    """
    One SSH connection to the stack host.

    Usage:
        with RemoteSession(host, "ubuntu", key_path, fingerprints) as session:
            session.run("test -f /home/ubuntu/.bootstrap_complete")
    """

    def __init__(
        self,
        host: str,
        username: str,
        key_path: str,
        fingerprints: Iterable[str] = (),
        allow_unpinned: bool = False,
        connect_timeout: float = 10.0,
    ):
        self.host = host
        self.username = username
        self.key_path = key_path
        self.fingerprints = list(fingerprints)
        self.allow_unpinned = allow_unpinned
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def _host_key_policy(self) -> paramiko.MissingHostKeyPolicy:
        if self.fingerprints:
            return PinnedFingerprintPolicy(self.fingerprints)
        if self.allow_unpinned:
            logger.warning(
                f"Connecting to {self.host} without host key verification",
                extra={"hostname": self.host}
            )
            return paramiko.WarningPolicy()
        raise HostKeyVerificationError(f"No pinned host key fingerprints for {self.host}")

    def connect(self) -> "RemoteSession":
        policy = self._host_key_policy()
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(policy)
        try:
            client.connect(
                hostname=self.host,
                username=self.username,
                key_filename=self.key_path,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        self._client = client
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "RemoteSession":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise RemoteCommandError(f"Session to {self.host} is not connected")
        return self._client

    def run(self, command: str, check: bool = True, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command and wait for it to exit.

        Raises:
            RemoteCommandError: If ``check`` is set and the exit status is non-zero
        """
        logger.debug(f"Running on {self.host}: {command}", extra={"hostname": self.host})
        _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        exit_status = stdout.channel.recv_exit_status()
        result = CommandResult(
            exit_status=exit_status,
            stdout=strip_ansi_codes(stdout.read().decode("utf-8", errors="replace")),
            stderr=strip_ansi_codes(stderr.read().decode("utf-8", errors="replace")),
        )
        if check and exit_status != 0:
            raise RemoteCommandError(
                f"Command failed on {self.host} with exit status {exit_status}: {result.stderr.strip()}",
                exit_status=exit_status,
                stderr=result.stderr,
            )
        return result

    def read_file(self, path: str) -> str:
        """Read ``path``; bytes that are not UTF-8 survive a later write_file unchanged"""
        with self.client.open_sftp() as sftp:
            with sftp.open(path, "rb") as f:
                return f.read().decode("utf-8", errors="surrogateescape")

    def write_file(self, path: str, content: str) -> None:
        """Replace ``path`` atomically by uploading a sibling file and renaming it"""
        tmp_path = posixpath.join(
            posixpath.dirname(path), f".{posixpath.basename(path)}.{uuid.uuid4().hex[:8]}"
        )
        with self.client.open_sftp() as sftp:
            with sftp.open(tmp_path, "wb") as f:
                f.write(content.encode("utf-8", errors="surrogateescape"))
            try:
                sftp.posix_rename(tmp_path, path)
            except IOError:
                sftp.remove(tmp_path)
                raise
        logger.info(f"Uploaded {path} to {self.host}", extra={"hostname": self.host, "path": path})
