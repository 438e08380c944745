"""
Tests for the SSH session layer: fingerprint pinning and command execution.
"""

import os
import sys
import base64
import hashlib
import pytest
from unittest.mock import MagicMock, patch

import paramiko

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from learnstack.services.remote import (
    HostKeyVerificationError,
    PinnedFingerprintPolicy,
    RemoteCommandError,
    RemoteSession,
    host_key_fingerprint,
)


@pytest.fixture(scope="module")
def host_key():
    return paramiko.RSAKey.generate(1024)


def test_fingerprint_matches_openssh_format(host_key):
    expected = base64.b64encode(hashlib.sha256(host_key.asbytes()).digest()).decode().rstrip("=")

    fingerprint = host_key_fingerprint(host_key)

    assert fingerprint == f"SHA256:{expected}"
    assert not fingerprint.endswith("=")


def test_pinned_policy_accepts_known_key(host_key):
    policy = PinnedFingerprintPolicy([host_key_fingerprint(host_key)])
    client = MagicMock()

    policy.missing_host_key(client, "1.2.3.4", host_key)

    client.get_host_keys.return_value.add.assert_called_once_with("1.2.3.4", "ssh-rsa", host_key)


def test_pinned_policy_rejects_unknown_key(host_key):
    policy = PinnedFingerprintPolicy(["SHA256:somethingelse"])
    client = MagicMock()

    with pytest.raises(HostKeyVerificationError):
        policy.missing_host_key(client, "1.2.3.4", host_key)

    client.get_host_keys.return_value.add.assert_not_called()


def test_session_without_fingerprints_refuses_to_connect():
    session = RemoteSession("1.2.3.4", "ubuntu", "/tmp/key.pem")

    with patch('learnstack.services.remote.paramiko.SSHClient') as mock_client_class:
        with pytest.raises(HostKeyVerificationError):
            session.connect()

    mock_client_class.assert_not_called()


def test_session_unpinned_opt_in_uses_warning_policy():
    session = RemoteSession("1.2.3.4", "ubuntu", "/tmp/key.pem", allow_unpinned=True)

    with patch('learnstack.services.remote.paramiko.SSHClient') as mock_client_class:
        session.connect()

    client = mock_client_class.return_value
    policy = client.set_missing_host_key_policy.call_args[0][0]
    assert isinstance(policy, paramiko.WarningPolicy)
    client.connect.assert_called_once()
    kwargs = client.connect.call_args.kwargs
    assert kwargs["key_filename"] == "/tmp/key.pem"
    assert kwargs["look_for_keys"] is False


def test_failed_connect_closes_client():
    session = RemoteSession("1.2.3.4", "ubuntu", "/tmp/key.pem", fingerprints=["SHA256:abc"])

    with patch('learnstack.services.remote.paramiko.SSHClient') as mock_client_class:
        mock_client_class.return_value.connect.side_effect = OSError("unreachable")
        with pytest.raises(OSError):
            session.connect()

    mock_client_class.return_value.close.assert_called_once()


def _connected_session(exit_status, stdout=b"", stderr=b""):
    session = RemoteSession("1.2.3.4", "ubuntu", "/tmp/key.pem", fingerprints=["SHA256:abc"])
    client = MagicMock()
    out, err = MagicMock(), MagicMock()
    out.channel.recv_exit_status.return_value = exit_status
    out.read.return_value = stdout
    err.read.return_value = stderr
    client.exec_command.return_value = (MagicMock(), out, err)
    session._client = client
    return session


def test_run_returns_output():
    session = _connected_session(0, stdout=b"\x1b[32madmin\x1b[0m\n")

    result = session.run("docker compose ps")

    assert result.exit_status == 0
    assert result.stdout == "admin\n"


def test_run_raises_on_failure_when_checked():
    session = _connected_session(2, stderr=b"no such file")

    with pytest.raises(RemoteCommandError) as exc_info:
        session.run("cat /missing")

    assert exc_info.value.exit_status == 2
    assert "no such file" in exc_info.value.stderr


def test_run_unchecked_returns_status():
    session = _connected_session(1)

    assert session.run("test -f /tmp/marker", check=False).exit_status == 1


def test_run_requires_connection():
    session = RemoteSession("1.2.3.4", "ubuntu", "/tmp/key.pem", fingerprints=["SHA256:abc"])

    with pytest.raises(RemoteCommandError):
        session.run("true")


def _sftp_session():
    session = RemoteSession("1.2.3.4", "ubuntu", "/tmp/key.pem", fingerprints=["SHA256:abc"])
    client, sftp, remote_file = MagicMock(), MagicMock(), MagicMock()
    client.open_sftp.return_value.__enter__.return_value = sftp
    sftp.open.return_value.__enter__.return_value = remote_file
    session._client = client
    return session, sftp, remote_file


def test_read_file_keeps_bytes_that_are_not_utf8():
    session, sftp, remote_file = _sftp_session()
    remote_file.read.return_value = b"PUBLIC_IP=old\nNAME=caf\xe9\n"

    content = session.read_file("/app/.env")

    sftp.open.assert_called_once_with("/app/.env", "rb")
    assert content.startswith("PUBLIC_IP=old\n")

    session.write_file("/app/.env", content)

    assert remote_file.write.call_args.args[0] == b"PUBLIC_IP=old\nNAME=caf\xe9\n"


@patch('learnstack.services.remote.uuid.uuid4')
def test_write_file_uploads_sibling_then_renames(mock_uuid4):
    mock_uuid4.return_value.hex = "0123456789abcdef"
    session, sftp, remote_file = _sftp_session()

    session.write_file("/app/.env", "PUBLIC_IP=1.2.3.4\n")

    sftp.open.assert_called_once_with("/app/..env.01234567", "wb")
    remote_file.write.assert_called_once_with(b"PUBLIC_IP=1.2.3.4\n")
    sftp.posix_rename.assert_called_once_with("/app/..env.01234567", "/app/.env")
    sftp.remove.assert_not_called()


def test_write_file_removes_upload_when_rename_fails():
    session, sftp, _ = _sftp_session()
    sftp.posix_rename.side_effect = IOError("Permission denied")

    with pytest.raises(IOError):
        session.write_file("/app/.env", "PUBLIC_IP=1.2.3.4\n")

    tmp_path = sftp.open.call_args.args[0]
    assert tmp_path.startswith("/app/..env.")
    assert tmp_path != "/app/.env"
    sftp.posix_rename.assert_called_once_with(tmp_path, "/app/.env")
    sftp.remove.assert_called_once_with(tmp_path)
