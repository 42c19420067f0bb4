"""Guest command execution and file transfer over SSH."""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Optional

try:
    import paramiko  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("paramiko is required but not installed") from exc

from imagepuppet.constants import DEFAULT_COPY_PERMISSIONS, DEFAULT_REMOTE_TIMEOUT
from imagepuppet.exceptions import (
    ChannelError,
    ConfigurationError,
    RemoteCommandFailure,
    TransientChannelError,
)
from imagepuppet.models import CommandOutput, CopyAck, Credentials, VMHandle
from imagepuppet.utils import log

CONNECT_TIMEOUT = 15.0
_OUTPUT_PREVIEW = 400

# Raised while the guest SSH daemon is still starting, or when the link drops.
_TRANSIENT = (paramiko.SSHException, EOFError, ConnectionError, socket.timeout)


def _connect(host: str, port: int, credentials: Credentials) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kwargs = {
        "hostname": host,
        "port": port,
        "username": credentials.username,
        "timeout": CONNECT_TIMEOUT,
        "banner_timeout": CONNECT_TIMEOUT,
        "auth_timeout": CONNECT_TIMEOUT,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if credentials.private_key is not None:
        kwargs["key_filename"] = str(credentials.private_key)
    if credentials.password is not None:
        kwargs["password"] = credentials.password
    try:
        client.connect(**kwargs)
    except paramiko.AuthenticationException as exc:
        client.close()
        raise ChannelError(f"SSH authentication failed for {credentials.username}@{host}:{port}") from exc
    except (paramiko.SSHException, EOFError, OSError) as exc:
        client.close()
        raise TransientChannelError(f"SSH connection to {host}:{port} failed: {exc}") from exc
    return client


def ssh_exec(
    host: str,
    port: int,
    credentials: Credentials,
    command: str,
    timeout: float = DEFAULT_REMOTE_TIMEOUT,
) -> CommandOutput:
    """Run ``command`` in a fresh SSH session and return its output."""
    client = _connect(host, port, credentials)
    try:
        log("DEBUG", f"ssh {credentials.username}@{host}:{port} $ {command}")
        stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
        stdin.close()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
    except socket.timeout as exc:
        raise RemoteCommandFailure(f"Command timed out after {timeout:g}s: {command}") from exc
    except _TRANSIENT as exc:
        raise TransientChannelError(f"SSH channel lost while running '{command}': {exc}") from exc
    finally:
        client.close()
    return CommandOutput(exit_status=status, stdout=out, stderr=err)


def ssh_copy(
    host: str,
    port: int,
    credentials: Credentials,
    source: Path,
    destination: str,
    permissions: int = DEFAULT_COPY_PERMISSIONS,
) -> CopyAck:
    """Upload a local file over SFTP and apply ``permissions``."""
    source = Path(source)
    if not source.is_file():
        raise ConfigurationError(f"Copy source does not exist: {source}")
    if destination.endswith("/"):
        destination = destination + source.name
    client = _connect(host, port, credentials)
    try:
        sftp = client.open_sftp()
        try:
            attrs = sftp.put(str(source), destination)
            sftp.chmod(destination, permissions)
        finally:
            sftp.close()
    except _TRANSIENT as exc:
        raise TransientChannelError(f"SSH channel lost while copying to {destination}: {exc}") from exc
    except OSError as exc:
        raise RemoteCommandFailure(f"Copy to {destination} failed: {exc}") from exc
    finally:
        client.close()
    size = attrs.st_size if attrs is not None and attrs.st_size is not None else source.stat().st_size
    return CopyAck(destination=destination, size=size)


class RemoteExecutor:
    """Runs Run/Copy actions against one build's VM."""

    def __init__(self, provider, credentials: Optional[Credentials]) -> None:
        self.provider = provider
        self.credentials = credentials

    def _require_credentials(self) -> Credentials:
        if self.credentials is None:
            raise ChannelError("No login credentials configured for the remote channel", component="remote")
        return self.credentials

    def exec(self, handle: VMHandle, command: str, timeout: float = DEFAULT_REMOTE_TIMEOUT) -> CommandOutput:
        credentials = self._require_credentials()
        output = self.provider.exec_remote(handle, command, credentials, timeout)
        if output.exit_status != 0:
            detail = (output.stderr or output.stdout).strip()[-_OUTPUT_PREVIEW:]
            message = f"Command '{command}' exited with status {output.exit_status}"
            if detail:
                message += f": {detail}"
            raise RemoteCommandFailure(
                message,
                exit_status=output.exit_status,
                stdout=output.stdout,
                stderr=output.stderr,
            )
        return output

    def copy(
        self,
        handle: VMHandle,
        source: Path,
        destination: str,
        permissions: int = DEFAULT_COPY_PERMISSIONS,
    ) -> CopyAck:
        credentials = self._require_credentials()
        host, port = self.provider.ssh_endpoint(handle)
        return ssh_copy(host, port, credentials, source, destination, permissions)
