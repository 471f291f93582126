"""
Execution gateways.

Every file and process operation performed by the certificate manager and
the nginx deployer goes through an ExecutionGateway, so the same business
logic runs against the local host or against a remote host over SSH.
"""

import os
import posixpath
import shlex
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from .logger import get_logger
from .registry import RemoteTarget


class TransportError(Exception):
    """Raised when a remote connection or remote operation fails."""
    pass


@dataclass
class CommandResult:
    """Outcome of a command run through a gateway."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExecutionGateway(ABC):
    """
    Uniform interface over a filesystem and a process table.

    Subclasses implement the five primitives; the remaining helpers are
    expressed in terms of them and may be overridden with native calls.
    """

    is_remote = False

    @property
    def description(self) -> str:
        return "local"

    @abstractmethod
    def read_file(self, path: str) -> bytes:
        """
        Read a file.

        Raises:
            FileNotFoundError: If the path does not exist
        """

    @abstractmethod
    def write_file(self, path: str, data: Union[bytes, str], mode: Optional[int] = None) -> None:
        """Write a file, replacing any previous content, then apply mode if given."""

    @abstractmethod
    def ensure_dir(self, path: str) -> None:
        """Create a directory and its parents if missing."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check whether a path exists."""

    @abstractmethod
    def run(self, command: str, timeout: int = 120) -> CommandResult:
        """Run a command and capture its exit code and output."""

    def remove(self, path: str) -> None:
        result = self.run(f"rm -f -- {shlex.quote(path)}")
        if not result.ok:
            raise OSError(f"Failed to remove {path}: {result.stderr}")

    def chmod(self, path: str, mode: int) -> None:
        result = self.run(f"chmod {mode:o} {shlex.quote(path)}")
        if not result.ok:
            raise OSError(f"Failed to chmod {path}: {result.stderr}")

    def list_dir(self, path: str) -> List[str]:
        """Names of the entries in a directory (empty if it does not exist)."""
        result = self.run(f"ls -1A -- {shlex.quote(path)}")
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line]

    def copy_file(self, source: str, destination: str) -> None:
        self.write_file(destination, self.read_file(source))

    def upload(self, local_path: str, remote_path: str, mode: Optional[int] = None) -> None:
        """Copy a file from the local machine to this gateway's filesystem."""
        self.write_file(remote_path, Path(local_path).read_bytes(), mode=mode)

    def join(self, *parts: str) -> str:
        return os.path.join(*parts)

    def dirname(self, path: str) -> str:
        return os.path.dirname(path)

    def basename(self, path: str) -> str:
        return os.path.basename(path)


class LocalGateway(ExecutionGateway):
    """Gateway over the local filesystem and local processes."""

    def read_file(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def write_file(self, path: str, data: Union[bytes, str], mode: Optional[int] = None) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        target = Path(path)
        target.write_bytes(data)
        if mode is not None:
            os.chmod(target, mode)

    def ensure_dir(self, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def run(self, command: str, timeout: int = 120) -> CommandResult:
        logger = get_logger()
        logger.debug(f"Running: {command}")
        try:
            result = subprocess.run(
                shlex.split(command),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(exit_code=127, stderr=str(e))
        except subprocess.TimeoutExpired:
            return CommandResult(exit_code=124, stderr=f"Command timed out after {timeout}s: {command}")

        return CommandResult(
            exit_code=result.returncode,
            stdout=result.stdout.strip(),
            stderr=result.stderr.strip(),
        )

    def remove(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def list_dir(self, path: str) -> List[str]:
        try:
            return sorted(os.listdir(path))
        except FileNotFoundError:
            return []


class RemoteGateway(ExecutionGateway):
    """
    Gateway over a connected SSHClient.

    exists() and ensure_dir() go through command execution (test -e,
    mkdir -p) rather than file-transfer stat/mkdir calls.
    """

    is_remote = True

    def __init__(self, client):
        self.client = client

    @property
    def description(self) -> str:
        target = self.client.target
        return f"{target.username}@{target.host}"

    def read_file(self, path: str) -> bytes:
        return self.client.read_file(path)

    def write_file(self, path: str, data: Union[bytes, str], mode: Optional[int] = None) -> None:
        self.client.write_file(path, data)
        if mode is not None:
            self.chmod(path, mode)

    def ensure_dir(self, path: str) -> None:
        result = self.client.exec(f"mkdir -p -- {shlex.quote(path)}")
        if result.exit_code != 0:
            raise TransportError(f"Failed to create remote directory {path}: {result.stderr}")

    def exists(self, path: str) -> bool:
        return self.client.exec(f"test -e {shlex.quote(path)}").exit_code == 0

    def run(self, command: str, timeout: int = 120) -> CommandResult:
        get_logger().debug(f"Running on {self.description}: {command}")
        return self.client.exec(command, timeout=timeout)

    def upload(self, local_path: str, remote_path: str, mode: Optional[int] = None) -> None:
        # scp does not carry modes over, so they are applied explicitly
        self.client.upload_file(local_path, remote_path)
        if mode is not None:
            self.chmod(remote_path, mode)

    def join(self, *parts: str) -> str:
        return posixpath.join(*parts)

    def dirname(self, path: str) -> str:
        return posixpath.dirname(path)

    def basename(self, path: str) -> str:
        return posixpath.basename(path)


@contextmanager
def open_gateway(
    remote: Optional[RemoteTarget],
    ssh_factory: Optional[Callable[[RemoteTarget], object]] = None,
) -> Iterator[ExecutionGateway]:
    """
    Select the execution gateway for one domain operation.

    A RemoteTarget yields a RemoteGateway whose SSH connection is opened on
    entry and always closed on exit, whatever happens in between. Without
    one, a LocalGateway is used.

    Args:
        remote: Remote target of the domain, or None for local mode
        ssh_factory: Callable building the SSH client (defaults to SSHClient)

    Raises:
        TransportError: If the connection cannot be established
    """
    if remote is None:
        yield LocalGateway()
        return

    logger = get_logger()
    if ssh_factory is None:
        from .ssh import SSHClient
        ssh_factory = SSHClient

    client = ssh_factory(remote)
    logger.info(f"Connecting to {remote.username}@{remote.host}:{remote.port}...")
    client.connect()
    try:
        yield RemoteGateway(client)
    finally:
        try:
            client.disconnect()
        except TransportError as e:
            logger.warning(f"Failed to close SSH connection to {remote.host}: {e}")
