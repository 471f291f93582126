"""
SSH client built on the OpenSSH command-line tools.

One multiplexed master connection (ControlMaster) is opened per operation
and every exec, read, write and upload reuses it through its ControlPath.
"""

import os
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from .gateway import CommandResult, TransportError
from .logger import get_logger
from .registry import RemoteTarget


def _is_inline_key(private_key: str) -> bool:
    return "-----BEGIN" in private_key


class SSHClient:
    """
    Remote command execution and file transfer over OpenSSH.

    Authentication order: an explicit private key (file path or inline PEM
    material), then a password through ``sshpass -e``, then whatever the
    local ssh agent and default identities offer.
    """

    def __init__(
        self,
        target: RemoteTarget,
        connect_timeout: int = 20,
        command_timeout: int = 120,
    ):
        self.target = target
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._work_dir: Optional[str] = None
        self._key_file: Optional[str] = None
        self._identity: Optional[str] = None
        self._connected = False

    @property
    def destination(self) -> str:
        return f"{self.target.username}@{self.target.host}"

    @property
    def control_path(self) -> Optional[str]:
        if self._work_dir is None:
            return None
        return os.path.join(self._work_dir, "control")

    def _identity_file(self) -> Optional[str]:
        private_key = self.target.private_key
        if not private_key:
            return None

        if _is_inline_key(private_key):
            fd, key_path = tempfile.mkstemp(prefix="key-", dir=self._work_dir)
            with os.fdopen(fd, "w") as f:
                f.write(private_key.strip() + "\n")
            os.chmod(key_path, 0o600)
            self._key_file = key_path
            return key_path

        key_path = os.path.expanduser(private_key)
        if not os.path.exists(key_path):
            get_logger().warning(
                f"Private key not found: {key_path}, falling back to ssh agent and default keys"
            )
            return None
        return key_path

    def _ssh_options(self) -> List[str]:
        options = [
            "-o", f"ControlPath={self.control_path}",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "ServerAliveInterval=15",
        ]
        if self.target.password and not self._identity:
            options += ["-o", "PreferredAuthentications=password,keyboard-interactive"]
        else:
            options += ["-o", "BatchMode=yes"]
        return options

    def _wrap_password(self, command: List[str]) -> List[str]:
        if self.target.password:
            return ["sshpass", "-e"] + command
        return command

    def _env(self) -> dict:
        env = dict(os.environ)
        if self.target.password:
            env["SSHPASS"] = self.target.password
        return env

    def _run(
        self,
        command: List[str],
        input: Optional[bytes] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                command,
                input=input,
                capture_output=True,
                timeout=timeout or self.command_timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired:
            raise TransportError(f"SSH command timed out on {self.target.host}")
        except FileNotFoundError as e:
            raise TransportError(f"SSH client binary not available: {e}")

    def connect(self) -> None:
        """
        Open the master connection.

        Raises:
            TransportError: If the host cannot be reached or authentication fails
        """
        logger = get_logger()
        if self._connected:
            return

        self._work_dir = tempfile.mkdtemp(prefix="autocert-ssh-")
        identity = self._identity = self._identity_file()

        command = ["ssh", "-M", "-N", "-f", "-p", str(self.target.port)]
        if identity:
            command += ["-i", identity, "-o", "IdentitiesOnly=yes"]
        command += ["-o", "ControlMaster=yes"] + self._ssh_options() + [self.destination]

        result = self._run(self._wrap_password(command), timeout=self.connect_timeout + 10)
        if result.returncode != 0:
            self._cleanup()
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise TransportError(
                f"SSH connection to {self.destination}:{self.target.port} failed: {stderr}"
            )

        self._connected = True
        logger.debug(f"SSH master connection open: {self.destination}:{self.target.port}")

    def disconnect(self) -> None:
        """Close the master connection and remove temporary key material."""
        if not self._connected:
            self._cleanup()
            return

        command = ["ssh", "-O", "exit", "-o", f"ControlPath={self.control_path}", self.destination]
        try:
            result = self._run(command, timeout=self.connect_timeout)
            if result.returncode != 0:
                get_logger().debug(
                    f"SSH master exit returned {result.returncode}: "
                    f"{result.stderr.decode('utf-8', errors='replace').strip()}"
                )
        finally:
            self._connected = False
            self._cleanup()

    def _cleanup(self) -> None:
        if self._work_dir:
            shutil.rmtree(self._work_dir, ignore_errors=True)
        self._work_dir = None
        self._key_file = None
        self._identity = None

    def _require_connection(self) -> None:
        if not self._connected:
            raise TransportError(f"Not connected to {self.target.host}")

    def _ssh_command(self, remote_command: str) -> List[str]:
        return ["ssh", "-p", str(self.target.port)] + self._ssh_options() + [
            self.destination,
            remote_command,
        ]

    def exec(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        """
        Run a shell command on the remote host.

        Returns:
            CommandResult with the remote exit code and decoded output
        """
        self._require_connection()
        result = self._run(self._ssh_command(command), timeout=timeout)
        if result.returncode == 255:
            # ssh itself reports connection errors with 255
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise TransportError(f"SSH exec failed on {self.target.host}: {stderr}")

        return CommandResult(
            exit_code=result.returncode,
            stdout=result.stdout.decode("utf-8", errors="replace").strip(),
            stderr=result.stderr.decode("utf-8", errors="replace").strip(),
        )

    def exists(self, path: str) -> bool:
        return self.exec(f"test -e {shlex.quote(path)}").exit_code == 0

    def read_file(self, path: str) -> bytes:
        """
        Read a remote file.

        Raises:
            FileNotFoundError: If the remote path does not exist
            TransportError: If the file exists but cannot be read
        """
        self._require_connection()
        result = self._run(self._ssh_command(f"cat -- {shlex.quote(path)}"))
        if result.returncode == 0:
            return result.stdout

        if not self.exists(path):
            raise FileNotFoundError(path)
        raise TransportError(
            f"Failed to read {path} on {self.target.host}: "
            f"{result.stderr.decode('utf-8', errors='replace').strip()}"
        )

    def write_file(self, path: str, data: Union[bytes, str]) -> None:
        """Write a remote file by streaming the content to ``cat``."""
        self._require_connection()
        if isinstance(data, str):
            data = data.encode("utf-8")
        result = self._run(self._ssh_command(f"cat > {shlex.quote(path)}"), input=data)
        if result.returncode != 0:
            raise TransportError(
                f"Failed to write {path} on {self.target.host}: "
                f"{result.stderr.decode('utf-8', errors='replace').strip()}"
            )

    def upload_file(self, local_path: str, remote_path: str) -> None:
        """Copy a local file to the remote host with scp."""
        self._require_connection()
        if not Path(local_path).exists():
            raise FileNotFoundError(local_path)

        command = ["scp", "-q", "-P", str(self.target.port)] + self._ssh_options() + [
            local_path,
            f"{self.destination}:{remote_path}",
        ]
        result = self._run(command)
        if result.returncode != 0:
            raise TransportError(
                f"Failed to upload {local_path} to {self.target.host}:{remote_path}: "
                f"{result.stderr.decode('utf-8', errors='replace').strip()}"
            )
        get_logger().debug(f"Uploaded {local_path} -> {self.target.host}:{remote_path}")
