"""Remote command execution module.

This module handles executing commands on remote FreeBSD hosts via SSH.
Every other component talks to a host exclusively through RemoteExecutor.

Security:
- Values from configuration are quoted by callers with bsdeploy.shell.quote()
- No shell=True locally; ssh receives the remote command as one argument
- Timeout enforcement on every call
- File contents are streamed over stdin and never logged
"""

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from bsdeploy.constants import DEFAULT_TIMEOUT, INSPECT_TIMEOUT, SYNC_TIMEOUT
from bsdeploy.exceptions import RemoteExecError, RemoteTimeoutError
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)

# Paths never shipped to a jail by sync_tree
DEFAULT_SYNC_EXCLUDES = (".git", "node_modules", "tmp", "log")


@dataclass
class RemoteResult:
    """Result from remote command execution."""

    host: str
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    duration: float = 0.0

    def get_output(self) -> str:
        """Get combined output."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class RemoteExecutor:
    """Execute commands and write files on one remote host over SSH.

    This class provides:
    - Command execution with captured output and a hard timeout
    - Exit-status probes for inspection commands
    - Streaming file writes
    - rsync-based directory sync

    Privileged calls are prefixed with ``doas`` when the service
    description enables it; otherwise the SSH user is expected to have
    the required rights already.
    """

    def __init__(
        self,
        host: str,
        use_doas: bool = False,
        timeout: int = DEFAULT_TIMEOUT,
        connect_timeout: int = 10,
    ):
        """Initialize executor.

        Args:
            host: SSH destination (hostname, alias or user@host)
            use_doas: Prefix privileged commands with doas
            timeout: Default timeout in seconds for remote commands
            connect_timeout: SSH connection timeout in seconds
        """
        self.host = host
        self.use_doas = use_doas
        self.timeout = timeout
        self.connect_timeout = connect_timeout

    def elevate(self, command: str) -> str:
        """Return command with the privilege prefix applied."""
        return f"doas {command}" if self.use_doas else command

    def _ssh_args(self) -> list[str]:
        return [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-o",
            "LogLevel=ERROR",
        ]

    def _execute(self, command: str, timeout: int, input_text: str | None = None) -> RemoteResult:
        ssh_cmd = [*self._ssh_args(), self.host, command]
        start_time = time.time()

        try:
            result = subprocess.run(
                ssh_cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input_text,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteTimeoutError(
                f"Command timed out after {timeout}s on {self.host}: {command}",
                host=self.host,
                command=command,
            ) from e
        except OSError as e:
            raise RemoteExecError(
                f"Failed to execute ssh for {self.host}: {e}", host=self.host, command=command
            ) from e

        return RemoteResult(
            host=self.host,
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            duration=time.time() - start_time,
        )

    def run(
        self,
        command: str,
        privileged: bool = False,
        timeout: int | None = None,
        input_text: str | None = None,
    ) -> RemoteResult:
        """Run a command and fail on non-zero exit.

        Args:
            command: Remote shell command
            privileged: Apply the doas prefix
            timeout: Timeout in seconds (default: executor timeout)
            input_text: Optional data fed to the command's stdin

        Returns:
            RemoteResult for the successful command

        Raises:
            RemoteExecError: If the command exits non-zero
            RemoteTimeoutError: If the command exceeds its timeout
        """
        full_command = self.elevate(command) if privileged else command
        logger.debug(f"SSH [{self.host}] Executing: {full_command}")

        result = self._execute(full_command, timeout or self.timeout, input_text)

        if not result.success:
            logger.debug(f"Stdout: {result.stdout}")
            logger.debug(f"Stderr: {result.stderr}")
            raise RemoteExecError(
                f"Command failed on {self.host}: {full_command}. Error: {result.stderr.strip()}",
                host=self.host,
                command=full_command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def run_capture(
        self, command: str, privileged: bool = False, timeout: int | None = None
    ) -> str:
        """Run a command and return its stdout.

        Raises:
            RemoteExecError: If the command exits non-zero
        """
        return self.run(command, privileged=privileged, timeout=timeout or INSPECT_TIMEOUT).stdout

    def succeeds(self, command: str, privileged: bool = False, timeout: int | None = None) -> bool:
        """Probe a command's exit status.

        Non-zero exit is an answer, not an error. Timeouts still raise.
        """
        try:
            self.run(command, privileged=privileged, timeout=timeout or INSPECT_TIMEOUT)
        except RemoteTimeoutError:
            raise
        except RemoteExecError:
            return False
        return True

    def write_file(
        self, content: str, path: str, privileged: bool = False, timeout: int | None = None
    ) -> None:
        """Stream content into a remote file, replacing it.

        Raises:
            RemoteExecError: If the write fails
        """
        logger.debug(f"SSH [{self.host}] Writing file: {path}")
        if privileged and self.use_doas:
            command = f"doas tee {quote(path)} > /dev/null"
        else:
            command = f"cat > {quote(path)}"

        result = self._execute(command, timeout or INSPECT_TIMEOUT, input_text=content)
        if not result.success:
            raise RemoteExecError(
                f"Failed to write file {path} on {self.host}: {result.stderr.strip()}",
                host=self.host,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

    def build_sync_command(
        self,
        local_dir: str | Path,
        remote_dir: str,
        excludes: list[str] | None = None,
        privileged: bool = False,
    ) -> list[str]:
        """Build the local rsync argument list for sync_tree."""
        cmd = [
            "rsync",
            "-az",
            "--delete",
            "--filter=:- .gitignore",
        ]
        cmd.extend(f"--exclude={pattern}" for pattern in DEFAULT_SYNC_EXCLUDES)
        cmd.extend(f"--exclude={pattern}" for pattern in excludes or [])

        if privileged and self.use_doas:
            cmd.append("--rsync-path=doas rsync")

        cmd.extend(["-e", " ".join(self._ssh_args())])

        # Trailing slash copies the directory contents, not the directory
        cmd.append(f"{str(local_dir).rstrip('/')}/")
        cmd.append(f"{self.host}:{remote_dir.rstrip('/')}/")
        return cmd

    def sync_tree(
        self,
        local_dir: str | Path,
        remote_dir: str,
        excludes: list[str] | None = None,
        privileged: bool = False,
        timeout: int | None = None,
    ) -> None:
        """Mirror a local directory into a remote directory with rsync.

        Args:
            local_dir: Local source directory
            remote_dir: Remote destination directory (must exist)
            excludes: Extra rsync exclude patterns, anchored with a leading slash
            privileged: Run the remote rsync through doas
            timeout: Timeout in seconds

        Raises:
            RemoteExecError: If rsync fails or times out
        """
        cmd = self.build_sync_command(local_dir, remote_dir, excludes, privileged)
        timeout = timeout or SYNC_TIMEOUT
        logger.debug(f"Syncing {local_dir} to {self.host}:{remote_dir}")

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=timeout, check=False
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteTimeoutError(
                f"Sync to {self.host} timed out after {timeout}s", host=self.host
            ) from e
        except OSError as e:
            raise RemoteExecError(f"Failed to execute rsync: {e}", host=self.host) from e

        if result.returncode != 0:
            raise RemoteExecError(
                f"Failed to sync files to {self.host}: {result.stderr.strip()}",
                host=self.host,
                exit_code=result.returncode,
                stderr=result.stderr,
            )


__all__ = [
    "DEFAULT_SYNC_EXCLUDES",
    "RemoteExecutor",
    "RemoteResult",
]
