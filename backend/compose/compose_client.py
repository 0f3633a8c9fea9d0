"""
Compose CLI client.

Shells out to a compose-compatible CLI ("docker compose" by default) for
config checks, deployments, teardown, image pulls, logs and status.

Every invocation:
    - is scoped with "-p <project>" (the container name) and, where a file is
      involved, "-f <path>" pointing at the on-disk artifact
    - runs in a worker thread via asyncio.to_thread so the event loop is
      never blocked
    - has a mandatory timeout
    - returns a structured result; non-zero exits, timeouts and spawn
      failures never raise

No operation retries automatically.
"""

import asyncio
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_COMMAND = ('docker', 'compose')

# Timeouts in seconds
CONFIG_TIMEOUT = 10
UP_TIMEOUT = 120  # Accommodates image pulls on first deploy
DOWN_TIMEOUT = 60
PULL_TIMEOUT = 300
LOGS_TIMEOUT = 30
STATUS_TIMEOUT = 10

# stderr fragments the CLI prints when a project has nothing to show
NOT_DEPLOYED_MARKERS = (
    'no configuration file',
    'no such project',
    'no containers',
)


@dataclass
class CommandResult:
    """Raw outcome of one CLI invocation."""
    returncode: Optional[int]
    stdout: str = ''
    stderr: str = ''
    error: Optional[str] = None  # Set on timeout or spawn failure

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


@dataclass
class ComposeResult:
    """Result of a compose operation (up, down, pull, logs, config)."""
    success: bool
    output: str = ''
    error: Optional[str] = None


@dataclass
class ComposeStatus:
    """Live status of a compose project."""
    running: bool
    status: str
    error: Optional[str] = None


def _to_text(value: Any) -> str:
    """Normalize captured output (TimeoutExpired carries raw bytes)."""
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


class ComposeClient:
    """
    Client for the compose CLI.

    All methods are async to avoid blocking the event loop while the
    external tool runs.
    """

    def __init__(self, command: Optional[Sequence[str]] = None):
        """
        Initialize compose client.

        Args:
            command: CLI prefix, e.g. ["docker", "compose"] or ["docker-compose"]
        """
        self.command = list(command) if command else list(DEFAULT_COMPOSE_COMMAND)

    async def _run(
        self,
        args: List[str],
        timeout: int,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a compose command asynchronously.

        Args:
            args: Arguments after the compose CLI prefix
            timeout: Command timeout in seconds
            cwd: Working directory (None for the current directory)

        Returns:
            CommandResult with stdout, stderr and returncode
        """
        cmd = self.command + args
        logger.debug(f"Running: {' '.join(cmd)} (cwd={cwd}, timeout={timeout}s)")

        try:
            completed = await asyncio.to_thread(
                subprocess.run,
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Compose command timed out after {timeout}s: {' '.join(cmd)}")
            return CommandResult(
                returncode=None,
                stdout=_to_text(e.stdout),
                stderr=_to_text(e.stderr),
                error=f"Command timed out after {timeout} seconds"
            )
        except OSError as e:
            logger.error(f"Failed to start compose command {cmd[0]}: {e}")
            return CommandResult(
                returncode=None,
                error=f"Failed to run {' '.join(self.command)}: {e}"
            )

        return CommandResult(
            returncode=completed.returncode,
            stdout=completed.stdout or '',
            stderr=completed.stderr or ''
        )

    def _to_compose_result(self, result: CommandResult, action: str) -> ComposeResult:
        """
        Map a raw command result to the success/output/error shape.

        On success, output is stdout followed by stderr (the CLI writes
        progress to stderr; the exit code is authoritative). On failure,
        output is whatever stdout was captured and error is the tool's
        stderr or a generic message.
        """
        stdout = result.stdout.strip()
        stderr = result.stderr.strip()

        if result.ok:
            output = stdout + (f"\n{stderr}" if stderr else '')
            return ComposeResult(success=True, output=output.strip(), error=None)

        if result.error:
            error = f"{result.error}\n{stderr}" if stderr else result.error
        else:
            error = stderr or f"Unknown {action} error (exit code {result.returncode})"

        logger.error(f"Compose {action} failed: {error}")
        return ComposeResult(success=False, output=stdout, error=error)

    async def config(self, file_path: str, cwd: Optional[str] = None) -> ComposeResult:
        """Dry-run validate a compose file ("config")."""
        result = await self._run(['-f', file_path, 'config', '--quiet'], timeout=CONFIG_TIMEOUT, cwd=cwd)
        return self._to_compose_result(result, 'config')

    async def up(self, work_dir: str, file_path: str, project_name: str) -> ComposeResult:
        """
        Deploy a project ("up -d").

        Args:
            work_dir: Artifact directory (relative paths in the file resolve here)
            file_path: Path to the compose file
            project_name: Compose project name (the container name)
        """
        logger.info(f"Deploying compose project '{project_name}' from {file_path}")
        result = await self._run(
            ['-p', project_name, '-f', file_path, 'up', '-d'],
            timeout=UP_TIMEOUT,
            cwd=work_dir
        )
        return self._to_compose_result(result, 'deploy')

    async def down(
        self,
        work_dir: str,
        file_path: str,
        project_name: str,
        remove_volumes: bool = False,
    ) -> ComposeResult:
        """
        Tear down a project ("down").

        Falls back to a project-name-only teardown when the artifact file is
        gone, so a record whose files were cleaned up can still be undeployed.

        Args:
            work_dir: Artifact directory
            file_path: Path to the compose file
            project_name: Compose project name
            remove_volumes: Also remove named volumes ("-v")
        """
        file_exists = await asyncio.to_thread(os.path.isfile, file_path)

        if file_exists:
            args = ['-p', project_name, '-f', file_path, 'down']
            cwd = work_dir
        else:
            logger.info(
                f"Compose file {file_path} missing, tearing down project '{project_name}' by name"
            )
            args = ['-p', project_name, 'down']
            cwd = None

        if remove_volumes:
            args.append('-v')

        result = await self._run(args, timeout=DOWN_TIMEOUT, cwd=cwd)
        return self._to_compose_result(result, 'undeploy')

    async def pull(self, work_dir: str, file_path: str, project_name: str) -> ComposeResult:
        """Pull the latest images for a project ("pull")."""
        result = await self._run(
            ['-p', project_name, '-f', file_path, 'pull'],
            timeout=PULL_TIMEOUT,
            cwd=work_dir
        )
        return self._to_compose_result(result, 'pull')

    async def logs(self, project_name: str, lines: int = 100) -> ComposeResult:
        """Get the most recent log lines of a project ("logs --tail=N")."""
        result = await self._run(
            ['-p', project_name, 'logs', f'--tail={lines}'],
            timeout=LOGS_TIMEOUT
        )
        if result.ok:
            return ComposeResult(success=True, output=result.stdout + result.stderr, error=None)

        error = result.error or result.stderr.strip() or f"Unknown logs error (exit code {result.returncode})"
        return ComposeResult(success=False, output='', error=error)

    async def status(self, project_name: str) -> ComposeStatus:
        """
        Get the live status of a project ("ps --format json").

        Returns:
            ComposeStatus; running is True if any container is running.
            A project the CLI does not know is reported as "not deployed"
            without an error.
        """
        result = await self._run(
            ['-p', project_name, 'ps', '--all', '--format', 'json'],
            timeout=STATUS_TIMEOUT
        )

        if not result.ok:
            stderr = result.stderr.strip()
            if result.error is None and any(marker in stderr.lower() for marker in NOT_DEPLOYED_MARKERS):
                return ComposeStatus(running=False, status='not deployed', error=None)
            return ComposeStatus(running=False, status='unknown', error=result.error or stderr or None)

        containers = self._parse_ps_output(result.stdout)
        if not containers:
            return ComposeStatus(running=False, status='not running', error=None)

        running = any(c.get('State') == 'running' for c in containers)
        status = ', '.join(f"{c.get('Name', '?')}: {c.get('State', 'unknown')}" for c in containers)
        return ComposeStatus(running=running, status=status, error=None)

    @staticmethod
    def _parse_ps_output(stdout: str) -> List[Dict[str, Any]]:
        """
        Parse "ps --format json" output.

        Newer CLI releases print one JSON object per line, older ones a
        single JSON array. Unparseable lines are skipped.
        """
        text = stdout.strip()
        if not text:
            return []

        if text.startswith('['):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                return []
            return [c for c in parsed if isinstance(c, dict)]

        containers = []
        for line in text.splitlines():
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                containers.append(parsed)
        return containers
