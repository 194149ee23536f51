"""Build runner for the application build tool.

This module handles:
- Executing the build (and optional analysis) command with subprocess
- Capturing stdout/stderr to a retained log file
- Enforcing build timeouts
- Turning the build output into a BuildArtifact
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from shipline.builds.artifacts import describe_artifact, resolve_artifact
from shipline.errors import BuildError, NetworkError
from shipline.pipeline.schema import BuildConfig
from shipline.types import BuildArtifact

logger = logging.getLogger(__name__)

# Lines of build output attached to a failure
LOG_TAIL_LINES = 40


@dataclass
class CommandResult:
    """Result of a logged command execution.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def read_log_tail(log_path: Path, lines: int = LOG_TAIL_LINES) -> str:
    """Return the last lines of a log file."""
    try:
        content = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def run_logged_command(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command, appending its combined output to a log file.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        log_path: Log file; created if missing, appended to otherwise.
        timeout: Timeout in seconds (None = no timeout).
        env: Full environment for the process.

    Returns:
        CommandResult with execution details.

    Raises:
        NetworkError: If the command timed out.
        BuildError: If the command could not be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )
            exit_code = result.returncode

    except subprocess.TimeoutExpired as e:
        message = f"Command timed out after {timeout} seconds: {cmd_str}"
        logger.error("%s. See log: %s", message, log_path)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise NetworkError(
            message,
            response=read_log_tail(log_path),
            code="timeout",
        ) from e

    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(message)
        raise BuildError(message, code="execution_error") from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    return CommandResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


class ArtifactBuilder:
    """Runs the application build and describes its artifact."""

    def __init__(self, config: BuildConfig, timeout: int | None = None) -> None:
        self.config = config
        self.timeout = timeout

    def build(
        self,
        source_dir: Path,
        source_revision: str,
        log_dir: Path,
        env: dict[str, str] | None = None,
    ) -> BuildArtifact:
        """Build a checked-out revision.

        Build failures are never worth retrying, so a non-zero exit is a
        BuildError. The caller owns retention of the artifact file.

        Args:
            source_dir: Checkout of ``source_revision``.
            source_revision: Resolved commit of the checkout.
            log_dir: Directory for ``build.log``.
            env: Base environment for the commands.

        Returns:
            BuildArtifact describing the produced file.

        Raises:
            BuildError: Non-zero exit or missing/ambiguous artifact.
            NetworkError: The build timed out.
        """
        log_path = log_dir / "build.log"
        command_env = dict(env) if env is not None else None
        if self.config.env:
            if command_env is None:
                command_env = dict(os.environ)
            command_env.update(self.config.env)

        result = run_logged_command(
            shlex.split(self.config.command),
            cwd=source_dir,
            log_path=log_path,
            timeout=self.timeout,
            env=command_env,
        )
        if not result.success:
            raise BuildError(
                f"Build failed with exit code {result.exit_code}",
                response=read_log_tail(log_path),
                code="build_failed",
            )

        artifact_path = resolve_artifact(source_dir, self.config.artifact)

        if self.config.analysis_command:
            analysis = run_logged_command(
                shlex.split(self.config.analysis_command),
                cwd=source_dir,
                log_path=log_path,
                timeout=self.timeout,
                env=command_env,
            )
            if not analysis.success:
                raise BuildError(
                    f"Static analysis failed with exit code {analysis.exit_code}",
                    response=read_log_tail(log_path),
                    code="analysis_failed",
                )

        return describe_artifact(artifact_path, source_revision)


__all__ = [
    "ArtifactBuilder",
    "CommandResult",
    "read_log_tail",
    "run_logged_command",
]
