"""
clusterforge/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic and a per-call
timeout. A child process is killed if the call times out or the awaiting task is
cancelled, so an operator abort never leaves talosctl/kubectl/helm running behind us.

Optionally, allows passing a custom error_parser callback that can parse stderr for
known errors and return a short user-friendly message.

Usage example:
    from clusterforge.utils.async_command_runner import run_command

    version = await run_command(
        ["talosctl", "version", "--nodes", "10.0.0.11"],
        sensitive=False,
        retries=1,
        timeout=30,
    )
"""

from __future__ import annotations

import os
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from clusterforge.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the call was sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: List[int] = [0],
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries,
    an optional timeout and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, we pass stderr to it, and if it returns
    a non-None string, we raise that as a short user-friendly message.

    When `sensitive=True`, we omit the command, stdout, and stderr from the final error
    message.

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error.
        env: Additional environment variables to add or override.
        cwd: Working directory for the command.
        input_data: If provided, passed to stdin.
        successful_return_codes: Which return codes won't be treated as errors.
        retries: Total attempts. Defaults to 3.
        retry_delay: Delay in seconds between attempts. Defaults to 1.0.
        timeout: Seconds to wait for one attempt before killing the process.
        error_parser: A callback that receives stderr. If it returns a non-None
            value, we raise a short CommandError with that message.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all retries, times out, or cannot
            be started.
    """

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        logger.debug("Executing command: %s", command[0] if sensitive else command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except OSError as exc:
            raise CommandError(f"Failed to start '{command[0]}': {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=input_data.encode() if input_data else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            await _terminate(proc)
            raise CommandError(
                f"Command '{command[0]}' timed out after {timeout}s."
            ) from exc
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in successful_return_codes:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                "" if sensitive else stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
