"""
Subprocess execution helpers.

All external commands (PowerShell queries, CUPS/SANE tools, the scanning
utility) go through ``run_process`` so that timeouts, process termination and
output capture behave the same everywhere, and so that tests can substitute a
fake runner.
"""

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .exceptions import ExternalToolError

logger = logging.getLogger(__name__)

# Hide console windows when spawning from a GUI host on Windows
_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if hasattr(subprocess, 'CREATE_NO_WINDOW') else 0


@dataclass
class ProcessResult:
    """Outcome of one external command."""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


ProcessRunner = Callable[..., Awaitable[ProcessResult]]


async def run_process(args: Sequence[str], timeout: float, input: Optional[bytes] = None) -> ProcessResult:
    """
    Run a command, capturing stdout/stderr, killing it if ``timeout`` expires.

    Args:
        args: Program and arguments
        timeout: Overall bound in seconds
        input: Optional bytes written to the process stdin

    Returns:
        ProcessResult: ``timed_out`` is set when the bound was exceeded

    Raises:
        ExternalToolError: If the program cannot be started at all
    """
    program = args[0]
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            creationflags=_CREATION_FLAGS
        )
    except OSError as e:
        raise ExternalToolError(f"Failed to start {program}: {e}", tool=program, cause=e)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(input), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{program} exceeded {timeout}s, terminating")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(f"Failed to kill {program}: {e}")
        await process.wait()
        return ProcessResult(exit_code=process.returncode, timed_out=True)

    return ProcessResult(
        exit_code=process.returncode,
        stdout=stdout.decode('utf-8', errors='replace'),
        stderr=stderr.decode('utf-8', errors='replace')
    )


def ps_quote(value: str) -> str:
    """Quote a value as a single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


async def run_powershell(script: str, timeout: float = 30.0,
                         runner: ProcessRunner = run_process) -> ProcessResult:
    """Run a PowerShell script without loading the user profile."""
    return await runner(
        ['powershell.exe', '-NoProfile', '-NonInteractive', '-Command', script],
        timeout=timeout
    )


def parse_json_list(output: str) -> List[Dict[str, Any]]:
    """
    Parse ``ConvertTo-Json`` output.

    PowerShell emits a bare object instead of an array when exactly one item
    matched, and nothing at all when none did.
    """
    text = output.strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict):
        return [data]
    return [item for item in data if isinstance(item, dict)]


async def run_powershell_json(script: str, timeout: float = 30.0,
                              runner: ProcessRunner = run_process) -> List[Dict[str, Any]]:
    """
    Run a PowerShell script that ends in ``ConvertTo-Json`` and parse it.

    Raises:
        ExternalToolError: On non-zero exit, timeout or unparseable output
    """
    result = await run_powershell(script, timeout=timeout, runner=runner)
    if result.timed_out:
        raise ExternalToolError(f"PowerShell query timed out after {timeout}s", tool="powershell")
    if result.exit_code != 0:
        raise ExternalToolError(
            f"PowerShell query failed with code {result.exit_code}: {result.stderr.strip()}",
            tool="powershell"
        )
    try:
        return parse_json_list(result.stdout)
    except json.JSONDecodeError as e:
        raise ExternalToolError(f"Failed to parse PowerShell JSON output: {e}", tool="powershell", cause=e)
