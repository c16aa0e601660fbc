import asyncio
import os
import shlex
from typing import Dict, List, Optional, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)


class Sandbox:
    """Runs verification commands (tests, linters) as child processes of the event loop."""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    async def run_async(
        self, command: Union[str, List[str]], env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None
    ) -> Tuple[bool, str]:
        """Returns ``(exit code was zero, combined stdout and stderr)``; never raises for command failures."""
        args = shlex.split(command) if isinstance(command, str) else list(command)
        run_env = dict(os.environ, **(env or {}))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=run_env,
                cwd=cwd,
            )
        except OSError as e:
            logger.error("sandbox_failed", command=args, error=str(e))
            return False, str(e)

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("sandbox_timeout", command=args, timeout=self.timeout)
            return False, f"Command timed out after {self.timeout}s"

        output = stdout.decode("utf-8", errors="replace")
        logger.debug("sandbox_finished", command=args, returncode=process.returncode)
        return process.returncode == 0, output
