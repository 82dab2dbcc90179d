# buda_manager/infra/process.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from buda_manager.core.errors import OperationalError

logger = logging.getLogger("buda_manager.infra.process")


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """
    Runs external commands (docker CLI, ...) off the event loop's critical
    path. Every call is time-bounded; expiry kills the child and surfaces
    as an OperationalError.
    """

    def __init__(self, *, timeout_sec: float = 10.0, env: Optional[Dict[str, str]] = None) -> None:
        self.timeout_sec = timeout_sec
        self.env = env

    async def run(self, argv: Sequence[str], *, timeout_sec: Optional[float] = None) -> ProcessResult:
        timeout = timeout_sec or self.timeout_sec
        logger.debug("exec: %s", " ".join(argv))
        try:
            proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *argv,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self.env,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise OperationalError(f"timed out starting {argv[0]}") from e
        except OSError as e:
            raise OperationalError(f"cannot execute {argv[0]}: {e}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise OperationalError(f"{argv[0]} timed out after {timeout:.1f}s") from e

        result = ProcessResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace").strip(),
            stderr=err.decode("utf-8", errors="replace").strip(),
        )
        if not result.ok:
            logger.debug("exec failed (%s): %s", result.exit_code, result.stderr[:500])
        return result
