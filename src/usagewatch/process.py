import asyncio
from dataclasses import dataclass
from typing import Protocol, Sequence

import structlog

from usagewatch.errors import ProviderError

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ProcessResult:
    exit_code: "int"
    # stdout and stderr interleaved
    output: "str"


class ProcessRunner(Protocol):
    async def run(
        self,
        executable: "str",
        args: "Sequence[str]",
    ) -> "ProcessResult": ...


class AsyncProcessRunner:
    """
    runs an executable with stderr merged into stdout. If the
    awaiting task is cancelled (e.g. by the orchestrator timeout)
    the child is killed and reaped before the cancellation
    propagates, so repeated rounds do not pile up processes.
    """

    async def run(
        self,
        executable: "str",
        args: "Sequence[str]",
    ) -> "ProcessResult":
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ProviderError(f"failed to execute {executable}: {exc}") from exc

        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
                logger.debug("subprocess_killed", executable=executable, pid=proc.pid)
            raise

        return ProcessResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            output=stdout.decode("utf-8", errors="replace"),
        )
