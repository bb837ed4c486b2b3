"""
Work handler registry and built-in handlers.

A handler performs the opaque work for one claimed job. Handlers may run
more than once for the same job (after a crash or a lost lease), so they
must be safe to repeat.
"""

import asyncio
import json
import logging
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, cast

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analysis_queue.config import get_settings
from analysis_queue.constants import JobStatus, LogLevel
from analysis_queue.db import get_session_context
from analysis_queue.db.logs import JobLogRepository
from analysis_queue.db.repository import JobRepository
from analysis_queue.types.job import ClaimedJob, JobResult

logger = logging.getLogger(__name__)

PROGRESS_MARKER = "[PROGRESS]"
_OUTPUT_TAIL_CHARS = 2000


@dataclass
class WorkContext:
    """
    What a handler sees of its job.

    Every call goes through the queue with this worker's identity, so a
    handler whose lease was lost gets OwnershipError from report().
    """

    job: ClaimedJob
    worker_id: str
    session_factory: async_sessionmaker[AsyncSession] | None = None
    lease_seconds: float | None = None
    _steps: int = field(default=0, init=False)

    @property
    def job_id(self):
        return self.job.id

    async def report(
        self,
        sub_state: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> None:
        """
        Record progress and extend the lease.

        Raises:
            OwnershipError: If the lease was lost or the job was cancelled.
        """
        async with get_session_context(self.session_factory) as session:
            await JobRepository(session).heartbeat(
                self.job.id,
                self.worker_id,
                sub_state=sub_state,
                progress=progress,
                current_step=current_step,
                total_steps=total_steps,
                lease_seconds=self.lease_seconds,
            )

    async def step(self, progress: str, sub_state: JobStatus | None = None) -> None:
        """Advance the step counter by one and report it."""
        self._steps += 1
        await self.report(sub_state=sub_state, progress=progress, current_step=self._steps)

    async def log(self, msg: str, level: LogLevel = LogLevel.INFO) -> None:
        """Append an entry to the job's log."""
        async with get_session_context(self.session_factory) as session:
            await JobLogRepository(session).append(self.job.id, level, msg)

    async def is_cancel_requested(self) -> bool:
        """Poll the job's cancellation flag."""
        async with get_session_context(self.session_factory) as session:
            return await JobRepository(session).is_cancel_requested(self.job.id)


# Type alias for handler functions
JobHandler = Callable[[WorkContext], Awaitable[JobResult]]

_handlers: dict[str, JobHandler] = {}


def register_handler(name: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a work handler.

    Args:
        name: The name workers select the handler by.

    Returns:
        Decorator function.

    Example:
        @register_handler("summarize")
        async def handle_summarize(context: WorkContext) -> JobResult:
            ...
    """

    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[name] = handler
        logger.debug(f"Registered handler: {name}")
        return handler

    return decorator


def get_handler(name: str) -> JobHandler | None:
    """Get a handler by name, or None if not registered."""
    return _handlers.get(name)


def list_handlers() -> list[str]:
    """List all registered handler names."""
    return list(_handlers.keys())


# ============================================================================
# Built-in handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: WorkContext) -> JobResult:
    """
    Echo handler for testing and diagnostics.

    Walks through the sub-states and returns the prompt as output.
    """
    await context.step("Preparing", sub_state=JobStatus.RUNNING)
    await context.log(f"Echo for target {context.job.target_id}")
    await context.step("Done")

    return JobResult(
        success=True,
        output={"echo": context.job.prompt, "target_id": context.job.target_id},
        result_count=1,
    )


def _parse_command_output(stdout: str) -> tuple[Any, int | None]:
    """Parse the command's stdout as JSON, falling back to the raw tail."""
    text = stdout.strip()
    try:
        output = json.loads(text)
    except ValueError:
        return {"raw_output": text[-_OUTPUT_TAIL_CHARS:]}, None

    result_count = None
    if isinstance(output, dict) and isinstance(output.get("documents"), list):
        result_count = len(output["documents"])
    return output, result_count


@register_handler("command")
async def handle_command(context: WorkContext) -> JobResult:
    """
    Run the configured analysis command against the job's target.

    The command is invoked as `<worker_command> --target <id> --prompt <prompt>`.
    Lines starting with [PROGRESS] update the job's progress, stderr lines
    go to the job log as errors, and stdout is parsed as the JSON result.
    A non-zero exit fails the attempt.
    """
    settings = get_settings()
    args = [
        *shlex.split(settings.worker_command),
        "--target",
        context.job.target_id,
        "--prompt",
        context.job.prompt,
    ]

    await context.report(sub_state=JobStatus.RUNNING, progress="Starting analysis")
    await context.log(f"Running {args[0]}")

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return JobResult(success=False, error=f"Failed to start command: {e}")

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    # Both pipes were requested above
    stdout = cast(asyncio.StreamReader, process.stdout)
    stderr = cast(asyncio.StreamReader, process.stderr)

    async def drain_stderr() -> None:
        async for raw in stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                stderr_lines.append(line)
                await context.log(line, level=LogLevel.ERROR)

    stderr_task = asyncio.create_task(drain_stderr())
    try:
        async for raw in stdout:
            line = raw.decode(errors="replace").rstrip("\n")
            if line.startswith(PROGRESS_MARKER):
                progress = line[len(PROGRESS_MARKER):].strip()
                await context.step(progress)
                await context.log(progress)
            else:
                stdout_lines.append(line)

            if await context.is_cancel_requested():
                await context.log("Cancellation requested, stopping command")
                return JobResult(success=False, error="Cancelled while running")

        await stderr_task
        returncode = await process.wait()
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
        stderr_task.cancel()

    if returncode != 0:
        detail = "\n".join(stderr_lines or stdout_lines)[-_OUTPUT_TAIL_CHARS:]
        return JobResult(
            success=False,
            error=f"Command exited with code {returncode}: {detail}",
        )

    output, result_count = _parse_command_output("\n".join(stdout_lines))
    await context.log("Command finished")
    return JobResult(success=True, output=output, result_count=result_count)


async def execute_job(name: str, context: WorkContext) -> JobResult:
    """
    Run a job through the named handler.

    Handler exceptions become failed results; cancellation propagates.

    Args:
        name: Registered handler name.
        context: The job's work context.

    Returns:
        JobResult from the handler.
    """
    handler = get_handler(name)
    if handler is None:
        logger.error(
            f"No handler registered: {name}",
            extra={"job_id": str(context.job_id)},
        )
        return JobResult(
            success=False,
            error=f"No handler registered: {name}",
        )

    try:
        return await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
        )
