"""Agent CLI subprocess management.

Executes the reasoning agent's CLI as an async subprocess with timeout
enforcement and output streaming. Each invocation gets a task file built
from the stage prompt; the agent's standard output is the stage result.

Contract:
- run(stage, inputs, read_only=False) -> AgentOutput
- A non-zero exit, a missing binary or an empty artifact raise
  AgentExecutionError
- Exceeding the timeout kills the process and raises AgentTimeoutError
"""

import asyncio
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple, runtime_checkable

from src.rpi.runner.models import (
    AgentExecutionError,
    AgentInputs,
    AgentOutput,
    AgentTimeoutError,
)
from src.rpi.runner.prompts import build_query_prompt, build_stage_prompt
from src.rpi.state.models import Stage

logger = logging.getLogger(__name__)

TASK_FILE_NAME = "task.md"


@runtime_checkable
class AgentExecutor(Protocol):
    """Interface to the external reasoning agent."""

    async def run(
        self,
        stage: Optional[Stage],
        inputs: AgentInputs,
        read_only: bool = False,
    ) -> AgentOutput:
        """Execute one stage (or, with ``stage=None``, answer a query)."""
        ...


class AgentCLIRunner:
    """Runs the agent CLI against the repository working tree.

    Launches the CLI as an async subprocess, streams output line-by-line
    to logging and an optional callback, and enforces a timeout.

    Attributes:
        cli_path: Filesystem path to the agent executable.
        workspace_path: Repository working tree the agent operates on.
        timeout_seconds: Maximum execution time before the process is killed.
    """

    def __init__(
        self,
        cli_path: str,
        workspace_path: Path,
        timeout_seconds: int = 3600,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.cli_path = cli_path
        self.workspace_path = Path(workspace_path)
        self.timeout_seconds = timeout_seconds
        self.log_callback = log_callback

    async def run(
        self,
        stage: Optional[Stage],
        inputs: AgentInputs,
        read_only: bool = False,
    ) -> AgentOutput:
        """Execute the agent for a stage or a read-only question.

        Args:
            stage: The stage to execute, or None for an ad-hoc query.
            inputs: Issue, upstream artifacts, feedback or question.
            read_only: Forbid the agent from modifying the working tree.

        Returns:
            AgentOutput with the captured standard output.

        Raises:
            AgentTimeoutError: If the agent exceeds the timeout.
            AgentExecutionError: If the agent fails or returns no artifact.
        """
        if stage is None:
            prompt = build_query_prompt(inputs)
            read_only = True
        else:
            prompt = build_stage_prompt(stage, inputs)

        start_time = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="rpi-task-") as task_dir:
            task_file = Path(task_dir) / TASK_FILE_NAME
            task_file.write_text(prompt, encoding="utf-8")

            process = None
            try:
                process = await self._start_process(task_file, read_only, stage)
                stdout, stderr = await self._collect_output_with_timeout(process)
                exit_code = process.returncode or 0
            except asyncio.TimeoutError as exc:
                self._kill(process)
                logger.error(
                    "Agent timed out after %ds",
                    self.timeout_seconds,
                    extra={"feature_id": inputs.feature_id, "stage": _name(stage)},
                )
                raise AgentTimeoutError(stage, self.timeout_seconds) from exc
            except OSError as exc:
                logger.error("Failed to start agent: %s", exc)
                raise AgentExecutionError(
                    f"Failed to start agent: {exc}", stage=stage
                ) from exc

        duration = time.monotonic() - start_time
        return self._build_output(stage, inputs, exit_code, stdout, stderr, duration)

    def _build_command(
        self, task_file: Path, read_only: bool
    ) -> List[str]:
        command = [
            self.cli_path,
            "--workspace",
            str(self.workspace_path),
            "--task",
            str(task_file),
        ]
        if read_only:
            command.append("--read-only")
        return command

    async def _start_process(
        self,
        task_file: Path,
        read_only: bool,
        stage: Optional[Stage],
    ) -> asyncio.subprocess.Process:
        """Launch the agent subprocess.

        Raises:
            OSError: If the executable cannot be found or started.
        """
        logger.info(
            "Starting agent",
            extra={
                "stage": _name(stage),
                "workspace": str(self.workspace_path),
                "read_only": read_only,
                "timeout": self.timeout_seconds,
            },
        )

        return await asyncio.create_subprocess_exec(
            *self._build_command(task_file, read_only),
            cwd=str(self.workspace_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _collect_output_with_timeout(
        self,
        process: asyncio.subprocess.Process,
    ) -> Tuple[str, str]:
        """Stream and collect process output within the timeout window.

        Raises:
            asyncio.TimeoutError: If the process exceeds the timeout.
        """
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def stream(name: str, reader, sink: List[str]) -> None:
            async for line in self._read_stream(reader):
                sink.append(line)
                self._emit_line(name, line)

        async def gather() -> None:
            await asyncio.gather(
                stream("stdout", process.stdout, stdout_lines),
                stream("stderr", process.stderr, stderr_lines),
            )
            await process.wait()

        await asyncio.wait_for(gather(), timeout=self.timeout_seconds)
        return "\n".join(stdout_lines), "\n".join(stderr_lines)

    async def _read_stream(self, stream: Optional[asyncio.StreamReader]):
        """Yield decoded lines from an async stream."""
        if stream is None:
            return

        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            yield raw_line.decode("utf-8", errors="replace").rstrip("\n")

    def _emit_line(self, stream_name: str, line: str) -> None:
        logger.debug("agent %s: %s", stream_name, line)
        if self.log_callback is not None:
            self.log_callback(f"[{stream_name}] {line}")

    def _kill(self, process: Optional[asyncio.subprocess.Process]) -> None:
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _build_output(
        self,
        stage: Optional[Stage],
        inputs: AgentInputs,
        exit_code: int,
        stdout: str,
        stderr: str,
        duration: float,
    ) -> AgentOutput:
        """Turn process results into an AgentOutput or raise."""
        if exit_code != 0:
            logger.error(
                "Agent failed with exit code %d in %.1fs",
                exit_code,
                duration,
                extra={"feature_id": inputs.feature_id, "stage": _name(stage)},
            )
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
            message = f"Agent exited with code {exit_code}"
            if detail:
                message += f": {detail}"
            raise AgentExecutionError(
                message, stage=stage, exit_code=exit_code, stderr=stderr
            )

        if stage is not None and stage.produces_artifact and not stdout.strip():
            raise AgentExecutionError(
                f"Agent produced no {stage.value} artifact",
                stage=stage,
                exit_code=exit_code,
                stderr=stderr,
            )

        logger.info(
            "Agent completed successfully in %.1fs",
            duration,
            extra={"feature_id": inputs.feature_id, "stage": _name(stage)},
        )
        return AgentOutput(
            content=stdout if stdout.endswith("\n") or not stdout else stdout + "\n",
            stderr=stderr,
            duration_seconds=duration,
        )


def _name(stage: Optional[Stage]) -> str:
    return stage.value if stage is not None else "query"
