"""MCP server exposing tmux job tools over stdio or HTTP."""

from __future__ import annotations

import json
from typing import Any

from mcp.server.fastmcp import FastMCP

from tmuxer.config import DEFAULT_PORT
from tmuxer.errors import JobExistsError, JobNotFoundError, TmuxerError
from tmuxer.manager import JobManager
from tmuxer.models import Job

INSTRUCTIONS = """\
tmuxer is an MCP server for managing background jobs via tmux sessions.
It allows LLMs to run long-running commands, monitor their output, and interact with them.

## Typical workflow:
1. Use create_job to start a command (e.g., a build, server, or test suite)
2. Use list_jobs to see active jobs and their status
3. Use get_job_output to view logs/output
4. Use send_input if the job needs interactive input (or {C-c} to interrupt)
5. Use cleanup_jobs when dead job windows accumulate (they're kept for auditing)

## Tips:
- Jobs persist after the command exits (remain-on-exit) for auditing, so you can always retrieve output
- Every successful tool response includes a "jobs" field with the current state of all jobs
- Custom prefixes make tracking easier (e.g., "build", "test")
"""


def render_instructions(jobs: list[Job]) -> str:
    """Server instructions with the job list as it was at startup."""
    listing = json.dumps([job.to_dict() for job in jobs], indent=2)
    return f"{INSTRUCTIONS}\nCurrent jobs list:\n\n```json\n{listing}\n```"


def _failure(job_id: str | None, exc: Exception) -> dict[str, Any]:
    if isinstance(exc, JobNotFoundError):
        status = "not_found"
    elif isinstance(exc, JobExistsError):
        status = "conflict"
    else:
        status = "error"
    return {"job_id": job_id, "status": status, "error": str(exc)}


def create_server(
    manager: JobManager | None = None,
    port: int = DEFAULT_PORT,
    instructions: str | None = None,
) -> FastMCP:
    """Create and configure the tmuxer MCP server."""

    jm = manager or JobManager()

    mcp = FastMCP(
        name="tmuxer",
        instructions=instructions or INSTRUCTIONS,
        host="127.0.0.1",
        port=port,
        stateless_http=True,
    )

    async def _snapshot(result: dict[str, Any]) -> dict[str, Any]:
        result["jobs"] = [job.to_dict() for job in await jm.list_jobs()]
        return result

    # ------------------------------------------------------------------
    # Tool: create_job
    # ------------------------------------------------------------------
    @mcp.tool()
    async def create_job(
        command: str,
        prefix: str | None = None,
        job_id: str | None = None,
        env: dict[str, str] | None = None,
        keep_alive: bool | None = None,
    ) -> dict:
        """Create a new job that runs a command in a background tmux window.

        Returns the job id, its pid and the terminal output emitted during
        startup (waits up to 5 seconds for the first output).

        Args:
            command: Shell command to run (e.g. "npm run dev").
            prefix: Prefix for the generated job id (default: "job" -> job1, job2, ...).
            job_id: Explicit job id. Fails if a job with this id already exists.
            env: Extra environment variables for the command.
            keep_alive: If True, the job keeps running after tmuxer exits.
        """
        try:
            result = await jm.create_job(
                command=command,
                prefix=prefix,
                job_id=job_id,
                env=env,
                keep_alive=keep_alive,
            )
        except (TmuxerError, ValueError) as exc:
            return _failure(job_id, exc)
        return await _snapshot(result)

    # ------------------------------------------------------------------
    # Tool: list_jobs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_jobs() -> dict:
        """List all jobs with their current status.

        Returns job id, pid, running flag, current command, scrollback line
        count, milliseconds since last activity and, for finished jobs, the
        exit code.
        """
        try:
            jobs = await jm.list_jobs()
        except TmuxerError as exc:
            return _failure(None, exc)
        return {
            "count": len(jobs),
            "jobs": [job.to_dict() for job in jobs],
        }

    # ------------------------------------------------------------------
    # Tool: get_job_status
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_job_status(job_id: str) -> dict:
        """Get the status of a single job without its output.

        Args:
            job_id: Id of the job.
        """
        try:
            job = await jm.get_job_status(job_id)
        except TmuxerError as exc:
            return _failure(job_id, exc)
        return job.to_dict()

    # ------------------------------------------------------------------
    # Tool: get_job_output
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_job_output(job_id: str, last_lines: int | None = None) -> dict:
        """Get output from a job's terminal. Use this when polling or waiting for output.

        Args:
            job_id: Id of the job.
            last_lines: Only return the last N lines.
        """
        if last_lines is not None and last_lines < 1:
            return {"job_id": job_id, "status": "error", "error": "last_lines must be a positive integer"}
        try:
            result = await jm.get_job_output(job_id, last_lines=last_lines)
        except TmuxerError as exc:
            return _failure(job_id, exc)
        return await _snapshot(result)

    # ------------------------------------------------------------------
    # Tool: send_input
    # ------------------------------------------------------------------
    @mcp.tool()
    async def send_input(job_id: str, input: str, raw_mode: bool = False) -> dict:
        """Send input to a job (use {C-c} for Ctrl+C).

        Returns the visible terminal contents one second after sending.

        Args:
            job_id: Id of the job.
            input: Text to type. Use {Key} for special keys, {{ and }} for literal braces.
                Examples:
                  "Hello world{Enter}" - types text then presses Enter
                  "{Up}{Up}{Enter}"    - presses Up, Up, Enter
                  "{C-c}"              - sends Ctrl+C
            raw_mode: Send input as space-separated tmux key names (e.g. "Down Down Enter").
        """
        try:
            result = await jm.send_input(job_id, input, raw_mode=raw_mode)
        except (TmuxerError, ValueError) as exc:
            return _failure(job_id, exc)
        return await _snapshot(result)

    # ------------------------------------------------------------------
    # Tool: kill_job
    # ------------------------------------------------------------------
    @mcp.tool()
    async def kill_job(job_id: str) -> dict:
        """Kill a job and destroy its tmux window, whether or not it is still running.

        Args:
            job_id: Id of the job.
        """
        try:
            result = await jm.kill_job(job_id)
        except TmuxerError as exc:
            return _failure(job_id, exc)
        return await _snapshot(result)

    # ------------------------------------------------------------------
    # Tool: cleanup_jobs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def cleanup_jobs(job_ids: list[str]) -> dict:
        """Clean up dead job windows. Running jobs are skipped.

        Args:
            job_ids: Ids of the jobs to remove.
        """
        try:
            result = await jm.cleanup_jobs(job_ids)
        except TmuxerError as exc:
            return _failure(None, exc)
        return await _snapshot(result)

    return mcp
