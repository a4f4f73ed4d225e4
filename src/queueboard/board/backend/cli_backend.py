"""Subprocess-based backend for local CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import NamedTuple, TextIO

from queueboard.board.backend.base import AgentDispatchError, AgentReply, AgentSendRequest

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_STDERR_TAIL_CHARS = 500


class _ProcessOutcome(NamedTuple):
    exit_code: int
    timed_out: bool
    cancelled: bool


class CliAgentBackend:
    """Run an agent command template per dispatch; stdout is the reply.

    The template supports `{prompt}`, `{prompt_file}` and `{session_key}`
    placeholders and must reference the prompt one way or the other.
    """

    def __init__(
        self,
        *,
        command_template: str,
        poll_interval_seconds: float = 0.1,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.command_template = command_template
        self.poll_interval_seconds = poll_interval_seconds
        self.transient_exit_codes = transient_exit_codes

    def send(self, request: AgentSendRequest) -> AgentReply:
        with tempfile.TemporaryDirectory(prefix="queueboard-agent-") as raw_workdir:
            workdir = Path(raw_workdir)
            prompt_file = workdir / "prompt.txt"
            prompt_file.write_text(request.message, "utf-8")
            stdout_path = workdir / "stdout.txt"
            stderr_path = workdir / "stderr.txt"

            run_args, command_head = _build_run_args(
                command_template=self.command_template,
                prompt=request.message,
                prompt_file=prompt_file,
                session_key=request.session_key,
            )

            env = os.environ.copy()
            env["QUEUEBOARD_SESSION_KEY"] = request.session_key
            env["QUEUEBOARD_IDEMPOTENCY_KEY"] = request.idempotency_key

            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    outcome = _run_subprocess_with_deadline(
                        run_args=run_args,
                        env=env,
                        timeout_seconds=request.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        cancel_requested=request.cancel_requested,
                        poll_interval_seconds=self.poll_interval_seconds,
                    )
            except FileNotFoundError as error:
                raise AgentDispatchError(
                    f"CLI agent command not found: {command_head}",
                    transient=False,
                ) from error
            except OSError as error:
                raise AgentDispatchError(
                    f"CLI agent failed to start: {error}",
                    transient=True,
                ) from error

            stdout = stdout_path.read_text("utf-8", errors="replace")
            if outcome.timed_out or outcome.cancelled:
                return AgentReply(
                    content=stdout,
                    timed_out=outcome.timed_out,
                    cancelled=outcome.cancelled,
                )
            if outcome.exit_code != 0:
                stderr = stderr_path.read_text("utf-8", errors="replace").strip()
                message = f"CLI agent exited with code {outcome.exit_code}"
                if stderr:
                    message = f"{message}: {stderr[-_STDERR_TAIL_CHARS:]}"
                raise AgentDispatchError(
                    message,
                    transient=outcome.exit_code in self.transient_exit_codes,
                )
            return AgentReply(content=stdout)


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    session_key: str,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentDispatchError("CLI agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentDispatchError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            session_key=shlex.quote(session_key),
        )
    except (KeyError, IndexError) as error:
        raise AgentDispatchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentDispatchError(
            "CLI agent command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _run_subprocess_with_deadline(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float,
    stdout_handle: TextIO,
    stderr_handle: TextIO,
    cancel_requested: Callable[[], bool] | None,
    poll_interval_seconds: float,
) -> _ProcessOutcome:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _ProcessOutcome(exit_code=returncode, timed_out=False, cancelled=False)

        if time.monotonic() - start_monotonic >= timeout_seconds:
            logger.warning("CLI agent exceeded %.0fs, terminating pid %s", timeout_seconds, process.pid)
            _terminate_process(process)
            return _ProcessOutcome(exit_code=TIMEOUT_EXIT_CODE, timed_out=True, cancelled=False)

        if cancel_requested is not None and cancel_requested():
            logger.info("Cancelling CLI agent pid %s", process.pid)
            _terminate_process(process)
            return _ProcessOutcome(exit_code=TIMEOUT_EXIT_CODE, timed_out=False, cancelled=True)

        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
