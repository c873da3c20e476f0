"""Imperative action collaborator that runs a local command.

The node config carries the command either as an argv list (run directly)
or as a string (run through the shell)::

    {"command": ["kubectl", "patch", "deployment", "coredns", "-p", "..."],
     "environment": {"KUBECONFIG": "/tmp/kubeconfig"},
     "working_dir": "/tmp"}

The call blocks until the process exits.  On cancellation (timeout or run
cancel) the process is killed and reaped before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from typing import Any

from kubeplan.collaborators.base import ImperativeActionCollaborator, RunContext
from kubeplan.errors import CollaboratorError
from kubeplan.observability.logging import get_logger

_logger = get_logger("collaborators.shell")

_MAX_LOGGED_OUTPUT = 4096


class ShellActionCollaborator(ImperativeActionCollaborator):
    """Runs ``config["command"]`` and returns its exit status.

    Args:
        env:      Extra environment for every command (merged over os.environ,
                  under the node's own ``environment``).
        log_output: Log captured stdout/stderr at debug level.
    """

    def __init__(self, env: Mapping[str, str] | None = None, log_output: bool = True) -> None:
        self._env = dict(env or {})
        self._log_output = log_output

    async def run(self, key: str, config: Mapping[str, Any], timeout: float, ctx: RunContext) -> int:
        command = config.get("command")
        env = {**os.environ, **self._env, **{k: str(v) for k, v in (config.get("environment") or {}).items()}}
        cwd = config.get("working_dir")

        if isinstance(command, str) and command.strip():
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
            )
        elif isinstance(command, list) and command and all(isinstance(a, str) for a in command):
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    cwd=cwd,
                )
            except FileNotFoundError as exc:
                raise CollaboratorError(f"command not found: {command[0]}", key) from exc
        else:
            raise CollaboratorError("config.command must be a non-empty string or list of strings", key)

        _logger.info("action_started", key=key, pid=proc.pid, run_id=ctx.run_id, timeout=timeout)
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            _logger.warning("action_killed", key=key, pid=proc.pid)
            raise

        if self._log_output:
            _logger.debug(
                "action_output",
                key=key,
                stdout=stdout.decode(errors="replace")[-_MAX_LOGGED_OUTPUT:],
                stderr=stderr.decode(errors="replace")[-_MAX_LOGGED_OUTPUT:],
            )
        _logger.info("action_exited", key=key, pid=proc.pid, exit_status=proc.returncode)
        return proc.returncode if proc.returncode is not None else -1
