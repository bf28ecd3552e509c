"""Command execution: foreground/background launch and PATH polling.

execute() runs one command through bash and returns an ExecutionResult.
run_with_mode() picks the launch strategy for a step. wait_for_binary() polls
PATH after a background-mode fix.
"""

import shlex
import shutil
import subprocess
import time

from console import status, C_BLUE, C_RESET
from protocol import (
    BACKGROUND_LOG, DEFAULT_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL, SHELL,
    ExecutionResult, is_background,
)


def _decode(data):
    return (data or b"").decode("utf-8", errors="replace")


def execute(command, suppress_output=False):
    """Run `command` with bash, blocking until it exits.

    stdin is inherited so password prompts and the like still work.
    With suppress_output=False stdout is the caller's own stdout (the child
    sees the terminal) and only stderr is captured; `output` stays empty.
    With suppress_output=True both streams are captured.

    On failure the error text is stderr as-is (streamed), or stdout and
    stderr joined and trimmed (suppressed).
    """
    try:
        proc = subprocess.Popen(
            [SHELL, "-c", command],
            stdin=None,
            stdout=subprocess.PIPE if suppress_output else None,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        return ExecutionResult(succeeded=False, error=f"could not start {SHELL}: {e}")

    out, err = proc.communicate()
    stdout, stderr = _decode(out), _decode(err)

    if proc.returncode != 0:
        if suppress_output:
            return ExecutionResult(succeeded=False, output=stdout,
                                   error=(stdout + "\n" + stderr).strip())
        return ExecutionResult(succeeded=False, error=stderr)
    return ExecutionResult(succeeded=True, output=stdout)


def get_binary_name(command):
    """First whitespace-delimited word of a command, or "" for a blank one."""
    parts = command.split()
    return parts[0] if parts else ""


def run_with_mode(command, mode, log_path=BACKGROUND_LOG, status_fn=status):
    """Launch a step's command according to its mode.

    background: the leading binary must already be on PATH; the command is
    detached with nohup and its output goes to `log_path`. Anything else runs
    in the foreground.
    """
    if not is_background(mode):
        return execute(command, suppress_output=False)

    binary = get_binary_name(command)
    if not binary:
        return ExecutionResult(
            succeeded=False, spawned=False,
            error=f"could not determine binary for background command: {command}",
        )
    if shutil.which(binary) is None:
        return ExecutionResult(
            succeeded=False, spawned=False,
            error=f"binary '{binary}' not found in PATH",
        )

    status_fn(f"{C_BLUE}\u25b8{C_RESET}", f"Running '{command}' in background...")
    return execute(f"nohup {command} > {shlex.quote(str(log_path))} 2>&1 &", suppress_output=False)


def wait_for_binary(binary, max_attempts=DEFAULT_POLL_ATTEMPTS, interval=DEFAULT_POLL_INTERVAL):
    """Poll PATH for `binary`. True on the first hit, False once attempts run out."""
    if not binary:
        return False
    for _ in range(max_attempts):
        if shutil.which(binary) is not None:
            return True
        time.sleep(interval)
    return False
