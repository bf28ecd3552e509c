"""Self-healing execution loop.

Run a command; if it fails, ask the advisor for a fix, show it, and on
confirmation run the fix the same way (it may need fixing too). Once the fix
succeeds, re-run the original from scratch.

Fix chains are kept on an explicit stack instead of recursing. The bottom
frame is the step's own command; every frame above it is a fix for the frame
below. A frame that succeeds is popped and its parent re-runs. A frame that
ends for good (no advisor, declined, fix failed...) ends the whole run with
that frame's error, so a failed fix hides the original error.
"""

from console import (
    status, ask_yes_no,
    C_RESET, C_RED, C_GREEN, C_YELLOW, C_DIM, C_BOLD, C_ITALIC,
)
from executor import run_with_mode, get_binary_name, wait_for_binary
from protocol import (
    BACKGROUND_LOG, DEFAULT_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL,
    STATE_TRANSITIONS, Attempt, FailureKind, HealResult, HealState, Mode,
    is_background, normalize_mode,
)


class _Frame:
    __slots__ = ("command", "mode", "state")

    def __init__(self, command, mode):
        self.command = command
        self.mode = normalize_mode(mode)
        self.state = HealState.ATTEMPTING

    def move(self, new_state):
        if new_state not in STATE_TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid heal transition {self.state.value} -> {new_state.value}")
        self.state = new_state


class Healer:
    """Runs commands and drives the fix-apply-retry protocol.

    advisor: a FixAdvisor (anything with suggest_fix(command, error, meta))
    confirm: fn(prompt) -> bool, defaults to a y/n prompt on stdin
    runner: fn(command, mode) -> ExecutionResult, defaults to run_with_mode
    poll: fn(binary, attempts, interval) -> bool, defaults to wait_for_binary
    max_fixes: stop after this many accepted fixes (None = no limit)
    """

    def __init__(self, advisor, confirm=None, runner=None, poll=None,
                 poll_attempts=DEFAULT_POLL_ATTEMPTS, poll_interval=DEFAULT_POLL_INTERVAL,
                 max_fixes=None, log_path=BACKGROUND_LOG, status_fn=status):
        self.advisor = advisor
        self.confirm = confirm or ask_yes_no
        self.runner = runner or (lambda cmd, mode: run_with_mode(cmd, mode, log_path=log_path,
                                                                 status_fn=status_fn))
        self.poll = poll or wait_for_binary
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.max_fixes = max_fixes
        self.status = status_fn

    def heal(self, command, meta="", mode=Mode.SAME_TERMINAL.value):
        trail = []
        stack = [_Frame(command, mode)]
        accepted = 0

        while stack:
            frame = stack[-1]
            depth = len(stack) - 1
            result = self.runner(frame.command, frame.mode)
            attempt = Attempt(command=frame.command, mode=frame.mode, depth=depth, result=result)
            trail.append(attempt)

            if result.succeeded:
                frame.move(HealState.SUCCEEDED)
                stack.pop()
                if not stack:
                    return HealResult(succeeded=True, trail=trail)
                parent = stack[-1]
                if is_background(parent.mode):
                    binary = get_binary_name(parent.command)
                    if not self.poll(binary, self.poll_attempts, self.poll_interval):
                        parent.move(HealState.TERMINALLY_FAILED)
                        self.status(f"{C_RED}\u2717{C_RESET}",
                                    f"{C_RED}{C_BOLD}Binary '{binary}' still not found after fix. "
                                    f"Please ensure it is installed and in your PATH.{C_RESET}")
                        return HealResult(
                            succeeded=False, failure=FailureKind.BINARY_MISSING, trail=trail,
                            error=f"binary '{binary}' still not found after fix",
                        )
                parent.move(HealState.ATTEMPTING)
                self.status(f"{C_GREEN}\u2714{C_RESET}",
                            f"{C_GREEN}{C_BOLD}Fix applied. Retrying original command...{C_RESET}")
                continue

            frame.move(HealState.FAILED_AWAITING_FIX)
            if depth:
                self.status(f"{C_RED}\u2717{C_RESET}",
                            f"{C_RED}{C_BOLD}Fix command failed:{C_RESET} {_oneline(result.error)}")
            else:
                self.status(f"{C_RED}\u2717{C_RESET}",
                            f"{C_RED}{C_BOLD}Command failed:{C_RESET} {_oneline(result.error)}")
            if self.max_fixes is not None and accepted >= self.max_fixes:
                frame.move(HealState.TERMINALLY_FAILED)
                self.status(f"{C_YELLOW}!{C_RESET}", f"Fix limit reached ({self.max_fixes}), giving up.")
                return HealResult(succeeded=False, error=result.error,
                                  failure=FailureKind.FIX_LIMIT, cause=_cause(result), trail=trail)

            suggestion = self.advisor.suggest_fix(frame.command, result.error, meta)
            attempt.suggestion = suggestion
            if not suggestion.available:
                frame.move(HealState.TERMINALLY_FAILED)
                self.status(f"{C_RED}!{C_RESET}", f"No fix available: {suggestion.explanation}")
                return HealResult(succeeded=False, error=result.error,
                                  failure=FailureKind.ADVISOR_UNAVAILABLE, cause=_cause(result), trail=trail)
            if not suggestion.fix_command:
                frame.move(HealState.TERMINALLY_FAILED)
                self.status(f"{C_DIM}?{C_RESET}", "No fix suggested" +
                            (f": {suggestion.explanation}" if suggestion.explanation else "."))
                return HealResult(succeeded=False, error=result.error,
                                  failure=FailureKind.NO_FIX, cause=_cause(result), trail=trail)

            frame.move(HealState.FIX_PROPOSED)
            self.status(f"{C_YELLOW}\U0001f4a1{C_RESET}",
                        f"{C_YELLOW}{C_BOLD}Suggested Fix:{C_RESET} {suggestion.fix_command}")
            if suggestion.explanation:
                self.status(f"{C_DIM}\U0001f4dd{C_RESET}", f"{C_DIM}{C_ITALIC}{suggestion.explanation}{C_RESET}")

            attempt.accepted = bool(self.confirm("Apply this fix?"))
            if not attempt.accepted:
                frame.move(HealState.TERMINALLY_FAILED)
                return HealResult(succeeded=False, error=result.error,
                                  failure=FailureKind.DECLINED, cause=_cause(result), trail=trail)

            frame.move(HealState.APPLYING_FIX)
            accepted += 1
            # Fixes always run in the foreground so their exit status is seen
            stack.append(_Frame(suggestion.fix_command, Mode.SAME_TERMINAL.value))

        raise AssertionError("unreachable: heal stack emptied without a result")


def _oneline(text):
    """Squash multi-line stderr onto one status line."""
    text = " | ".join(line.strip() for line in (text or "").strip().splitlines() if line.strip())
    return text or "(no error output)"


def _cause(result):
    return FailureKind.EXECUTION if result.spawned else FailureKind.PRECONDITION
