"""Tests for healer.py -- the fix-apply-retry loop.

Most tests script the runner and advisor; the last class runs real bash.
"""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from conftest import FakeAdvisor, FakeRunner, ok, fail
from healer import Healer
from protocol import ExecutionResult, FailureKind, FixSuggestion


def fix(cmd, why="because"):
    return FixSuggestion(fix_command=cmd, explanation=why)


class Confirm:
    def __init__(self, *answers, default=True):
        self.answers = list(answers)
        self.default = default
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else self.default


class Poll:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def __call__(self, binary, attempts, interval):
        self.calls.append((binary, attempts, interval))
        return self.result


def make_healer(runner, advisor, confirm=None, poll=None, quiet=None, **kw):
    return Healer(advisor, confirm=confirm or Confirm(), runner=runner,
                  poll=poll or Poll(), status_fn=quiet or (lambda i, m: None), **kw)


# --- Termination ---

class TestTermination:
    def test_success_first_try(self, quiet):
        runner = FakeRunner({"make": [ok()]})
        advisor = FakeAdvisor()
        result = make_healer(runner, advisor, quiet=quiet).heal("make")
        assert result.succeeded
        assert result.error == ""
        assert result.failure is None
        assert advisor.calls == []
        assert len(result.trail) == 1

    def test_advisor_unavailable_is_terminal(self, quiet):
        runner = FakeRunner({"make": [fail("boom")]})
        advisor = FakeAdvisor()
        confirm = Confirm()
        result = make_healer(runner, advisor, confirm=confirm, quiet=quiet).heal("make")
        assert not result.succeeded
        assert result.error == "boom"
        assert result.failure == FailureKind.ADVISOR_UNAVAILABLE
        assert result.cause == FailureKind.EXECUTION
        assert len(advisor.calls) == 1
        assert runner.calls == [("make", "same-terminal")]
        assert confirm.prompts == []
        assert any("Missing OPENAI_API_KEY" in m for m in quiet.messages)

    def test_user_declines(self):
        runner = FakeRunner({"make": [fail("boom")]})
        advisor = FakeAdvisor({"make": fix("make clean && make")})
        result = make_healer(runner, advisor, confirm=Confirm(False)).heal("make")
        assert not result.succeeded
        assert result.error == "boom"
        assert result.failure == FailureKind.DECLINED
        assert result.trail[0].accepted is False
        assert runner.calls == [("make", "same-terminal")]

    def test_empty_fix_ends_without_prompt(self):
        runner = FakeRunner({"make": [fail("boom")]})
        advisor = FakeAdvisor({"make": fix("", "nothing to do here")})
        confirm = Confirm()
        result = make_healer(runner, advisor, confirm=confirm).heal("make")
        assert result.failure == FailureKind.NO_FIX
        assert result.error == "boom"
        assert confirm.prompts == []

    def test_precondition_failure_cause(self):
        precondition = ExecutionResult(succeeded=False, spawned=False, error="binary 'toolx' not found in PATH")
        runner = FakeRunner({"toolx serve": [precondition]})
        result = make_healer(runner, FakeAdvisor()).heal("toolx serve", mode="background")
        assert result.cause == FailureKind.PRECONDITION
        assert "toolx" in result.error


# --- Fix application ---

class TestFixApplication:
    def test_one_fix_then_success(self, quiet):
        runner = FakeRunner({"make": [fail("no gcc"), ok()], "apt install gcc": [ok()]})
        advisor = FakeAdvisor({"make": fix("apt install gcc")})
        result = make_healer(runner, advisor, quiet=quiet).heal("make")
        assert result.succeeded
        assert [c for c, _ in runner.calls] == ["make", "apt install gcc", "make"]
        assert result.fixes_applied == 1
        assert len(advisor.calls) == 1
        assert any("Retrying original command" in m for m in quiet.messages)

    def test_advisor_gets_command_error_and_meta(self):
        runner = FakeRunner({"make": [fail("no gcc"), ok()], "apt install gcc": [ok()]})
        advisor = FakeAdvisor({"make": fix("apt install gcc")})
        make_healer(runner, advisor).heal("make", meta="ubuntu box")
        assert advisor.calls == [("make", "no gcc", "ubuntu box")]

    def test_fix_reuses_meta(self):
        runner = FakeRunner({"a": [fail("e1"), ok()], "b": [fail("e2"), ok()], "c": [ok()]})
        advisor = FakeAdvisor({"a": fix("b"), "b": fix("c")})
        make_healer(runner, advisor).heal("a", meta="hint")
        assert [m for _, _, m in advisor.calls] == ["hint", "hint"]

    def test_failed_fix_masks_original_error(self):
        # Keeps the fix's own diagnostic instead of the original one
        runner = FakeRunner({"make": [fail("original")], "bad fix": [fail("fix broke")]})
        advisor = FakeAdvisor({"make": fix("bad fix")})
        result = make_healer(runner, advisor).heal("make")
        assert not result.succeeded
        assert result.error == "fix broke"
        assert result.failure == FailureKind.ADVISOR_UNAVAILABLE
        assert [c for c, _, _ in advisor.calls] == ["make", "bad fix"]

    def test_declined_fix_of_fix_masks_original(self):
        runner = FakeRunner({"make": [fail("original")], "fix1": [fail("fix1 broke")]})
        advisor = FakeAdvisor({"make": fix("fix1"), "fix1": fix("fix2")})
        result = make_healer(runner, advisor, confirm=Confirm(True, False)).heal("make")
        assert result.error == "fix1 broke"
        assert result.failure == FailureKind.DECLINED

    def test_nested_fixes_unwind_in_order(self):
        runner = FakeRunner({
            "make": [fail("no gcc"), ok()],
            "apt install gcc": [fail("locked"), ok()],
            "rm /var/lib/dpkg/lock": [ok()],
        })
        advisor = FakeAdvisor({
            "make": fix("apt install gcc"),
            "apt install gcc": fix("rm /var/lib/dpkg/lock"),
        })
        result = make_healer(runner, advisor).heal("make")
        assert result.succeeded
        assert [(a.command, a.depth) for a in result.trail] == [
            ("make", 0),
            ("apt install gcc", 1),
            ("rm /var/lib/dpkg/lock", 2),
            ("apt install gcc", 1),
            ("make", 0),
        ]
        assert result.fixes_applied == 2

    def test_repeated_fixes_for_original(self):
        runner = FakeRunner({"make": [fail("e1"), fail("e2"), ok()], "f": [ok()]})
        advisor = FakeAdvisor({"make": fix("f")})
        result = make_healer(runner, advisor).heal("make")
        assert result.succeeded
        assert [e for _, e, _ in advisor.calls] == ["e1", "e2"]
        assert result.fixes_applied == 2

    def test_jq_scenario(self):
        runner = FakeRunner({
            "apt-get install -y jq": [fail("E: Could not open lock file - open (13: Permission denied)"), ok()],
            "sudo apt-get install -y jq": [ok()],
        })
        advisor = FakeAdvisor({"apt-get install -y jq": fix("sudo apt-get install -y jq", "needs root")})
        result = make_healer(runner, advisor).heal("apt-get install -y jq", mode="same-terminal")
        assert result.succeeded
        assert [c for c, _ in runner.calls] == [
            "apt-get install -y jq", "sudo apt-get install -y jq", "apt-get install -y jq",
        ]


# --- Modes and readiness polling ---

class TestBackgroundMode:
    def test_fix_runs_in_foreground(self):
        runner = FakeRunner({"toolx serve": [fail("missing"), ok()], "brew install toolx": [ok()]})
        advisor = FakeAdvisor({"toolx serve": fix("brew install toolx")})
        make_healer(runner, advisor).heal("toolx serve", mode="background")
        assert [m for _, m in runner.calls] == ["background", "same-terminal", "background"]

    def test_poll_after_background_fix(self):
        runner = FakeRunner({"toolx serve": [fail("missing"), ok()], "brew install toolx": [ok()]})
        advisor = FakeAdvisor({"toolx serve": fix("brew install toolx")})
        poll = Poll(True)
        result = make_healer(runner, advisor, poll=poll, poll_attempts=4, poll_interval=0.5) \
            .heal("toolx serve", mode="background")
        assert result.succeeded
        assert poll.calls == [("toolx", 4, 0.5)]

    def test_binary_never_appears(self, quiet):
        runner = FakeRunner({"toolx serve": [fail("missing")], "brew install toolx": [ok()]})
        advisor = FakeAdvisor({"toolx serve": fix("brew install toolx")})
        result = make_healer(runner, advisor, poll=Poll(False), quiet=quiet) \
            .heal("toolx serve", mode="background")
        assert not result.succeeded
        assert result.failure == FailureKind.BINARY_MISSING
        assert result.error == "binary 'toolx' still not found after fix"
        assert [c for c, _ in runner.calls] == ["toolx serve", "brew install toolx"]

    def test_no_poll_in_foreground(self):
        runner = FakeRunner({"make": [fail("e"), ok()], "f": [ok()]})
        poll = Poll(False)
        result = make_healer(runner, FakeAdvisor({"make": fix("f")}), poll=poll).heal("make")
        assert result.succeeded
        assert poll.calls == []

    def test_no_poll_for_nested_fix(self):
        # Only the background step itself is polled, not its fix's fix
        runner = FakeRunner({
            "toolx serve": [fail("missing"), ok()],
            "install toolx": [fail("no repo"), ok()],
            "add repo": [ok()],
        })
        advisor = FakeAdvisor({"toolx serve": fix("install toolx"), "install toolx": fix("add repo")})
        poll = Poll(True)
        make_healer(runner, advisor, poll=poll).heal("toolx serve", mode="background")
        assert poll.calls == [("toolx", 10, 1.0)]


# --- Fix limit ---

class TestFixLimit:
    def test_unbounded_by_default(self):
        runner = FakeRunner({"make": [fail("e")] * 20 + [ok()], "f": [ok()]})
        result = make_healer(runner, FakeAdvisor({"make": fix("f")})).heal("make")
        assert result.succeeded
        assert result.fixes_applied == 20

    def test_limit_reached(self):
        runner = FakeRunner({"make": [fail("e1"), fail("e2")], "f": [ok()]})
        advisor = FakeAdvisor({"make": fix("f")})
        result = make_healer(runner, advisor, max_fixes=1).heal("make")
        assert not result.succeeded
        assert result.failure == FailureKind.FIX_LIMIT
        assert result.error == "e2"
        assert len(advisor.calls) == 1

    def test_zero_means_never_ask(self):
        runner = FakeRunner({"make": [fail("e")]})
        advisor = FakeAdvisor({"make": fix("f")})
        result = make_healer(runner, advisor, max_fixes=0).heal("make")
        assert result.failure == FailureKind.FIX_LIMIT
        assert advisor.calls == []


# --- Real commands ---

class TestWithBash:
    def test_fix_creates_missing_file(self, monkeypatch, tmp_path, quiet):
        monkeypatch.chdir(tmp_path)
        advisor = FakeAdvisor({"test -f ready.flag": fix("touch ready.flag")})
        healer = Healer(advisor, confirm=Confirm(True), status_fn=quiet)
        result = healer.heal("test -f ready.flag")
        assert result.succeeded
        assert (tmp_path / "ready.flag").exists()
        assert [a.result.succeeded for a in result.trail] == [False, True, True]

    def test_real_stderr_reaches_advisor(self, monkeypatch, tmp_path, quiet):
        monkeypatch.chdir(tmp_path)
        advisor = FakeAdvisor()
        healer = Healer(advisor, confirm=Confirm(True), status_fn=quiet)
        result = healer.heal("echo 'permission denied' >&2; exit 1")
        assert not result.succeeded
        assert advisor.calls[0][1] == "permission denied\n"
        assert result.error == "permission denied\n"
