import sys
import os

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from protocol import ExecutionResult, FixSuggestion


class FakeAdvisor:
    """Returns canned suggestions keyed by the failing command."""

    def __init__(self, fixes=None, default=None):
        self.fixes = fixes or {}
        self.default = default or FixSuggestion.unavailable("Missing OPENAI_API_KEY")
        self.calls = []

    def suggest_fix(self, command, error_text, meta=""):
        self.calls.append((command, error_text, meta))
        return self.fixes.get(command, self.default)


class FakeRunner:
    """Plays back scripted ExecutionResults per command.

    script: {command: [result, result, ...]}; the last result repeats.
    """

    def __init__(self, script):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls = []

    def __call__(self, command, mode):
        self.calls.append((command, mode))
        results = self.script[command]
        return results.pop(0) if len(results) > 1 else results[0]


def ok(output=""):
    return ExecutionResult(succeeded=True, output=output)


def fail(error):
    return ExecutionResult(succeeded=False, error=error)


@pytest.fixture
def quiet():
    """status_fn that records messages instead of printing them."""
    messages = []

    def _status(icon, msg):
        messages.append(msg)
    _status.messages = messages
    return _status
