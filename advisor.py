"""Fix advisors: ask a language model for a command that fixes a failed one.

The healer only sees the FixAdvisor interface:

    suggest_fix(command, error_text, meta) -> FixSuggestion

Backends raise AdvisorError for transport and parse problems; suggest_fix()
turns those into an unavailable FixSuggestion so the healing loop never has
to deal with HTTP exceptions. Credentials are constructor arguments.
"""

import json
import os
import platform
from abc import ABC, abstractmethod

import httpx

from protocol import (
    DEFAULT_CLAUDE_API_URL, DEFAULT_CLAUDE_MODEL,
    DEFAULT_OLLAMA_MODEL, DEFAULT_OLLAMA_URL,
    DEFAULT_OPENAI_API_URL, DEFAULT_OPENAI_MODEL,
    AdvisorError, FixSuggestion,
)
from scrubber import scrub

SYSTEM_PROMPT = "You are a terminal assistant that always suggests shell command fixes."

SUGGEST_FIX_TOOL = {
    "type": "function",
    "function": {
        "name": "suggest_fix",
        "description": "Suggest a terminal command to fix a given error",
        "parameters": {
            "type": "object",
            "properties": {
                "fix": {
                    "type": "string",
                    "description": "The terminal command to fix the issue",
                },
                "explanation": {
                    "type": "string",
                    "description": "Explanation of why this fix works",
                },
            },
            "required": ["fix", "explanation"],
        },
    },
}

JSON_INSTRUCTIONS = (
    "Respond with a single JSON object and nothing else:\n"
    '{"fix": "<shell command>", "explanation": "<why this fixes it>"}\n'
    'If no command can fix it, use an empty string for "fix".'
)


# --- Prompt / response helpers ---

def build_prompt(command, error_text, meta="", os_name=None):
    os_name = os_name or platform.system().lower()
    prompt = (
        f"I ran this command: {command}\n"
        f"It failed with this error: {error_text}\n"
        f"I am on this OS: {os_name}."
    )
    if meta:
        prompt += f"\nNote: {meta}"
    return prompt


def parse_llm_response(raw):
    """Pull the JSON object out of a model reply (fences and chatter allowed)."""
    text = raw.strip()
    if text.startswith("```"):
        text = "\n".join(text.split("\n")[1:])
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    if not text.startswith("{"):
        start = text.find("{")
        end = text.rfind("}") + 1
        if start >= 0 and end > start:
            text = text[start:end]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AdvisorError(f"Invalid JSON from model: {e}") from e
    if not isinstance(data, dict):
        raise AdvisorError("Model reply is not a JSON object")
    return data


def to_suggestion(data):
    """Build a FixSuggestion from a {"fix", "explanation"} mapping."""
    if not isinstance(data, dict) or "fix" not in data:
        raise AdvisorError("Model reply has no 'fix' field")
    fix = data.get("fix") or ""
    if not isinstance(fix, str):
        raise AdvisorError("'fix' must be a string")
    return FixSuggestion(
        fix_command=fix.strip(),
        explanation=str(data.get("explanation") or "").strip(),
        available=True,
    )


# --- Interface ---

class FixAdvisor(ABC):
    """Suggests a replacement command for one that failed."""

    scrub_errors = True

    def suggest_fix(self, command, error_text, meta=""):
        if self.scrub_errors:
            error_text, _ = scrub(error_text)
        try:
            return self._suggest(command, error_text, meta)
        except AdvisorError as e:
            return FixSuggestion.unavailable(str(e))
        except httpx.HTTPError as e:
            return FixSuggestion.unavailable(f"Failed to contact {self.name}: {e}")

    @property
    def name(self):
        return type(self).__name__

    @abstractmethod
    def _suggest(self, command, error_text, meta):
        ...


class UnavailableAdvisor(FixAdvisor):
    """Stand-in used when no backend is configured. Never has a fix."""

    def __init__(self, reason):
        self.reason = reason

    def _suggest(self, command, error_text, meta):
        return FixSuggestion.unavailable(self.reason)


class CallableAdvisor(FixAdvisor):
    """Wraps `def advisor(command, error, meta)` from a config file.

    The function may return a dict with fix/explanation, a (fix, explanation)
    tuple, or None for "no idea".
    """

    def __init__(self, fn, scrub_errors=True):
        self.fn = fn
        self.scrub_errors = scrub_errors

    @property
    def name(self):
        return getattr(self.fn, "__name__", "custom advisor")

    def _suggest(self, command, error_text, meta):
        try:
            result = self.fn(command, error_text, meta)
        except Exception as e:
            raise AdvisorError(f"Custom advisor raised: {e}") from e
        if result is None:
            return FixSuggestion.unavailable("Custom advisor returned nothing")
        if isinstance(result, FixSuggestion):
            return result
        if isinstance(result, (tuple, list)) and len(result) == 2:
            result = {"fix": result[0], "explanation": result[1]}
        return to_suggestion(result)


class OpenAIAdvisor(FixAdvisor):
    """OpenAI-compatible chat completions with a forced suggest_fix tool call."""

    name = "OpenAI"

    def __init__(self, api_key, model=None, api_url=None, timeout=30, scrub_errors=True):
        if not api_key:
            raise ValueError("OpenAIAdvisor needs an api_key")
        self.api_key = api_key
        self.model = model or DEFAULT_OPENAI_MODEL
        self.api_url = (api_url or DEFAULT_OPENAI_API_URL).rstrip("/")
        self.timeout = timeout
        self.scrub_errors = scrub_errors

    def _suggest(self, command, error_text, meta):
        resp = httpx.post(
            self.api_url + "/chat/completions",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(command, error_text, meta)},
                ],
                "tools": [SUGGEST_FIX_TOOL],
                "tool_choice": {"type": "function", "function": {"name": "suggest_fix"}},
            },
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise AdvisorError(f"OpenAI API error {resp.status_code}: {resp.text[:200]}")
        try:
            message = resp.json()["choices"][0]["message"]
            arguments = message["tool_calls"][0]["function"]["arguments"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise AdvisorError(f"Invalid OpenAI response format: {e}") from e
        try:
            data = json.loads(arguments)
        except (json.JSONDecodeError, TypeError) as e:
            raise AdvisorError(f"Invalid OpenAI JSON format: {e}") from e
        return to_suggestion(data)


class ClaudeAdvisor(FixAdvisor):
    name = "Claude"

    def __init__(self, api_key, model=None, api_url=None, timeout=30, scrub_errors=True):
        if not api_key:
            raise ValueError("ClaudeAdvisor needs an api_key")
        self.api_key = api_key
        self.model = model or DEFAULT_CLAUDE_MODEL
        self.api_url = api_url or DEFAULT_CLAUDE_API_URL
        self.timeout = timeout
        self.scrub_errors = scrub_errors

    def _suggest(self, command, error_text, meta):
        resp = httpx.post(
            self.api_url,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json={
                "model": self.model,
                "max_tokens": 1024,
                "system": SYSTEM_PROMPT,
                "messages": [{
                    "role": "user",
                    "content": build_prompt(command, error_text, meta) + "\n\n" + JSON_INSTRUCTIONS,
                }],
            },
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise AdvisorError(f"Claude API error {resp.status_code}: {resp.text[:200]}")
        try:
            text = resp.json()["content"][0]["text"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise AdvisorError(f"Invalid Claude response format: {e}") from e
        return to_suggestion(parse_llm_response(text))


class OllamaAdvisor(FixAdvisor):
    name = "Ollama"

    def __init__(self, model=None, url=None, timeout=60, scrub_errors=False):
        self.model = model or DEFAULT_OLLAMA_MODEL
        self.url = url or DEFAULT_OLLAMA_URL
        self.timeout = timeout
        # Local model, nothing leaves the machine
        self.scrub_errors = scrub_errors

    def _suggest(self, command, error_text, meta):
        prompt = f"{SYSTEM_PROMPT}\n\n{build_prompt(command, error_text, meta)}\n\n{JSON_INSTRUCTIONS}"
        resp = httpx.post(
            self.url,
            json={"model": self.model, "prompt": prompt, "stream": False, "format": "json"},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise AdvisorError(f"Ollama error {resp.status_code}: {resp.text[:200]}")
        try:
            text = resp.json()["response"]
        except (KeyError, TypeError, ValueError) as e:
            raise AdvisorError(f"Invalid Ollama response format: {e}") from e
        return to_suggestion(parse_llm_response(text))


def ollama_available(url=None):
    try:
        base = (url or DEFAULT_OLLAMA_URL).split("/api/")[0]
        resp = httpx.get(base + "/api/tags", timeout=2)
        return resp.status_code == 200
    except httpx.HTTPError:
        return False


# --- Backend resolution ---

KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "custom": "ZUP_API_KEY",
}


def get_api_key(key_type, env=None, config_dir=None):
    """Look up an API key: environment > ~/.zup/<type>_key file."""
    env = os.environ if env is None else env
    key = env.get(KEY_ENV_VARS.get(key_type, ""), "")
    if not key and config_dir:
        keyfile = os.path.join(config_dir, f"{key_type}_key")
        if os.path.exists(keyfile):
            with open(keyfile) as f:
                key = f.read().strip()
    return key


def resolve_advisor(cfg, env=None, config_dir=None):
    """Pick a FixAdvisor from config.

    Priority: custom advisor fn > explicit backend > OpenAI key >
    Anthropic key > running Ollama. With nothing usable an UnavailableAdvisor
    is returned so the runner still works, it just can't heal.
    """
    scrub_errors = cfg.get("scrub", True)
    backend = cfg.get("backend") or "auto"

    fn = cfg.get("advisor")
    if callable(fn) and backend in ("auto", "custom"):
        return CallableAdvisor(fn, scrub_errors=scrub_errors)
    if backend == "custom":
        return UnavailableAdvisor("backend = 'custom' but no advisor function is defined")

    if backend == "ollama":
        if ollama_available(cfg.get("ollama_url")):
            return OllamaAdvisor(cfg.get("ollama_model"), cfg.get("ollama_url"))
        return UnavailableAdvisor("Ollama is not running")

    explicit_key = cfg.get("api_key") or ""
    if backend in ("auto", "openai"):
        key = explicit_key or get_api_key("custom", env, config_dir) or get_api_key("openai", env, config_dir)
        if key:
            return OpenAIAdvisor(key, cfg.get("openai_model"), cfg.get("openai_api_url"),
                                 scrub_errors=scrub_errors)
        if backend == "openai":
            return UnavailableAdvisor("Missing OPENAI_API_KEY")

    if backend in ("auto", "claude"):
        key = explicit_key or get_api_key("anthropic", env, config_dir)
        if key:
            return ClaudeAdvisor(key, cfg.get("model"), scrub_errors=scrub_errors)
        if backend == "claude":
            return UnavailableAdvisor("Missing ANTHROPIC_API_KEY")

    if backend != "auto":
        return UnavailableAdvisor(f"Unknown backend: {backend}")
    if ollama_available(cfg.get("ollama_url")):
        return OllamaAdvisor(cfg.get("ollama_model"), cfg.get("ollama_url"))
    return UnavailableAdvisor("Missing OPENAI_API_KEY (or ANTHROPIC_API_KEY, or a running Ollama)")
