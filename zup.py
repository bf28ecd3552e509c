#!/usr/bin/env python3
"""zup -- local setup runner that fixes its own failed steps.

Usage:
    zup run                             Run the steps in ./zup.yaml
    zup init                            Write a starter zup.yaml

Options:
    zup run -f FILE                     Use another steps file
    zup run -y, --yes                   Apply suggested fixes without asking
    zup run --max-fixes N               Give up on a step after N applied fixes
    zup run -m MODEL                    Use a specific model
    zup run --local                     Force the Ollama backend

Config:
    ~/.zup/config.py                    Global config (Python)
    .zup.py                             Project config (overrides global)

    Config vars: backend, model, openai_model, openai_api_url, api_key,
                 ollama_model, ollama_url, poll_attempts, poll_interval,
                 max_fixes, scrub, auto_yes, config_file, log_file

    A `def advisor(command, error, meta)` in a config file replaces the LLM.

Keys:
    OPENAI_API_KEY, ANTHROPIC_API_KEY or ZUP_API_KEY (or ~/.zup/<kind>_key)
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from advisor import resolve_advisor
from console import status, ask_yes_no, C_RESET, C_RED, C_GREEN, C_CYAN, C_DIM, C_BOLD
from healer import Healer
from protocol import (
    BACKGROUND_LOG, DEFAULT_CLAUDE_MODEL, DEFAULT_CONFIG_FILE,
    DEFAULT_OLLAMA_MODEL, DEFAULT_OLLAMA_URL,
    DEFAULT_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL, ConfigError,
)
from steps import load_steps, sample_config

# --- Config (Python) ---

CONFIG_DIR = os.path.expanduser("~/.zup")

DEFAULTS = {
    "backend": "auto",  # auto | openai | claude | ollama | custom
    "model": DEFAULT_CLAUDE_MODEL,
    "openai_model": "",
    "openai_api_url": "",
    "api_key": "",
    "ollama_model": DEFAULT_OLLAMA_MODEL,
    "ollama_url": DEFAULT_OLLAMA_URL,
    "advisor": None,     # custom fix function: f(command, error, meta) -> dict
    "poll_attempts": DEFAULT_POLL_ATTEMPTS,
    "poll_interval": DEFAULT_POLL_INTERVAL,
    "max_fixes": None,   # None = keep going while fixes are accepted
    "scrub": True,       # redact secrets from errors before they leave the machine
    "auto_yes": False,
    "config_file": DEFAULT_CONFIG_FILE,
    "log_file": BACKGROUND_LOG,
}


def _exec_config(path):
    """Execute a Python config file and return its namespace as a dict."""
    ns = {"__builtins__": __builtins__}
    try:
        with open(path) as f:
            exec(f.read(), ns)
    except FileNotFoundError:
        return {}
    except Exception as e:
        print(f"  {C_RED}\u2717{C_RESET}  Error in {path}: {e}", file=sys.stderr)
        return {}
    return {k: v for k, v in ns.items() if not k.startswith("_")}


def _find_project_config(start=None):
    """Walk up from CWD to find .zup.py (stops at git root or /)."""
    d = start or os.getcwd()
    while True:
        candidate = os.path.join(d, ".zup.py")
        if os.path.isfile(candidate):
            return candidate
        if os.path.isdir(os.path.join(d, ".git")):
            break
        parent = os.path.dirname(d)
        if parent == d:
            break
        d = parent
    return None


def load_config(config_dir=None):
    """Load config: defaults <- ~/.zup/config.py <- .zup.py (project-local)."""
    cfg = dict(DEFAULTS)
    cfg.update(_exec_config(os.path.join(config_dir or CONFIG_DIR, "config.py")))
    project_path = _find_project_config()
    if project_path:
        cfg.update(_exec_config(project_path))
        cfg["_project_config"] = project_path
    return cfg


# --- Runner ---

def execute_step(step, healer):
    """Announce a step, heal it, report the outcome. Returns the HealResult."""
    print(file=sys.stderr)
    status(f"{C_CYAN}\U0001f527{C_RESET}", f"{C_CYAN}{C_BOLD}Step:{C_RESET} {step.description}")
    status(f"{C_CYAN} {C_RESET}", f"{C_CYAN}{C_BOLD}Command:{C_RESET} {step.command}")
    result = healer.heal(step.command, step.meta, step.mode)
    if result.succeeded:
        status(f"{C_GREEN}\u2714{C_RESET}", f"{C_GREEN}Done{C_RESET}" +
               (f" {C_DIM}({result.fixes_applied} fix(es) applied){C_RESET}" if result.fixes_applied else ""))
    else:
        error = result.error.strip() or "(no error output)"
        status(f"{C_RED}\u2717{C_RESET}",
               f"{C_RED}{C_BOLD}Command ultimately failed after all fixes:{C_RESET} {error}")
    return result


def run_setup(steps, healer):
    """Run every step in order; a failed step doesn't stop the next one.

    Returns the number of failed steps.
    """
    failed = []
    for step in steps:
        if not execute_step(step, healer).succeeded:
            failed.append(step)
    print(file=sys.stderr)
    if failed:
        status(f"{C_RED}\u2717{C_RESET}",
               f"{len(failed)} of {len(steps)} step(s) failed: " +
               ", ".join(s.description for s in failed))
    else:
        status(f"{C_GREEN}\u2714{C_RESET}", f"{C_GREEN}All {len(steps)} step(s) succeeded.{C_RESET}")
    return len(failed)


def _setting(cfg, key, default):
    """cfg[key] unless it is missing or None; 0 is a real value."""
    value = cfg.get(key)
    return default if value is None else value


def build_healer(cfg, advisor=None):
    if advisor is None:
        advisor = resolve_advisor(cfg, config_dir=CONFIG_DIR)
    if cfg.get("auto_yes"):
        def confirm(prompt):
            status(f"{C_GREEN}?{C_RESET}", f"{prompt} {C_DIM}yes (--yes){C_RESET}")
            return True
    else:
        confirm = ask_yes_no
    return Healer(
        advisor,
        confirm=confirm,
        poll_attempts=int(_setting(cfg, "poll_attempts", DEFAULT_POLL_ATTEMPTS)),
        poll_interval=float(_setting(cfg, "poll_interval", DEFAULT_POLL_INTERVAL)),
        max_fixes=cfg.get("max_fixes"),
        log_path=cfg.get("log_file") or BACKGROUND_LOG,
    )


def cmd_run(cfg):
    try:
        steps = load_steps(cfg["config_file"])
    except ConfigError as e:
        status(f"{C_RED}!{C_RESET}", f"Failed to load {cfg['config_file']}: {e}")
        return 1
    if not steps:
        status(f"{C_DIM}?{C_RESET}", f"No steps in {cfg['config_file']}.")
        return 0
    healer = build_healer(cfg)
    return 1 if run_setup(steps, healer) else 0


def cmd_init(path=DEFAULT_CONFIG_FILE):
    if os.path.exists(path):
        status(f"{C_RED}!{C_RESET}", f"{path} already exists, not overwriting.")
        return 1
    with open(path, "w") as f:
        f.write(sample_config())
    status(f"{C_GREEN}\u2714{C_RESET}", f"Wrote {path}. Edit it, then run: zup run")
    return 0


# --- CLI ---

def parse_run_args(args, cfg):
    """Apply `zup run` flags to cfg. Returns an error message or None."""
    i = 0
    while i < len(args):
        a = args[i]
        if a in ("-y", "--yes"):
            cfg["auto_yes"] = True
        elif a in ("--local", "--ollama"):
            cfg["backend"] = "ollama"
        elif a.startswith("--file="):
            cfg["config_file"] = a.split("=", 1)[1]
        elif a in ("-f", "--file") and i + 1 < len(args):
            i += 1
            cfg["config_file"] = args[i]
        elif a.startswith("--model="):
            cfg["model"] = cfg["openai_model"] = cfg["ollama_model"] = a.split("=", 1)[1]
        elif a in ("-m", "--model") and i + 1 < len(args):
            i += 1
            cfg["model"] = cfg["openai_model"] = cfg["ollama_model"] = args[i]
        elif a.startswith("--max-fixes=") or (a == "--max-fixes" and i + 1 < len(args)):
            if "=" in a:
                value = a.split("=", 1)[1]
            else:
                i += 1
                value = args[i]
            try:
                cfg["max_fixes"] = int(value)
            except ValueError:
                return f"--max-fixes expects a number, got {value!r}"
            if cfg["max_fixes"] < 0:
                return "--max-fixes must be 0 or more"
        else:
            return f"unknown option: {a}"
        i += 1
    return None


def main(argv=None):
    args = sys.argv[1:] if argv is None else list(argv)
    if not args or args[0] in ("-h", "--help", "help"):
        print(__doc__.strip())
        return 0

    if args[0] == "init":
        return cmd_init()
    if args[0] != "run":
        status(f"{C_RED}!{C_RESET}", f"Unknown command: {args[0]} (try: zup run)")
        return 1

    cfg = load_config()
    error = parse_run_args(args[1:], cfg)
    if error:
        status(f"{C_RED}!{C_RESET}", error)
        return 1
    try:
        return cmd_run(cfg)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        status(f"{C_DIM}\u25b8{C_RESET}", "Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
