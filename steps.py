"""Loading setup steps from zup.yaml.

    setup:
      - desc: Install jq
        cmd: apt-get install -y jq
        meta: Debian based, sudo is available
      - desc: Start the API server
        cmd: uvicorn app:main --port 8000
        mode: background
"""

import os

import yaml

from protocol import DEFAULT_CONFIG_FILE, ConfigError, Step, normalize_mode

SAMPLE_CONFIG = """\
# zup.yaml -- setup steps, run in order by `zup run`
#
# desc: what the step does (shown before it runs)
# cmd:  shell command, run with bash
# meta: optional hint passed to the fix advisor when the step fails
# mode: same-terminal (default) or background (detached with nohup,
#       output goes to background_command.log)

setup:
  - desc: Check git is installed
    cmd: git --version

  - desc: Install dependencies
    cmd: echo "replace me with your install command"
    meta: describe anything unusual about this machine here

  # - desc: Start the dev server
  #   cmd: npm run dev
  #   mode: background
"""


def sample_config():
    return SAMPLE_CONFIG


def _text(value, field, where):
    if value is None:
        return ""
    if isinstance(value, (str, int, float)):
        return str(value).strip()
    raise ConfigError(f"{where}: '{field}' must be a string")


def parse_steps(data, source=DEFAULT_CONFIG_FILE):
    """Validate a parsed YAML document and turn it into Steps."""
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping with a 'setup' list")
    setup = data.get("setup")
    if setup is None:
        return []
    if not isinstance(setup, list):
        raise ConfigError(f"{source}: 'setup' must be a list of steps")

    steps = []
    for i, raw in enumerate(setup, 1):
        where = f"{source}: step {i}"
        if not isinstance(raw, dict):
            raise ConfigError(f"{where}: must be a mapping with at least 'cmd'")
        cmd = _text(raw.get("cmd"), "cmd", where)
        if not cmd:
            raise ConfigError(f"{where}: 'cmd' is required")
        steps.append(Step(
            description=_text(raw.get("desc"), "desc", where) or cmd,
            command=cmd,
            meta=_text(raw.get("meta"), "meta", where),
            mode=normalize_mode(_text(raw.get("mode"), "mode", where)),
        ))
    return steps


def load_steps(path=DEFAULT_CONFIG_FILE):
    """Read zup.yaml and return its steps in declaration order."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"{path}: file not found") from None
    except OSError as e:
        raise ConfigError(f"{path}: {e.strerror or e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    return parse_steps(data, source=os.fspath(path))
