"""Terminal output helpers shared by the runner, the healer and the executor."""

import sys

# --- Colors ---
C_RESET = "\033[0m"
C_RED = "\033[31m"
C_GREEN = "\033[32m"
C_YELLOW = "\033[33m"
C_BLUE = "\033[34m"
C_MAGENTA = "\033[35m"
C_CYAN = "\033[36m"
C_DIM = "\033[2m"
C_BOLD = "\033[1m"
C_ITALIC = "\033[3m"

if not sys.stderr.isatty():
    C_RESET = C_RED = C_GREEN = C_YELLOW = C_BLUE = C_MAGENTA = C_CYAN = C_DIM = C_BOLD = C_ITALIC = ""


def status(icon, msg):
    print(f"  {icon}  {msg}", file=sys.stderr)


def ask_yes_no(prompt, stream=None):
    """Ask a y/n question on stderr, read the answer from stdin.

    Only "y" and "yes" (any case) count as yes. EOF or Ctrl-C is a no.
    """
    stream = stream or sys.stdin
    sys.stderr.write(f"  {C_MAGENTA}?{C_RESET}  {C_BOLD}{prompt}{C_RESET} (y/n): ")
    sys.stderr.flush()
    try:
        answer = stream.readline()
    except (EOFError, KeyboardInterrupt, OSError):
        sys.stderr.write("\n")
        return False
    return answer.strip().lower() in ("y", "yes")
