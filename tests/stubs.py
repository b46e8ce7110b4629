"""Stand-ins for the external remote-shell and tunnel tools.

Each stub is a small Python script run with the current interpreter, so the
tests need neither node nor network access.
"""

import sys
import textwrap
from pathlib import Path

REMOTE_SHELL = textwrap.dedent(
    """
    import argparse
    import subprocess
    import sys
    import time

    parser = argparse.ArgumentParser()
    parser.add_argument("-s", dest="seed")
    parser.add_argument("-u", dest="user")
    parser.add_argument("-e", dest="command")
    args = parser.parse_args()

    if args.command is None:
        # Interactive mode: echo stdin back line by line
        while True:
            line = sys.stdin.readline()
            if not line:
                break
            sys.stdout.write("echo: " + line)
            sys.stdout.flush()
        sys.exit(0)

    if args.command == "fail":
        sys.stderr.write("remote: command not found\\n")
        sys.exit(2)
    if args.command == "reset":
        sys.stderr.write("read: Connection reset by peer\\n")
        sys.exit(255)
    if args.command == "whoami":
        sys.stdout.write(args.user + "@" + args.seed + "\\n")
        sys.exit(0)
    if args.command == "hang":
        time.sleep(30)

    result = subprocess.run(["sh", "-c", args.command], capture_output=True, text=True)
    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)
    sys.exit(result.returncode)
    """
)

TUNNEL = textwrap.dedent(
    """
    import signal
    import sys
    import time

    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
    while True:
        time.sleep(0.1)
    """
)


def write_stub(directory: Path, name: str, source: str) -> str:
    """Write a stub script and return a command line that runs it."""
    path = Path(directory) / name
    path.write_text(source)
    return f"{sys.executable} {path}"


def remote_shell_command(directory: Path) -> str:
    return write_stub(directory, "remote_shell_stub.py", REMOTE_SHELL)


def tunnel_command(directory: Path) -> str:
    return write_stub(directory, "tunnel_stub.py", TUNNEL)
