#!/usr/bin/env python3
"""Test runner for the attendance integrity service."""
import subprocess
import sys


def run_tests(args=None) -> int:
    """Run the suite under attendguard/ and return the exit code.

    Extra arguments are passed to pytest, e.g. ``run_tests.py -k tokens``.
    """
    command = [sys.executable, "-m", "pytest", "-q", "attendguard"]
    command.extend(args or [])
    completed = subprocess.run(command, check=False)
    if completed.returncode == 0:
        print("\nAll tests passed")
    else:
        print(f"\nTests failed with exit code {completed.returncode}")
    return completed.returncode


if __name__ == "__main__":
    raise SystemExit(run_tests(sys.argv[1:]))
