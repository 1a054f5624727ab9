"""Helpers for running a single test module directly."""

import sys


def run_tests(test_file: str) -> None:
    """Run pytest on one test file, verbose and with output shown.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)

    Extra command-line arguments are passed through (e.g. `-k quota`).
    """
    import pytest

    sys.exit(pytest.main([test_file, "-v", "-s", *sys.argv[1:]]))
