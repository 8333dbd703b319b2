"""
Brief: Global pytest configuration enforcing a per-test 10s timeout.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import os
import signal
import sys

import pytest

# Ensure 'src' is on sys.path so 'huebeacon' is importable without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def drop_init_logging_handlers():
    """
    Brief: Remove root handlers installed by init_logging during a test.

    Inputs:
      - None

    Outputs:
      - None
    """
    root = logging.getLogger()
    level = root.level
    yield
    from huebeacon.config.logging_config import (
        BracketLevelFormatter,
        SyslogFormatter,
    )

    for h in list(root.handlers):
        ours = isinstance(
            getattr(h, "formatter", None), (BracketLevelFormatter, SyslogFormatter)
        )
        if ours or not isinstance(h, logging.Handler):
            root.removeHandler(h)
            try:
                h.close()
            except Exception:
                pass
    root.setLevel(level)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield
