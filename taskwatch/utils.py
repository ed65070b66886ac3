"""Shared helpers for taskwatch."""

import os
from pathlib import Path


def get_taskwatch_home() -> Path:
    """Directory holding local data, logs and credentials.

    Honours ``TASKWATCH_DATA_DIR``; defaults to ``~/.taskwatch``.
    """
    override = os.environ.get("TASKWATCH_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".taskwatch"
