"""Small filesystem helpers shared by the store and the CLI."""

import os
from pathlib import Path


def get_couplehabits_home() -> Path:
    """Directory holding the local database.

    ``COUPLEHABITS_HOME`` overrides the default ``~/.couplehabits``.
    """
    override = os.environ.get("COUPLEHABITS_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".couplehabits"
