"""Top-level package for voicejournal."""

from . import capture, client, config, session, storage, transcriber

__version__ = "0.1.0"

__all__ = ["capture", "client", "config", "session", "storage", "transcriber", "__version__"]
