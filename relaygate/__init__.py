"""Session-pinned reverse proxy gateway."""

from .app import create_app
from .config import Settings

__version__ = "0.1.0"

__all__ = ["create_app", "Settings", "__version__"]
