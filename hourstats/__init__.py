"""hourstats - periodic feed sentiment pipeline coordinated through Redis run state."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("hourstats")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for development without install
