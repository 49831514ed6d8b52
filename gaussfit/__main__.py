"""Allow running the package with ``python -m gaussfit``."""

from .main import entry_point

entry_point()
