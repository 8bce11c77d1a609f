"""
The library config. Values are loaded once at import time from config.yaml and
any key can be read as an attribute of this module, e.g. config.finalizer.
"""

# Local
from .config import configure_logging, library_config


def __getattr__(name):
    if name in library_config or hasattr({}, name):
        return getattr(library_config, name)
    raise AttributeError(f"No such config attribute {name}")


__all__ = list(library_config.keys())
