from functools import lru_cache

from rich.console import Console


@lru_cache(maxsize=1)
def get_console() -> Console:
    """Shared console used for all autoprov output"""
    return Console(highlight=False)
