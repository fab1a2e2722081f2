from .config import Settings
from .depends import depends
from .logger import configure_logger, get_logger

__all__ = [
    "Settings",
    "configure_logger",
    "depends",
    "get_logger",
]
