"""Loguru logging for repokit.

Library modules log through ``get_logger(__name__)``. Records from repokit are
disabled at import and sinks are left alone; ``configure_logger()`` installs
repokit's sink and enables its records.
"""

import sys

import typing as t
from loguru import logger as _logger

from .config import Settings

if t.TYPE_CHECKING:
    from loguru import Logger

_logger.disable("repokit")


class LoggerSettings(Settings):
    """Logger configuration (``settings/logger.yaml``)."""

    verbose: bool = False
    log_level: str = "INFO"
    serialize: bool = False
    colorize: bool = True
    format: dict[str, str] = {
        "time": "<b><e>[</e> <w>{time:YYYY-MM-DD HH:mm:ss.SSS}</w> <e>]</e></b>",
        "level": " <level>{level:>8}</level>",
        "sep": " <b><w>in</w></b> ",
        "name": "<b>{extra[mod_name]:>20}</b>",
        "line": "<b><e>[</e><w>{line:^5}</w><e>]</e></b>",
        "message": "  <level>{message}</level>",
    }
    level_per_module: dict[str, str] = {}

    @property
    def level(self) -> str:
        return "DEBUG" if self.verbose else self.log_level


def get_logger(name: str) -> "Logger":
    """Return the loguru logger bound to a module name."""
    return _logger.bind(mod_name=name.removeprefix("repokit."))


def configure_logger(settings: LoggerSettings | None = None) -> int:
    """Replace loguru's sinks with a stderr sink built from ``settings``.

    Also enables records from repokit modules, which are off until then.

    Returns the sink id so callers can remove it again.
    """
    settings = settings or LoggerSettings()
    levels = {name: level.upper() for name, level in settings.level_per_module.items()}

    def _filter(record: t.Any) -> bool:
        mod_name = record["extra"].get("mod_name", "")
        threshold = levels.get(mod_name)
        if threshold is None:
            return True
        return record["level"].no >= _logger.level(threshold).no

    _logger.remove()
    _logger.enable("repokit")
    _logger.configure(extra={"mod_name": "repokit"})
    return _logger.add(
        sys.stderr,
        level=settings.level,
        format="".join(settings.format.values()),
        filter=_filter,
        colorize=settings.colorize and not settings.serialize,
        serialize=settings.serialize,
        backtrace=False,
        diagnose=False,
    )
