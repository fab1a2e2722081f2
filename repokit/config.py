import os
from pathlib import Path

import rich.repr
import typing as t
import yaml
from anyio import Path as AsyncPath
from inflection import underscore
from pydantic import BaseModel
from pydantic_settings import SettingsConfigDict


def deep_update(*dicts: dict[str, t.Any]) -> dict[str, t.Any]:
    """Deep merge dictionaries, later ones winning."""
    result: dict[str, t.Any] = {}
    for d in dicts:
        if isinstance(d, dict):
            for key, value in d.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = deep_update(result[key], value)
                else:
                    result[key] = value
    return result


def get_settings_path() -> Path:
    """Directory holding ``<name>.yaml`` settings files."""
    return Path(os.getenv("REPOKIT_SETTINGS_PATH", Path.cwd() / "settings"))


def _parse_yaml(text: str, source: t.Any) -> dict[str, t.Any]:
    data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Settings file {source} must contain a mapping"
        raise ValueError(msg)
    return data


@rich.repr.auto
class Settings(BaseModel):
    """Base class for repokit settings.

    Values are merged from field defaults, ``<settings_path>/<name>.yaml`` and
    keyword arguments, in that order of precedence (lowest first). ``name`` is
    the snake-cased class name without the ``Settings`` suffix, so
    ``ResultCacheSettings`` reads ``result_cache.yaml``.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        arbitrary_types_allowed=True,
        validate_default=True,
        protected_namespaces=("model_", "settings_"),
    )

    def __init__(self, _settings_path: Path | None = None, **values: t.Any) -> None:
        yaml_path = (_settings_path or get_settings_path()) / self.settings_file()
        file_values: dict[str, t.Any] = {}
        if yaml_path.is_file():
            file_values = _parse_yaml(yaml_path.read_text(), yaml_path)
        super().__init__(**deep_update(file_values, values))

    @classmethod
    def settings_name(cls) -> str:
        return underscore(cls.__name__.removesuffix("Settings")) or "settings"

    @classmethod
    def settings_file(cls) -> str:
        return f"{cls.settings_name()}.yaml"

    @classmethod
    async def create_async(
        cls,
        _settings_path: Path | None = None,
        **values: t.Any,
    ) -> t.Self:
        """Build settings reading the YAML file without blocking the loop."""
        settings_path = AsyncPath(_settings_path or get_settings_path())
        yaml_path = settings_path / cls.settings_file()
        file_values: dict[str, t.Any] = {}
        if await yaml_path.is_file():
            file_values = _parse_yaml(await yaml_path.read_text(), yaml_path)
        instance = cls.__new__(cls)
        BaseModel.__init__(instance, **deep_update(file_values, values))
        return instance
