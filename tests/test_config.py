"""Tests for settings loading and the dependency container."""

import pytest
from pydantic import Field

from repokit.config import Settings, deep_update, get_settings_path
from repokit.depends import depends
from repokit.repository import RepositorySettings


class ExampleServiceSettings(Settings):
    name: str = "default"
    retries: int = Field(default=3, ge=0)
    options: dict[str, int] = {"a": 1, "b": 2}


class TestDeepUpdate:
    def test_nested_merge(self):
        merged = deep_update({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}

    def test_later_wins_for_scalars(self):
        assert deep_update({"a": 1}, {"a": {"b": 2}}) == {"a": {"b": 2}}

    def test_ignores_non_dicts(self):
        assert deep_update({"a": 1}, None) == {"a": 1}


class TestSettings:
    """Defaults, then YAML file, then keyword arguments."""

    def test_settings_name(self):
        assert ExampleServiceSettings.settings_name() == "example_service"
        assert ExampleServiceSettings.settings_file() == "example_service.yaml"
        assert RepositorySettings.settings_name() == "repository"

    def test_settings_path_from_environment(self, isolated_settings_path):
        assert get_settings_path() == isolated_settings_path

    def test_defaults(self):
        settings = ExampleServiceSettings()
        assert settings.name == "default"
        assert settings.retries == 3

    def test_yaml_overrides_defaults(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text(
            "name: from-yaml\noptions:\n  b: 20\n"
        )
        settings = ExampleServiceSettings()
        assert settings.name == "from-yaml"
        assert settings.options == {"b": 20}

    def test_keywords_override_yaml(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text(
            "name: from-yaml\nretries: 5\n"
        )
        settings = ExampleServiceSettings(name="explicit")
        assert settings.name == "explicit"
        assert settings.retries == 5

    def test_explicit_settings_path(self, tmp_path):
        (tmp_path / "example_service.yaml").write_text("retries: 9\n")
        assert ExampleServiceSettings(_settings_path=tmp_path).retries == 9

    def test_validation(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text("retries: -1\n")
        with pytest.raises(ValueError):
            ExampleServiceSettings()

    def test_yaml_must_be_a_mapping(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            ExampleServiceSettings()

    def test_empty_yaml(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text("")
        assert ExampleServiceSettings().name == "default"

    def test_unknown_keys_ignored(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text("unknown: 1\n")
        assert not hasattr(ExampleServiceSettings(), "unknown")

    @pytest.mark.asyncio
    async def test_create_async(self, isolated_settings_path):
        (isolated_settings_path / "example_service.yaml").write_text("retries: 7\n")
        settings = await ExampleServiceSettings.create_async(name="async")
        assert settings.retries == 7
        assert settings.name == "async"


class TestDepends:
    def test_set_builds_instance(self):
        instance = depends.set(ExampleServiceSettings)
        assert isinstance(instance, ExampleServiceSettings)
        assert depends.get_sync(ExampleServiceSettings) is instance

    def test_set_explicit_instance(self):
        instance = ExampleServiceSettings(name="registered")
        depends.set(ExampleServiceSettings, instance)
        assert depends.get_sync(ExampleServiceSettings).name == "registered"

    @pytest.mark.asyncio
    async def test_async_get(self):
        instance = depends.set(ExampleServiceSettings, ExampleServiceSettings())
        assert await depends.get(ExampleServiceSettings) is instance

    def test_repository_settings_registered(self):
        assert depends.get_sync(RepositorySettings).cache_enabled is True
