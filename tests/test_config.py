"""Tests for application and profile configuration."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from docsync.config import (
    DEFAULT_EXTENSIONS,
    AppConfig,
    EmbeddingSettings,
    ProfileConfig,
    ProfileRegistry,
    SourceSettings,
    _get_default_data_dir,
)
from docsync.errors import ProfileNotFound


class TestDefaultDataDir:
    """Resolution of the data directory."""

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("DOCSYNC_HOME", str(tmp_path / "home"))
        assert _get_default_data_dir() == tmp_path / "home"

    def test_frozen_app_uses_documents(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DOCSYNC_HOME", raising=False)
        with patch.object(sys, "frozen", True, create=True):
            assert _get_default_data_dir() == Path.home() / "Documents" / "DocSync"

    def test_local_data_dir_when_running_from_source(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.delenv("DOCSYNC_HOME", raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / "data").mkdir()

        assert _get_default_data_dir() == Path("data")

    def test_app_config_defaults(self, tmp_path: Path) -> None:
        config = AppConfig(data_dir=str(tmp_path))

        assert config.data_dir == tmp_path
        assert config.profiles_file == tmp_path / "profiles.json"
        assert config.default_storage_path("abc") == tmp_path / "profiles" / "abc" / "index.db"
        assert (config.min_tokens, config.max_tokens, config.overlap_ratio) == (150, 1000, 0.1)


class TestSourceSettings:
    def test_local_requires_root(self) -> None:
        with pytest.raises(ValueError):
            SourceSettings(kind="local")

    def test_drive_requires_folder(self) -> None:
        with pytest.raises(ValueError):
            SourceSettings(kind="drive")

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            SourceSettings(kind="ftp", root="/x")

    def test_describe(self) -> None:
        assert SourceSettings(kind="local", root="/docs").describe() == "/docs"
        assert SourceSettings(kind="drive", folder_id="f1").describe() == "drive:My Drive/f1"


class TestProfileConfig:
    def test_extensions_are_normalised(self) -> None:
        profile = ProfileConfig("p", "P", SourceSettings(root="/docs"), extensions=["PDF", ".md", "md"])
        assert profile.extensions == [".md", ".pdf"]

    def test_round_trip_through_dict(self, tmp_path: Path) -> None:
        profile = ProfileConfig(
            "p",
            "P",
            SourceSettings(kind="drive", folder_id="f1", drive_id="d1"),
            embedding=EmbeddingSettings(provider="remote", dimension=1024),
            recursive=False,
            storage_path=tmp_path / "index.db",
        )

        restored = ProfileConfig.from_dict(json.loads(json.dumps(profile.to_dict())))

        assert restored == profile

    def test_from_dict_defaults(self) -> None:
        profile = ProfileConfig.from_dict({"id": "p", "source": {"kind": "local", "root": "/docs"}})

        assert profile.name == "p"
        assert profile.extensions == sorted(DEFAULT_EXTENSIONS)
        assert profile.embedding.provider == "local"


class TestProfileRegistry:
    """Persistence of profiles."""

    @pytest.fixture
    def config(self, tmp_path: Path) -> AppConfig:
        return AppConfig(data_dir=tmp_path / "data")

    def _profile(self, name: str = "Docs", **kwargs) -> ProfileConfig:
        return ProfileConfig(id=kwargs.pop("id", ""), name=name, source=SourceSettings(root="/docs"), **kwargs)

    def test_create_assigns_id_and_storage(self, config: AppConfig) -> None:
        registry = ProfileRegistry(config)

        profile = registry.create(self._profile())

        assert len(profile.id) == 12
        assert profile.storage_path == config.default_storage_path(profile.id)
        assert config.profiles_file.exists()

    def test_profiles_survive_reload(self, config: AppConfig) -> None:
        created = ProfileRegistry(config).create(self._profile("Work", id="work"))

        reloaded = ProfileRegistry(config)

        assert reloaded.get("work") == created

    def test_list_is_sorted_by_name(self, config: AppConfig) -> None:
        registry = ProfileRegistry(config)
        registry.create(self._profile("beta"))
        registry.create(self._profile("Alpha"))

        assert [p.name for p in registry.list()] == ["Alpha", "beta"]

    def test_duplicate_id(self, config: AppConfig) -> None:
        registry = ProfileRegistry(config)
        registry.create(self._profile(id="same"))

        with pytest.raises(ValueError, match="already exists"):
            registry.create(self._profile(id="same"))

    def test_update(self, config: AppConfig) -> None:
        registry = ProfileRegistry(config)
        profile = registry.create(self._profile(id="p1"))
        profile.name = "Renamed"

        registry.update(profile)

        assert ProfileRegistry(config).get("p1").name == "Renamed"
        with pytest.raises(ProfileNotFound):
            registry.update(self._profile(id="ghost"))

    def test_delete_removes_managed_storage(self, config: AppConfig) -> None:
        registry = ProfileRegistry(config)
        profile = registry.create(self._profile(id="p1"))
        profile.storage_path.parent.mkdir(parents=True)
        profile.storage_path.write_bytes(b"db")

        registry.delete("p1")

        assert not profile.storage_path.parent.exists()
        with pytest.raises(ProfileNotFound):
            registry.get("p1")

    def test_delete_custom_storage_keeps_siblings(self, config: AppConfig, tmp_path: Path) -> None:
        custom = tmp_path / "custom"
        custom.mkdir()
        db = custom / "index.db"
        db.write_bytes(b"db")
        Path(f"{db}-wal").write_bytes(b"wal")
        (custom / "unrelated.txt").write_text("keep me")
        registry = ProfileRegistry(config)
        registry.create(self._profile(id="p1", storage_path=db))

        registry.delete("p1")

        assert not db.exists()
        assert not Path(f"{db}-wal").exists()
        assert (custom / "unrelated.txt").exists()

    def test_delete_unknown(self, config: AppConfig) -> None:
        with pytest.raises(ProfileNotFound):
            ProfileRegistry(config).delete("missing")
