"""Application and profile configuration."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
import threading
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Literal

from docsync.embedding.encoder import EmbeddingSettings
from docsync.errors import ProfileNotFound
from docsync.utils.files import normalize_extensions

__all__ = [
    "AppConfig",
    "EmbeddingSettings",
    "ProfileConfig",
    "ProfileRegistry",
    "SourceSettings",
    "DEFAULT_EXTENSIONS",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".md", ".markdown", ".txt", ".html", ".htm", ".pdf", ".csv", ".json", ".rst")


def _get_default_data_dir() -> Path:
    """Get the default data directory based on platform and execution context."""
    env_home = os.environ.get("DOCSYNC_HOME")
    if env_home:
        return Path(env_home).expanduser()

    user_dir = Path.home() / "Documents" / "DocSync"

    # When running as a frozen app (PyInstaller bundle)
    if getattr(sys, "frozen", False):
        return user_dir

    # When running from source, prefer local data/ if it exists
    local_dir = Path("data")
    if local_dir.is_dir():
        return local_dir

    return user_dir


@dataclass(slots=True)
class AppConfig:
    data_dir: Path | None = None
    min_tokens: int = 150
    max_tokens: int = 1000
    overlap_ratio: float = 0.1
    max_workers: int = 4
    oversample: int = 4
    drive_poll_interval: float = 30.0

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = _get_default_data_dir()
        self.data_dir = Path(self.data_dir)

    @property
    def profiles_file(self) -> Path:
        return self.data_dir / "profiles.json"

    def default_storage_path(self, profile_id: str) -> Path:
        return self.data_dir / "profiles" / profile_id / "index.db"


@dataclass(slots=True)
class SourceSettings:
    kind: Literal["local", "drive"] = "local"
    root: str | None = None
    folder_id: str | None = None
    drive_id: str | None = None
    root_name: str = "My Drive"
    token_env: str = "GOOGLE_DRIVE_TOKEN"

    def __post_init__(self) -> None:
        if self.kind not in ("local", "drive"):
            raise ValueError(f"Unknown source kind: {self.kind!r}")
        if self.kind == "local" and not self.root:
            raise ValueError("A local source needs a root folder")
        if self.kind == "drive" and not self.folder_id:
            raise ValueError("A drive source needs a folder_id")

    def describe(self) -> str:
        if self.kind == "local":
            return str(self.root)
        return f"drive:{self.root_name}/{self.folder_id}"


@dataclass(slots=True)
class ProfileConfig:
    id: str
    name: str
    source: SourceSettings
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    extensions: List[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    recursive: bool = True
    storage_path: Path | None = None

    def __post_init__(self) -> None:
        self.extensions = sorted(normalize_extensions(self.extensions))
        if self.storage_path is not None:
            self.storage_path = Path(self.storage_path)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "source": asdict(self.source),
            "embedding": self.embedding.to_dict(),
            "extensions": list(self.extensions),
            "recursive": self.recursive,
            "storage_path": str(self.storage_path) if self.storage_path else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProfileConfig":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            source=SourceSettings(**data["source"]),
            embedding=EmbeddingSettings.from_dict(data.get("embedding") or {}),
            extensions=data.get("extensions") or list(DEFAULT_EXTENSIONS),
            recursive=data.get("recursive", True),
            storage_path=data.get("storage_path"),
        )


class ProfileRegistry:
    """Profiles persisted as JSON in ``<data_dir>/profiles.json``."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._profiles: Dict[str, ProfileConfig] = {}
        self._load()

    def _load(self) -> None:
        path = self.config.profiles_file
        if not path.exists():
            return
        data = json.loads(path.read_text(encoding="utf-8"))
        for item in data.get("profiles", []):
            profile = ProfileConfig.from_dict(item)
            self._profiles[profile.id] = profile

    def _save(self) -> None:
        path = self.config.profiles_file
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"profiles": [profile.to_dict() for profile in self._profiles.values()]}
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(path)

    def list(self) -> List[ProfileConfig]:
        with self._lock:
            return sorted(self._profiles.values(), key=lambda profile: profile.name.lower())

    def get(self, profile_id: str) -> ProfileConfig:
        with self._lock:
            try:
                return self._profiles[profile_id]
            except KeyError:
                raise ProfileNotFound(f"Profile {profile_id!r} not found") from None

    def create(self, profile: ProfileConfig) -> ProfileConfig:
        with self._lock:
            if not profile.id:
                profile.id = uuid.uuid4().hex[:12]
            if profile.id in self._profiles:
                raise ValueError(f"Profile {profile.id!r} already exists")
            if profile.storage_path is None:
                profile.storage_path = self.config.default_storage_path(profile.id)
            self._profiles[profile.id] = profile
            self._save()
        LOGGER.info("Created profile %s (%s)", profile.id, profile.source.describe())
        return profile

    def update(self, profile: ProfileConfig) -> None:
        with self._lock:
            if profile.id not in self._profiles:
                raise ProfileNotFound(f"Profile {profile.id!r} not found")
            self._profiles[profile.id] = profile
            self._save()

    def delete(self, profile_id: str) -> None:
        """Forget the profile and remove its storage directory."""
        with self._lock:
            profile = self._profiles.pop(profile_id, None)
            if profile is None:
                raise ProfileNotFound(f"Profile {profile_id!r} not found")
            self._save()
        if profile.storage_path is not None:
            storage_path = Path(profile.storage_path)
            managed_dir = self.config.default_storage_path(profile_id).parent
            if storage_path.parent == managed_dir and managed_dir.exists():
                shutil.rmtree(managed_dir)
            else:
                # custom location: only the database and its WAL side files
                for suffix in ("", "-wal", "-shm"):
                    Path(f"{storage_path}{suffix}").unlink(missing_ok=True)
        LOGGER.info("Deleted profile %s", profile_id)
