"""
Source and profile configuration loading.

Definitions live in a config directory:

    config/
      sources.yaml        # top-level `sources:` list
      profiles/
        backend.yaml      # one profile per file

JSON files are accepted as well (YAML is a superset). Everything is read
once and served from memory until reload() is called.
"""
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog
import yaml
from pydantic import ValidationError

from devfeed.errors import ConfigError
from devfeed.models.domain import Profile, Source

logger = structlog.get_logger(__name__)

CONFIG_SUFFIXES = (".yaml", ".yml", ".json")


class ConfigLoader:
    """
    Loads Source and Profile definitions and derives enabled/active sets.

    Features:
    - Schema validation through the pydantic domain models
    - Cross-checks profile -> source references
    - In-memory after first load, explicit reload()
    """

    def __init__(self, config_dir: Path | str):
        self.config_dir = Path(config_dir)
        self._sources: Optional[dict[str, Source]] = None
        self._profiles: Optional[dict[str, Profile]] = None
        self._from_disk = True

    @classmethod
    def from_definitions(
        cls,
        sources: Iterable[dict[str, Any] | Source],
        profiles: Iterable[dict[str, Any] | Profile],
    ) -> "ConfigLoader":
        """Build a loader from in-memory definitions (validated the same way)."""
        loader = cls(config_dir="<memory>")
        loader._from_disk = False
        loader._install(
            [s if isinstance(s, Source) else _validate(Source, s, "source") for s in sources],
            [p if isinstance(p, Profile) else _validate(Profile, p, "profile") for p in profiles],
        )
        return loader

    # =========================================================================
    # Public API
    # =========================================================================

    def load_sources(self) -> list[Source]:
        """All configured sources, enabled or not, in file order."""
        self._ensure_loaded()
        return list(self._sources.values())

    def load_profiles(self) -> list[Profile]:
        self._ensure_loaded()
        return list(self._profiles.values())

    def get_source(self, source_id: str) -> Optional[Source]:
        self._ensure_loaded()
        return self._sources.get(source_id)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        self._ensure_loaded()
        return self._profiles.get(profile_id)

    def get_enabled_sources(self) -> list[Source]:
        return [s for s in self.load_sources() if s.enabled]

    def get_sources_for_profile(self, profile: Profile) -> list[Source]:
        """Enabled sources referenced by a profile, sorted by id."""
        self._ensure_loaded()
        sources = [self._sources[sid] for sid in sorted(profile.source_ids)]
        return [s for s in sources if s.enabled]

    def get_active_profiles(self) -> list[Profile]:
        """Profiles that are enabled and have at least one enabled source."""
        return [
            p for p in self.load_profiles()
            if p.enabled and self.get_sources_for_profile(p)
        ]

    def is_active(self, profile: Profile) -> bool:
        return profile.enabled and bool(self.get_sources_for_profile(profile))

    def get_config_summary(self) -> dict:
        return {
            "sources_count": len(self.load_sources()),
            "enabled_sources_count": len(self.get_enabled_sources()),
            "sources_by_family": dict(Counter(s.kind.family for s in self.get_enabled_sources())),
            "profiles_count": len(self.load_profiles()),
            "active_profiles_count": len(self.get_active_profiles()),
            "config_dir": str(self.config_dir),
        }

    @property
    def loaded(self) -> bool:
        return self._sources is not None

    def reload(self) -> None:
        """Re-read definitions from disk."""
        if not self._from_disk:
            return
        self._sources = None
        self._profiles = None
        self._ensure_loaded()

    # =========================================================================
    # Loading
    # =========================================================================

    def _ensure_loaded(self) -> None:
        if self._sources is None:
            sources = self._read_sources()
            profiles = self._read_profiles()
            self._install(sources, profiles)
            logger.info(
                "Configuration loaded",
                config_dir=str(self.config_dir),
                sources=len(sources),
                profiles=len(profiles),
            )

    def _install(self, sources: list[Source], profiles: list[Profile]) -> None:
        by_id: dict[str, Source] = {}
        for source in sources:
            if source.id in by_id:
                raise ConfigError(f"Duplicate source id: {source.id}")
            by_id[source.id] = source

        profiles_by_id: dict[str, Profile] = {}
        for profile in profiles:
            if profile.id in profiles_by_id:
                raise ConfigError(f"Duplicate profile id: {profile.id}")
            unknown = sorted(profile.source_ids - by_id.keys())
            if unknown:
                raise ConfigError(
                    f"Profile {profile.id} references unknown sources: {', '.join(unknown)}"
                )
            profiles_by_id[profile.id] = profile

        self._sources = by_id
        self._profiles = profiles_by_id

    def _read_sources(self) -> list[Source]:
        path = self._find_file(self.config_dir, "sources")
        if path is None:
            raise ConfigError(f"No sources file found in {self.config_dir}")

        data = _read_document(path)
        entries = data.get("sources") if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ConfigError(f"{path}: expected a list of sources")

        return [_validate(Source, entry, f"source in {path.name}") for entry in entries]

    def _read_profiles(self) -> list[Profile]:
        profiles_dir = self.config_dir / "profiles"
        if not profiles_dir.is_dir():
            logger.warning("No profiles directory", path=str(profiles_dir))
            return []

        profiles = []
        for path in sorted(profiles_dir.iterdir()):
            if path.suffix not in CONFIG_SUFFIXES:
                continue
            data = _read_document(path)
            if not isinstance(data, dict):
                raise ConfigError(f"{path}: expected a mapping")
            data.setdefault("id", path.stem)
            profiles.append(_validate(Profile, data, f"profile {path.name}"))
        return profiles

    @staticmethod
    def _find_file(directory: Path, stem: str) -> Optional[Path]:
        for suffix in CONFIG_SUFFIXES:
            candidate = directory / f"{stem}{suffix}"
            if candidate.is_file():
                return candidate
        return None


def _read_document(path: Path) -> Any:
    try:
        with path.open(encoding="utf-8") as fh:
            return yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e


def _validate(model, data: Any, what: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid {what}: {problems}") from e
