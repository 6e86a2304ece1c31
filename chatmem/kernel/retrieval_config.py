"""
Retrieval Configuration for chatmem

Loads retrieval.*, embeddings.* and remote_keywords.* from
config/retrieval.yaml, then applies CHATMEM_* environment overrides.

Configuration values are immutable snapshots. RetrievalConfigManager
produces a fresh snapshot when the file changes; a retriever keeps the
snapshot it was constructed with.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

import yaml

from chatmem.kernel.embedding_engine import EmbeddingConfig
from chatmem.kernel.errors import InvalidParameters
from chatmem.kernel.remote_keywords import RemoteKeywordConfig


logger = logging.getLogger(__name__)

ORPHAN_POLICIES = ("drop", "keep")

DEFAULT_CONFIG_PATHS = [
    os.path.join("config", "retrieval.yaml"),
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "retrieval.yaml"),
]

# env var -> (section, key)
ENV_OVERRIDES = {
    "CHATMEM_DB_PATH": (None, "db_path"),
    "CHATMEM_KEYWORD_WEIGHT": ("retrieval", "keyword_weight"),
    "CHATMEM_VECTOR_WEIGHT": ("retrieval", "vector_weight"),
    "CHATMEM_THRESHOLD": ("retrieval", "threshold"),
    "CHATMEM_VECTOR_THRESHOLD": ("retrieval", "vector_threshold"),
    "CHATMEM_LIMIT": ("retrieval", "limit"),
    "CHATMEM_ORPHAN_POLICY": ("retrieval", "orphan_policy"),
    "CHATMEM_RETRIEVAL_DEBUG": ("retrieval", "debug"),
    "CHATMEM_EMBED_PROVIDER": ("embeddings", "provider"),
    "CHATMEM_EMBED_MODEL": ("embeddings", "model"),
    "CHATMEM_EMBED_DIM": ("embeddings", "dim"),
    "CHATMEM_EMBED_BASE_URL": ("embeddings", "base_url"),
    "CHATMEM_REMOTE_KEYWORDS": ("remote_keywords", "enabled"),
    "CHATMEM_REMOTE_KEYWORDS_URL": ("remote_keywords", "base_url"),
}


@dataclass(frozen=True)
class RetrievalConfig:
    """Search defaults threaded into HybridRetriever at construction"""

    keyword_weight: float = 0.4
    vector_weight: float = 0.6
    threshold: float = 0.3
    vector_threshold: float = 0.3
    limit: int = 100
    candidate_multiplier: int = 2
    max_keywords: int = 15
    orphan_policy: str = "drop"
    skip_vector_when_empty: bool = True
    debug: bool = False

    def __post_init__(self):
        for name in ("keyword_weight", "vector_weight", "threshold", "vector_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidParameters(f"{name} must be in [0, 1], got {value}")
        if self.limit < 1:
            raise InvalidParameters(f"limit must be >= 1, got {self.limit}")
        if self.candidate_multiplier < 1:
            raise InvalidParameters(
                f"candidate_multiplier must be >= 1, got {self.candidate_multiplier}"
            )
        if self.max_keywords < 1:
            raise InvalidParameters(f"max_keywords must be >= 1, got {self.max_keywords}")
        if self.orphan_policy not in ORPHAN_POLICIES:
            raise InvalidParameters(
                f"orphan_policy must be one of {ORPHAN_POLICIES}, got {self.orphan_policy!r}"
            )

    def with_overrides(self, **changes: Any) -> RetrievalConfig:
        """New snapshot with some fields replaced (validated again)"""
        return replace(self, **changes)


@dataclass(frozen=True)
class Settings:
    """Everything chatmem reads from config/retrieval.yaml"""

    db_path: str = os.path.join("data", "chatmem.db")
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    remote_keywords: RemoteKeywordConfig = field(default_factory=RemoteKeywordConfig)


def _coerce(value: Any, target: type | str) -> Any:
    kind = target if isinstance(target, str) else target.__name__
    if kind == "bool" and isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if kind == "bool":
        return bool(value)
    if kind == "int":
        return int(value)
    if kind == "float":
        return float(value)
    return value


def _build(cls: type, section: Mapping[str, Any]) -> Any:
    """Instantiate a config dataclass from a mapping, ignoring unknown keys"""
    kwargs = {}
    for f in fields(cls):
        if f.name in section and section[f.name] is not None:
            kwargs[f.name] = _coerce(section[f.name], f.type)
    unknown = set(section) - {f.name for f in fields(cls)}
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**kwargs)


def find_config_path(config_path: str | None = None) -> str | None:
    """Find retrieval.yaml in the given or default locations"""
    if config_path:
        return config_path if os.path.exists(config_path) else None
    for p in DEFAULT_CONFIG_PATHS:
        if os.path.exists(p):
            return p
    return None


def load_settings(
    config_path: str | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load settings from YAML and environment

    Args:
        config_path: Explicit path to retrieval.yaml (defaults searched if None)
        env: Environment mapping (defaults to os.environ)

    Returns:
        Immutable Settings snapshot

    Raises:
        InvalidParameters: If a value is out of range
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    path = find_config_path(config_path)
    if path:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.debug(f"Loaded config from {path}")
    elif config_path:
        logger.warning(f"Config file {config_path} not found, using defaults")

    sections: dict[str, dict[str, Any]] = {
        name: dict(data.get(name) or {}) for name in ("retrieval", "embeddings", "remote_keywords")
    }
    db_path = data.get("db_path") or Settings.db_path

    for var, (section, key) in ENV_OVERRIDES.items():
        if var in env:
            if section is None:
                db_path = env[var]
            else:
                sections[section][key] = env[var]

    try:
        return Settings(
            db_path=db_path,
            retrieval=_build(RetrievalConfig, sections["retrieval"]),
            embeddings=_build(EmbeddingConfig, sections["embeddings"]),
            remote_keywords=_build(RemoteKeywordConfig, sections["remote_keywords"]),
        )
    except InvalidParameters:
        raise
    except ValueError as e:
        raise InvalidParameters(f"Invalid configuration: {e}") from e


def load_retrieval_config(config_path: str | None = None) -> RetrievalConfig:
    return load_settings(config_path).retrieval


def diff_settings(old: Settings, new: Settings) -> list[str]:
    """Human-readable list of changed values"""
    changes = []
    if old.db_path != new.db_path:
        changes.append(f"db_path: {old.db_path} -> {new.db_path}")
    for section in ("retrieval", "embeddings", "remote_keywords"):
        before, after = getattr(old, section), getattr(new, section)
        for f in fields(before):
            a, b = getattr(before, f.name), getattr(after, f.name)
            if a != b:
                changes.append(f"{section}.{f.name}: {a} -> {b}")
    return changes


class RetrievalConfigManager:
    """
    Produces Settings snapshots and replaces them when the file changes

    Existing snapshots are never mutated; callers that want new values
    ask for current() again and build a new retriever.
    """

    def __init__(self, config_path: str | None = None) -> None:
        self.config_path = config_path
        self._last_mtime: float | None = None
        self._settings = self._load()

    def _load(self) -> Settings:
        settings = load_settings(self.config_path)
        path = find_config_path(self.config_path)
        self._last_mtime = os.path.getmtime(path) if path else None
        return settings

    def current(self) -> Settings:
        return self._settings

    def reload(self) -> Settings:
        """
        Reload settings from disk

        Returns:
            The new snapshot (the previous one keeps its values)
        """
        old = self._settings
        try:
            new = self._load()
        except (OSError, yaml.YAMLError, InvalidParameters) as e:
            logger.error(f"Failed to reload config, keeping previous values: {e}")
            return old

        changes = diff_settings(old, new)
        if changes:
            logger.info(f"Reloaded retrieval config: {', '.join(changes)}")
        else:
            logger.debug("Reloaded retrieval config (no changes)")

        self._settings = new
        return new

    def check_and_reload_if_needed(self) -> Settings:
        """Reload only when the config file's mtime changed"""
        path = find_config_path(self.config_path)
        if not path:
            return self._settings
        current_mtime = os.path.getmtime(path)
        if self._last_mtime is None or current_mtime != self._last_mtime:
            return self.reload()
        return self._settings
