"""cc-logdb configuration.

Priority (high -> low):
  1. CLI flags             (handled at call site, not in this module)
  2. Environment variables (CLAUDE_CONFIG_DIR, CC_LOGDB_PATH, OLLAMA_URL,
                            EMBED_PROVIDER, EMBED_MODEL, EMBED_DIM, EMBED_TIMEOUT)
  3. Hardcoded defaults
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

_PROVIDERS: frozenset[str] = frozenset(["ollama", "local"])

# provider -> (model, dimension)
_PROVIDER_DEFAULTS: dict[str, tuple[str, int]] = {
    "ollama": ("nomic-embed-text", 768),
    "local": ("all-MiniLM-L6-v2", 384),
}

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_EMBED_TIMEOUT = 60.0


class ConfigError(ValueError):
    """Raised when an environment variable holds an invalid value."""


@dataclass
class Settings:
    """Resolved configuration consumed by the sync and search pipelines."""

    claude_dir: Path
    db_path: Path
    ollama_url: str = DEFAULT_OLLAMA_URL
    embed_provider: str = "ollama"
    embed_model: str = "nomic-embed-text"
    embed_dim: int = 768
    embed_timeout: float = DEFAULT_EMBED_TIMEOUT

    @property
    def history_path(self) -> Path:
        """Global history index (one line per prompt)."""
        return self.claude_dir / "history.jsonl"

    @property
    def projects_dir(self) -> Path:
        """Directory holding one subdirectory of transcripts per project."""
        return self.claude_dir / "projects"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Resolve settings from the environment over the defaults."""
        env = os.environ if environ is None else environ

        config_dir = env.get("CLAUDE_CONFIG_DIR")
        claude_dir = Path(config_dir) / "claude" if config_dir else Path.home() / ".claude"

        db_override = env.get("CC_LOGDB_PATH")
        db_path = Path(db_override).expanduser() if db_override else claude_dir / "claude.sqlite"

        provider = env.get("EMBED_PROVIDER", "ollama").strip().lower()
        if provider not in _PROVIDERS:
            raise ConfigError(
                f"EMBED_PROVIDER must be one of {sorted(_PROVIDERS)}, got '{provider}'"
            )
        default_model, default_dim = _PROVIDER_DEFAULTS[provider]

        return cls(
            claude_dir=claude_dir,
            db_path=db_path,
            ollama_url=env.get("OLLAMA_URL", DEFAULT_OLLAMA_URL),
            embed_provider=provider,
            embed_model=env.get("EMBED_MODEL", default_model),
            embed_dim=_positive_int(env, "EMBED_DIM", default_dim),
            embed_timeout=_positive_float(env, "EMBED_TIMEOUT", DEFAULT_EMBED_TIMEOUT),
        )


def _positive_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from None
    if value < 1:
        raise ConfigError(f"{key} must be >= 1, got {value}")
    return value


def _positive_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{raw}'") from None
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value
