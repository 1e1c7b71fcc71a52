"""Configuration management for vizcache.

Loads configuration from ~/.config/vizcache/config.toml.
Priority chain: CLI flags > env vars > config file.
"""

import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import DEFAULT_PERSONALIZATION_MODEL, DEFAULT_SPEECH_MODEL, DEFAULT_VOICE
from .paths import get_config_dir
from .quota import TIERS, QuotaTier

CONFIG_DIR = get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"

MB = 1024 * 1024

DEFAULT_CONFIG = f"""\
# vizcache configuration

[speech]
# Speech generator: "elevenlabs"
provider = "elevenlabs"
voice = "{DEFAULT_VOICE}"
model = "{DEFAULT_SPEECH_MODEL}"

[speech.quota]
# Preset tier: "free" (1,500/day, 6s spacing), "paid" (2,000,000/day, 0.03s),
# "standard" (10,000/day, 1s). daily_limit / min_interval override the preset.
tier = "standard"
# daily_limit = 10000
# min_interval = 1.0
backoff_seconds = 60
reset_timezone = "America/Los_Angeles"
reset_hour = 0

[personalization]
# Text personalizer: "gemini"
provider = "gemini"
model = "{DEFAULT_PERSONALIZATION_MODEL}"

[personalization.quota]
tier = "free"
backoff_seconds = 60
reset_timezone = "America/Los_Angeles"
reset_hour = 0

[cache]
# Size sweeps reduce local usage to this fraction of the budget
target_fraction = 0.8

[cache.speech]
memory_mb = 50
local_mb = 100
max_age_hours = 720

[cache.personalization]
memory_mb = 20
local_mb = 20
max_age_hours = 24

[remote]
# Shared object store base URL; empty disables the remote tier
url = ""
timeout = 10.0
# Seconds between uploads during `vizcache sync`
sync_pause = 1.0

[preload]
concurrency = 2
pause_seconds = 0.5
max_attempts = 3

# Secrets are read from environment variables, not this file:
#   ELEVENLABS_API_KEY     - speech generator
#   GEMINI_API_KEY         - text personalizer
#   VIZCACHE_REMOTE_TOKEN  - bearer token for the remote store
"""


@dataclass(frozen=True)
class QuotaConfig:
    """Quota governor settings for one generator."""

    tier: str
    daily_limit: int | None
    min_interval: float | None
    backoff_seconds: float
    reset_timezone: str
    reset_hour: int

    def resolve(self) -> QuotaTier:
        """Preset tier with any overrides applied.

        Raises:
            ValueError: If the tier name is unknown or an override is invalid
        """
        if self.tier not in TIERS:
            raise ValueError(
                f"Unknown quota tier '{self.tier}'. Available: {', '.join(TIERS)}"
            )
        base = TIERS[self.tier]
        if self.daily_limit is None and self.min_interval is None:
            return base
        return QuotaTier(
            name=self.tier if self.daily_limit is None else f"{self.tier}-custom",
            daily_limit=self.daily_limit if self.daily_limit is not None else base.daily_limit,
            min_interval=(
                self.min_interval if self.min_interval is not None else base.min_interval
            ),
        )


@dataclass(frozen=True)
class SpeechConfig:
    """Speech generator configuration."""

    provider: str
    voice: str
    model: str
    quota: QuotaConfig


@dataclass(frozen=True)
class PersonalizationConfig:
    """Text personalizer configuration."""

    provider: str
    model: str
    quota: QuotaConfig


@dataclass(frozen=True)
class TierLimits:
    """Byte budgets and age limit for one cache."""

    memory_mb: float
    local_mb: float
    max_age_hours: float | None

    @property
    def memory_bytes(self) -> int:
        return int(self.memory_mb * MB)

    @property
    def local_bytes(self) -> int:
        return int(self.local_mb * MB)

    @property
    def max_age_seconds(self) -> float | None:
        return self.max_age_hours * 3600 if self.max_age_hours else None


@dataclass(frozen=True)
class CacheConfig:
    """Cache tier configuration."""

    target_fraction: float
    speech: TierLimits
    personalization: TierLimits


@dataclass(frozen=True)
class RemoteConfig:
    """Remote store configuration."""

    url: str
    timeout: float
    sync_pause: float
    token: str | None

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class PreloadConfig:
    """Batch preload pacing."""

    concurrency: int
    pause_seconds: float
    max_attempts: int


@dataclass(frozen=True)
class VizcacheConfig:
    """Top-level vizcache configuration."""

    speech: SpeechConfig
    personalization: PersonalizationConfig
    cache: CacheConfig
    remote: RemoteConfig
    preload: PreloadConfig


_cached_config: VizcacheConfig | None = None


def generate_config(path: Path | None = None) -> Path:
    """Generate default config file at ~/.config/vizcache/config.toml."""
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG)
    return path


def default_config() -> VizcacheConfig:
    """Configuration built from the documented defaults, env vars applied."""
    return parse_config(tomllib.loads(DEFAULT_CONFIG))


def _quota(section: dict[str, Any], env_prefix: str, default_tier: str) -> QuotaConfig:
    daily_limit = section.get("daily_limit")
    min_interval = section.get("min_interval")
    return QuotaConfig(
        tier=os.getenv(f"{env_prefix}_TIER", section.get("tier", default_tier)),
        daily_limit=int(daily_limit) if daily_limit is not None else None,
        min_interval=float(min_interval) if min_interval is not None else None,
        backoff_seconds=float(section.get("backoff_seconds", 60)),
        reset_timezone=section.get("reset_timezone", "America/Los_Angeles"),
        reset_hour=int(section.get("reset_hour", 0)),
    )


def _limits(section: dict[str, Any], memory_mb: float, local_mb: float, age: float) -> TierLimits:
    return TierLimits(
        memory_mb=float(section.get("memory_mb", memory_mb)),
        local_mb=float(section.get("local_mb", local_mb)),
        max_age_hours=section.get("max_age_hours", age),
    )


def parse_config(data: dict[str, Any]) -> VizcacheConfig:
    """Build configuration from parsed TOML with env var overrides.

    Raises:
        ValueError: If a required value is missing or a value is invalid
    """
    speech = data.get("speech", {})
    personalization = data.get("personalization", {})
    cache = data.get("cache", {})
    remote = data.get("remote", {})
    preload = data.get("preload", {})

    # Validate required fields
    missing = []
    if "provider" not in speech:
        missing.append("speech.provider")
    if "provider" not in personalization:
        missing.append("personalization.provider")
    if missing:
        raise ValueError(f"Missing required config values: {', '.join(missing)}")

    config = VizcacheConfig(
        speech=SpeechConfig(
            provider=os.getenv("VIZCACHE_SPEECH_PROVIDER", speech["provider"]),
            voice=os.getenv("VIZCACHE_VOICE", speech.get("voice", DEFAULT_VOICE)),
            model=speech.get("model", DEFAULT_SPEECH_MODEL),
            quota=_quota(speech.get("quota", {}), "VIZCACHE_SPEECH", "standard"),
        ),
        personalization=PersonalizationConfig(
            provider=os.getenv(
                "VIZCACHE_PERSONALIZATION_PROVIDER", personalization["provider"]
            ),
            model=personalization.get("model", DEFAULT_PERSONALIZATION_MODEL),
            quota=_quota(
                personalization.get("quota", {}), "VIZCACHE_PERSONALIZATION", "free"
            ),
        ),
        cache=CacheConfig(
            target_fraction=float(cache.get("target_fraction", 0.8)),
            speech=_limits(cache.get("speech", {}), 50, 100, 720),
            personalization=_limits(cache.get("personalization", {}), 20, 20, 24),
        ),
        remote=RemoteConfig(
            url=os.getenv("VIZCACHE_REMOTE_URL", remote.get("url", "")),
            timeout=float(remote.get("timeout", 10.0)),
            sync_pause=float(remote.get("sync_pause", 1.0)),
            token=os.getenv("VIZCACHE_REMOTE_TOKEN") or None,
        ),
        preload=PreloadConfig(
            concurrency=int(preload.get("concurrency", 2)),
            pause_seconds=float(preload.get("pause_seconds", 0.5)),
            max_attempts=int(preload.get("max_attempts", 3)),
        ),
    )

    # Surface bad tier names at load time rather than on first fetch
    config.speech.quota.resolve()
    config.personalization.quota.resolve()
    return config


def load_config(path: Path | None = None) -> VizcacheConfig:
    """Load configuration from config file with env var overrides.

    On first run, generates the config file and exits so the user
    can review it before proceeding.

    Args:
        path: Explicit config file (bypasses the process-wide cache)

    Returns:
        Loaded and validated VizcacheConfig.

    Raises:
        SystemExit: If config is missing (after generating) or invalid.
    """
    global _cached_config
    if path is None and _cached_config is not None:
        return _cached_config

    config_path = path or CONFIG_PATH
    if not config_path.exists():
        generated = generate_config(config_path)
        print(
            f"No config found. Generated {generated}. Review it and run again.",
            file=sys.stderr,
        )
        raise SystemExit(1)

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        config = parse_config(data)
    except (tomllib.TOMLDecodeError, ValueError) as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        print(f"Edit {config_path} or delete it to regenerate.", file=sys.stderr)
        raise SystemExit(1) from e

    if path is None:
        _cached_config = config
    return config
