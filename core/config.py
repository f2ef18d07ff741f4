"""Detector tunables loaded from YAML, with mtime-based hot reload."""

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .humanizer import MistakeRates, TimingProfile
from .session import DEFAULT_ALIASES

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("detector_config.yaml")


@dataclass
class ResolverSettings:
    enabled: bool = False
    min_interval: float = 0.9
    max_attempts: int = 3
    backoff: float = 1.8
    timeout: float = 0.66


@dataclass
class DetectorConfig:
    owner_ids: List[str] = field(default_factory=list)
    strict_classifier: bool = False
    repeat_guard: bool = True
    guard_corrections: bool = True
    staleness_seconds: float = 30.0
    dedup_capacity: int = 200
    seed: Optional[int] = None
    rates: MistakeRates = field(default_factory=MistakeRates)
    timing: TimingProfile = field(default_factory=TimingProfile)
    resolver: ResolverSettings = field(default_factory=ResolverSettings)
    aliases: Dict[str, List[str]] = field(
        default_factory=lambda: {key: list(value) for key, value in DEFAULT_ALIASES.items()}
    )
    static_mappings: Dict[str, str] = field(default_factory=dict)


def _coerce_section(target: Any, raw: Any, section: str) -> Any:
    if not isinstance(raw, dict):
        return target
    updates: Dict[str, Any] = {}
    for item in fields(target):
        if item.name not in raw:
            continue
        current = getattr(target, item.name)
        value = raw[item.name]
        try:
            if isinstance(current, bool):
                updates[item.name] = bool(value)
            elif isinstance(current, int):
                updates[item.name] = int(value)
            elif isinstance(current, float):
                updates[item.name] = float(value)
            else:
                updates[item.name] = value
        except (TypeError, ValueError):
            log.warning("ignoring invalid %s.%s value: %r", section, item.name, value)
    return replace(target, **updates)


def parse_config(raw: Any) -> DetectorConfig:
    config = DetectorConfig()
    if not isinstance(raw, dict):
        return config
    config = _coerce_section(config, {
        key: value for key, value in raw.items()
        if key not in {"rates", "timing", "resolver", "aliases", "static_mappings", "owner_ids"}
    }, "detector")
    config.rates = _coerce_section(config.rates, raw.get("rates"), "rates")
    config.timing = _coerce_section(config.timing, raw.get("timing"), "timing")
    config.resolver = _coerce_section(config.resolver, raw.get("resolver"), "resolver")
    owners = raw.get("owner_ids")
    if isinstance(owners, (list, tuple)):
        config.owner_ids = [str(owner).strip() for owner in owners if str(owner).strip()]
    aliases = raw.get("aliases")
    if isinstance(aliases, dict):
        for name, words in aliases.items():
            if isinstance(words, (list, tuple)):
                config.aliases[str(name)] = [str(word).strip() for word in words if str(word).strip()]
    mappings = raw.get("static_mappings")
    if isinstance(mappings, dict):
        config.static_mappings = {
            str(key): str(value) for key, value in mappings.items() if str(value or "").strip()
        }
    return config


def load_config(path: Path = DEFAULT_CONFIG_PATH, **overrides: Any) -> DetectorConfig:
    raw: Any = {}
    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except Exception as exc:
            log.warning("failed to read detector config %s: %s", path, exc)
            raw = {}
    config = parse_config(raw)
    return replace(config, **overrides) if overrides else config


class ConfigWatcher:
    """Reloads the detector config whenever its file changes on disk."""

    def __init__(self, path: Path = DEFAULT_CONFIG_PATH, **overrides: Any) -> None:
        self.path = Path(path)
        self.overrides = overrides
        self._mtime = self._stat()
        self.current = load_config(self.path, **overrides)

    def _stat(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime if self.path.exists() else None
        except OSError:
            return None

    def poll(self) -> Optional[DetectorConfig]:
        mtime = self._stat()
        if mtime == self._mtime:
            return None
        self._mtime = mtime
        self.current = load_config(self.path, **self.overrides)
        log.info("detector config reloaded from %s", self.path)
        return self.current
