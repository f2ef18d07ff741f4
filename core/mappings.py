"""Durable store for curated and learned character-name mappings."""

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Set

from .text import normalize

log = logging.getLogger(__name__)


class MappingSource(str, Enum):
    LOCAL = "local"
    LEARNED = "learned"
    EXTERNAL = "external"


@dataclass
class NameMapping:
    display_name: str
    confidence: float
    source: MappingSource
    origin: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.display_name,
            "confidence": self.confidence,
            "origin": self.origin,
        }


class MappingStore:
    """Two normalized-key tables persisted together as one JSON document.

    The file is read once at start-up and rewritten whole on every save.
    Load and save problems are logged and otherwise ignored.
    """

    def __init__(self, path: Path, *, seed: Optional[Mapping[str, str]] = None) -> None:
        self.path = Path(path)
        self.static: Dict[str, str] = {}
        self.learned: Dict[str, NameMapping] = {}
        self._pending: Set[asyncio.Task] = set()
        self._write_lock = threading.Lock()
        self._save_lock = asyncio.Lock()
        if self.path.exists():
            self._load()
        else:
            for key, name in (seed or {}).items():
                self.static[normalize(str(key))] = str(name)
            self.save()

    def _load(self) -> None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except Exception as exc:
            log.warning("failed to load character mappings from %s: %s", self.path, exc)
            self.static, self.learned = {}, {}
            return
        if not isinstance(payload, dict):
            log.warning("ignoring malformed mapping file %s", self.path)
            return
        raw_static = payload.get("staticMappings") or {}
        if isinstance(raw_static, dict):
            self.static = {
                normalize(str(key)): str(value)
                for key, value in raw_static.items()
                if str(value or "").strip()
            }
        raw_learned = payload.get("learnedMappings") or {}
        if isinstance(raw_learned, dict):
            for key, item in raw_learned.items():
                if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                    continue
                try:
                    confidence = float(item.get("confidence", 0.0))
                except (TypeError, ValueError):
                    confidence = 0.0
                self.learned[normalize(str(key))] = NameMapping(
                    display_name=str(item["name"]),
                    confidence=confidence,
                    source=MappingSource.LEARNED,
                    origin=str(item.get("origin") or ""),
                )
        log.info(
            "loaded %d static and %d learned mappings", len(self.static), len(self.learned)
        )

    def snapshot(self) -> dict:
        return {
            "staticMappings": dict(self.static),
            "learnedMappings": {key: entry.to_dict() for key, entry in self.learned.items()},
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }

    def save(self) -> bool:
        return self._write(json.dumps(self.snapshot(), ensure_ascii=False, indent=2))

    def _write(self, payload: str) -> bool:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with self._write_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(payload, encoding="utf-8")
                os.replace(tmp, self.path)
            except Exception as exc:
                log.warning("failed to persist character mappings: %s", exc)
                return False
        return True

    def lookup_static(self, key: str) -> Optional[NameMapping]:
        name = self.static.get(key)
        if name is None:
            return None
        return NameMapping(display_name=name, confidence=1.0, source=MappingSource.LOCAL)

    def lookup_learned(self, key: str) -> Optional[NameMapping]:
        entry = self.learned.get(key)
        if entry is None:
            return None
        return NameMapping(
            display_name=entry.display_name,
            confidence=entry.confidence,
            source=MappingSource.LEARNED,
            origin=entry.origin,
        )

    def learn(self, surface_form: str, mapping: NameMapping) -> None:
        """Record an externally resolved name and save in the background."""

        key = normalize(surface_form)
        self.learned[key] = NameMapping(
            display_name=mapping.display_name,
            confidence=mapping.confidence,
            source=MappingSource.LEARNED,
            origin=mapping.origin,
        )
        log.info("learned mapping %s -> %s", key, mapping.display_name)
        task = asyncio.get_running_loop().create_task(self._save_in_background())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save_in_background(self) -> None:
        # One save at a time, snapshot taken under the lock, so the last write holds every entry.
        async with self._save_lock:
            payload = json.dumps(self.snapshot(), ensure_ascii=False, indent=2)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write, payload)

    async def wait_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
