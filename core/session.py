"""Owner-gated session state, command parsing and replay protection."""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

log = logging.getLogger(__name__)

SELECTION_PATTERN = re.compile(r"[0-9]+")

DEFAULT_ALIASES: Dict[str, List[str]] = {
    "activate": [".a", ".ابدا"],
    "deactivate": [".x", ".وقف"],
    "status": [".status", ".حالة"],
}


@dataclass(frozen=True)
class InboundMessage:
    chat_id: str
    sender_id: str
    text: str
    sequence_id: str
    timestamp: float
    author_is_self: bool = False

    @property
    def dedup_key(self) -> str:
        return f"{self.chat_id}-{self.sequence_id}-{self.timestamp}"


@dataclass
class GroupInfo:
    id: str
    name: str
    member_count: int = 0


class SessionPhase(str, Enum):
    UNBOUND = "unbound"
    BOUND_INACTIVE = "bound_inactive"
    ACTIVE = "active"


class Command(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    STATUS = "status"
    SELECT = "select"


@dataclass
class SessionState:
    is_active: bool = False
    bound_group_id: Optional[str] = None
    bound_group_name: str = ""
    activation_timestamp: float = 0.0

    @property
    def phase(self) -> SessionPhase:
        if self.bound_group_id is None:
            return SessionPhase.UNBOUND
        if not self.is_active:
            return SessionPhase.BOUND_INACTIVE
        return SessionPhase.ACTIVE


class DedupWindow:
    """Bounded FIFO set of recently seen message keys."""

    def __init__(self, capacity: int = 200) -> None:
        self.capacity = max(1, capacity)
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: str) -> bool:
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return True

    def keys(self) -> List[str]:
        return list(self._seen)

    def copy(self) -> "DedupWindow":
        clone = DedupWindow(self.capacity)
        for key in self._seen:
            clone.add(key)
        return clone


def strip_identity(sender_id: str) -> str:
    return (sender_id or "").split("@", 1)[0].strip()


class SessionManager:
    """Single-group session: who may control it and which messages get through.

    ``admit`` runs the replay guards (staleness, ordering, dedup) and records
    the message before any awaiting happens. Command transitions are plain
    synchronous methods; the agent does the talking.
    """

    def __init__(
        self,
        *,
        owner_ids: Iterable[str] = (),
        aliases: Optional[Dict[str, List[str]]] = None,
        staleness_seconds: float = 30.0,
        dedup_capacity: int = 200,
    ) -> None:
        self.owner_ids: FrozenSet[str] = frozenset(
            strip_identity(str(owner)) for owner in owner_ids if str(owner).strip()
        )
        self.staleness_seconds = staleness_seconds
        self.state = SessionState()
        self.dedup = DedupWindow(dedup_capacity)
        self.last_timestamp = 0.0
        self.pending_groups: List[GroupInfo] = []
        self._commands: Dict[str, Command] = {}
        for name, words in (aliases or DEFAULT_ALIASES).items():
            try:
                command = Command(name)
            except ValueError:
                log.warning("unknown command alias group: %s", name)
                continue
            for word in words:
                self._commands[str(word).strip()] = command

    def is_owner(self, sender_id: str) -> bool:
        return strip_identity(sender_id) in self.owner_ids

    def admit(self, message: InboundMessage, now: float) -> bool:
        if message.author_is_self or not (message.text or "").strip():
            return False
        if now - message.timestamp > self.staleness_seconds:
            log.debug("skipping stale message %s", message.sequence_id)
            return False
        if message.timestamp < self.last_timestamp:
            log.debug("skipping out-of-order message %s", message.sequence_id)
            return False
        if not self.dedup.add(message.dedup_key):
            log.debug("skipping duplicate message %s", message.sequence_id)
            return False
        self.last_timestamp = max(self.last_timestamp, message.timestamp)
        return True

    def parse_command(self, message: InboundMessage) -> Optional[Command]:
        text = message.text.strip()
        command = self._commands.get(text)
        if command is not None:
            return command
        if SELECTION_PATTERN.fullmatch(text) and self.state.phase is SessionPhase.UNBOUND:
            return Command.SELECT
        return None

    def bind(self, group: GroupInfo) -> None:
        self.state.bound_group_id = group.id
        self.state.bound_group_name = group.name
        self.pending_groups = []

    def activate(self, now: float) -> None:
        if self.state.bound_group_id is None:
            raise ValueError("cannot activate without a bound group")
        self.state.is_active = True
        self.state.activation_timestamp = now
        log.info("session active in %s", self.state.bound_group_name or self.state.bound_group_id)

    def select(self, index: int, groups: List[GroupInfo], now: float) -> Optional[GroupInfo]:
        if index < 1 or index > len(groups):
            return None
        group = groups[index - 1]
        self.bind(group)
        self.activate(now)
        return group

    def deactivate(self) -> None:
        self.state = SessionState()
        self.pending_groups = []
        log.info("session deactivated")

    def accepts_detection(self, message: InboundMessage) -> bool:
        state = self.state
        if state.phase is not SessionPhase.ACTIVE:
            return False
        if message.chat_id != state.bound_group_id:
            return False
        return message.timestamp >= state.activation_timestamp

    def still_bound_to(self, chat_id: str) -> bool:
        return self.state.is_active and self.state.bound_group_id == chat_id

    def snapshot(self) -> dict:
        return {
            "state": replace(self.state),
            "dedup": self.dedup.copy(),
            "last_timestamp": self.last_timestamp,
        }

    def restore(self, snapshot: dict) -> None:
        self.state = replace(snapshot["state"])
        dedup: DedupWindow = snapshot["dedup"]
        self.dedup = DedupWindow(self.dedup.capacity)
        for key in dedup.keys():
            self.dedup.add(key)
        self.last_timestamp = float(snapshot.get("last_timestamp") or 0.0)
