import random
from typing import List, Tuple

import pytest

from core.agent import DetectorAgent
from core.config import DetectorConfig
from core.humanizer import MistakeRates
from core.mappings import MappingStore
from core.session import GroupInfo, InboundMessage

NOW = 1_700_000_000.0
OWNER = "96176337375"
GROUP_A = "120363-a@g.us"
GROUP_B = "120363-b@g.us"
OWNER_CHAT = f"{OWNER}@s.whatsapp.net"


class FakeTransport:
    def __init__(self, groups=None):
        self.sent: List[Tuple[str, str]] = []
        self.groups = groups if groups is not None else [
            GroupInfo(id=GROUP_A, name="Anime Night", member_count=12),
            GroupInfo(id=GROUP_B, name="Otaku Club", member_count=40),
        ]
        self.fail_sends = False

    async def send_text(self, chat_id: str, text: str) -> None:
        if self.fail_sends:
            raise ConnectionError("socket closed")
        self.sent.append((chat_id, text))

    async def list_groups(self):
        return list(self.groups)

    def texts(self, chat_id=None) -> List[str]:
        return [text for chat, text in self.sent if chat_id is None or chat == chat_id]


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


_counter = {"value": 0}


def make_message(text, *, chat_id=GROUP_B, sender=OWNER, timestamp=NOW, sequence_id=None, own=False):
    if sequence_id is None:
        _counter["value"] += 1
        sequence_id = f"MSG{_counter['value']}"
    return InboundMessage(
        chat_id=chat_id,
        sender_id=sender,
        text=text,
        sequence_id=sequence_id,
        timestamp=timestamp,
        author_is_self=own,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def mappings(tmp_path):
    return MappingStore(tmp_path / "character-mappings.json", seed={"غوكو": "Son Goku"})


@pytest.fixture
def config():
    return DetectorConfig(owner_ids=[OWNER], rates=MistakeRates(mistake=0.0))


@pytest.fixture
def agent(transport, config, mappings, sleep, clock):
    return DetectorAgent(
        transport,
        config=config,
        mappings=mappings,
        rng=random.Random(7),
        clock=clock,
        sleep=sleep,
    )
