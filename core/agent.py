"""Detection agent: command handling, the reply pipeline and the hot-swap handle."""

import asyncio
import contextlib
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Iterator, List, Optional, Sequence, Set

from .classifier import HeuristicClassifier, Token
from .config import ConfigWatcher, DetectorConfig
from .humanizer import MistakeEngine, ResponsePlan, compute_delay, correction_delay
from .mappings import MappingStore
from .resolver import NameResolver
from .session import Command, GroupInfo, InboundMessage, SessionManager, SessionPhase
from .text import extract_tokens, is_matchup

log = logging.getLogger(__name__)

MAX_FAILURES = 50


class StageError(Exception):
    """A pipeline stage failed for one message."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


@contextlib.contextmanager
def stage(name: str) -> Iterator[None]:
    try:
        yield
    except StageError:
        raise
    except Exception as exc:
        raise StageError(name, exc) from exc


@dataclass
class Detection:
    text: str
    tokens: List[Token] = field(default_factory=list)
    matchup: bool = False

    @property
    def words(self) -> List[str]:
        return [token.surface_form for token in self.tokens]


class DetectorAgent:
    """Reacts to one transport's message stream.

    The transport only needs ``send_text(chat_id, text)`` and
    ``list_groups()``. Gating and state changes for a message finish before
    anything is awaited; the delayed reply and any correction run as tracked
    background tasks so the next batch is not held up.
    """

    def __init__(
        self,
        transport: Any,
        *,
        config: DetectorConfig,
        mappings: MappingStore,
        resolver: Optional[NameResolver] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.config = config
        self.mappings = mappings
        self.resolver = resolver
        self.rng = rng or random.Random(config.seed)
        self._clock = clock
        self._sleep = sleep
        self.session = SessionManager(
            owner_ids=config.owner_ids,
            aliases=config.aliases,
            staleness_seconds=config.staleness_seconds,
            dedup_capacity=config.dedup_capacity,
        )
        self.classifier = HeuristicClassifier(strict=config.strict_classifier)
        self.mistakes = MistakeEngine(rng=self.rng, rates=config.rates)
        self.failures: Deque[StageError] = deque(maxlen=MAX_FAILURES)
        self._last_detection_text = ""
        self._tasks: Set[asyncio.Task] = set()

    # ----- hot swap -----
    def adopt(self, previous: "DetectorAgent") -> None:
        self.session.restore(previous.session.snapshot())
        self._last_detection_text = previous._last_detection_text

    # ----- dispatch -----
    async def handle_batch(self, messages: Sequence[InboundMessage]) -> None:
        for message in sorted(messages, key=lambda item: item.timestamp):
            try:
                await self.handle(message)
            except StageError as exc:
                self._record(exc)
            except Exception as exc:
                log.exception("message %s failed: %s", message.sequence_id, exc)

    async def handle(self, message: InboundMessage) -> None:
        now = self._clock()
        if not self.session.admit(message, now):
            return
        command = self.session.parse_command(message)
        is_owner = self.session.is_owner(message.sender_id)
        if command is Command.STATUS:
            await self._reply(message.chat_id, f"🤖 Bot Status: {self.status()['status']}")
            return
        if command in (Command.ACTIVATE, Command.DEACTIVATE):
            if not is_owner:
                log.debug("ignoring %s from non-owner %s", command.value, message.sender_id)
                return
            if command is Command.ACTIVATE:
                await self._on_activate(message, now)
            else:
                self.session.deactivate()
                await self._reply(message.chat_id, "🔴 Bot deactivated successfully!")
            return
        if command is Command.SELECT and is_owner:
            await self._on_select(message, now)
            return
        if not self.session.accepts_detection(message):
            return
        detection = self.detect(message.text)
        if detection is None:
            return
        log.info(
            "detected %d name(s)%s in %s",
            len(detection.tokens),
            " (match-up)" if detection.matchup else "",
            message.chat_id,
        )
        self._spawn(self._respond(message.chat_id, detection))

    async def _reply(self, chat_id: str, text: str) -> None:
        with stage("reply"):
            await self.transport.send_text(chat_id, text)

    async def _list_groups(self) -> List[GroupInfo]:
        try:
            return list(await self.transport.list_groups())
        except Exception as exc:
            log.error("failed to fetch groups: %s", exc)
            return []

    async def _on_activate(self, message: InboundMessage, now: float) -> None:
        state = self.session.state
        if state.phase is SessionPhase.ACTIVE:
            stop = (self.config.aliases.get("deactivate") or [".x"])[0]
            await self._reply(
                message.chat_id,
                f"✅ Already active in: {state.bound_group_name or state.bound_group_id}\n"
                f"Send {stop} first to pick another group.",
            )
            return
        if state.phase is SessionPhase.BOUND_INACTIVE:
            self.session.activate(now)
            await self._reply(message.chat_id, f"✅ Bot activated in: {state.bound_group_name}")
            return
        groups = await self._list_groups()
        if not groups:
            await self._reply(message.chat_id, "❌ No groups found!")
            return
        self.session.pending_groups = groups
        lines = ["📋 Available Groups:"]
        for index, group in enumerate(groups, start=1):
            lines.append(f"{index}. {group.name} ({group.member_count} members)")
        lines.append("")
        lines.append("Reply with the group number to activate the bot in that group.")
        await self._reply(message.chat_id, "\n".join(lines))

    async def _on_select(self, message: InboundMessage, now: float) -> None:
        groups = self.session.pending_groups or await self._list_groups()
        group = self.session.select(int(message.text.strip()), groups, now)
        if group is None:
            await self._reply(message.chat_id, "❌ Invalid group number!")
            return
        await self._reply(
            message.chat_id,
            f"✅ Bot activated in: {group.name}\n\nNow the bot will only respond in this group.",
        )

    # ----- pipeline -----
    def detect(self, text: str) -> Optional[Detection]:
        with stage("extract"):
            words = extract_tokens(text)
        if not words:
            return None
        if self.config.repeat_guard and text == self._last_detection_text:
            log.debug("ignoring repeated text")
            return None
        with stage("classify"):
            tokens = [token for token in self.classifier.tokens(words) if token.is_candidate]
        if not tokens:
            return None
        self._last_detection_text = text
        return Detection(text=text, tokens=tokens, matchup=is_matchup(text))

    async def _names(self, detection: Detection) -> List[str]:
        words = detection.words
        if self.resolver is None or not self.config.resolver.enabled:
            return words
        resolved = await asyncio.gather(*(self.resolver.resolve(word) for word in words))
        return [
            mapping.display_name if mapping is not None else word
            for word, mapping in zip(words, resolved)
        ]

    async def _respond(self, chat_id: str, detection: Detection) -> Optional[ResponsePlan]:
        with stage("resolve"):
            names = await self._names(detection)
        with stage("plan"):
            plan = self.mistakes.plan(names)
            delay = compute_delay(
                plan.token_count, plan.mistake_kind, rng=self.rng, timing=self.config.timing
            )
        if plan.is_mistake:
            log.debug("mistake %s planned, reply in %dms", plan.mistake_kind.value, delay)
        await self._sleep(delay / 1000)
        with stage("send"):
            await self.transport.send_text(chat_id, plan.text)
        if plan.is_mistake and plan.correct:
            self._spawn(self._correct(chat_id, plan))
        return plan

    async def _correct(self, chat_id: str, plan: ResponsePlan) -> None:
        await self._sleep(correction_delay(self.rng, self.config.timing) / 1000)
        if self.config.guard_corrections and not self.session.still_bound_to(chat_id):
            log.info("dropping correction for %s: session moved on", chat_id)
            return
        with stage("correct"):
            await self.transport.send_text(chat_id, plan.correction_text)

    # ----- tasks -----
    def _record(self, exc: StageError) -> None:
        self.failures.append(exc)
        log.warning("%s", exc)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, StageError):
            self._record(exc)
        elif exc is not None:
            log.error("background task failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for every pending reply and correction, including ones spawned meanwhile."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def status(self) -> dict:
        state = self.session.state
        activate = " or ".join(self.config.aliases.get("activate") or [".a"])
        if state.phase is SessionPhase.ACTIVE:
            summary = "Active in selected group - Detecting anime characters"
        else:
            summary = f"Inactive - Send {activate} to activate"
        return {
            "active": state.is_active,
            "phase": state.phase.value,
            "selected_group": state.bound_group_id,
            "characters_learned": len(self.mappings.learned),
            "status": summary,
        }


AgentFactory = Callable[[DetectorConfig, Any], DetectorAgent]


def make_factory(
    mappings: MappingStore,
    resolver: Optional[NameResolver] = None,
    **agent_kwargs: Any,
) -> AgentFactory:
    def build(config: DetectorConfig, transport: Any) -> DetectorAgent:
        if resolver is not None:
            resolver.min_interval = config.resolver.min_interval
            resolver.max_attempts = config.resolver.max_attempts
            resolver.backoff = config.resolver.backoff
            resolver.timeout = config.resolver.timeout
        return DetectorAgent(
            transport, config=config, mappings=mappings, resolver=resolver, **agent_kwargs
        )

    return build


class AgentHandle:
    """Owns the live agent for one transport and swaps it on config change.

    A swap builds a fresh agent from the new config, copies the session state
    and replay guards across, then replaces the reference. Replies already in
    flight finish on the retired agent, which from then on shares the live
    session so a late correction sees the current binding. Retired agents are
    dropped once they have nothing left in flight.
    """

    def __init__(self, factory: AgentFactory, watcher: ConfigWatcher) -> None:
        self._factory = factory
        self.watcher = watcher
        self.transport: Any = None
        self.agent: Optional[DetectorAgent] = None
        self._retired: List[DetectorAgent] = []

    def attach(self, transport: Any) -> DetectorAgent:
        self.transport = transport
        self.agent = self._factory(self.watcher.current, transport)
        return self.agent

    def swap(self, agent: DetectorAgent) -> None:
        previous = self.agent
        if previous is not None:
            agent.adopt(previous)
            if previous.pending:
                self._retired.append(previous)
            # Corrections still queued on retired agents must see the live session.
            for retired in [previous, *self._retired]:
                retired.session = agent.session
        self.agent = agent

    def _prune(self) -> None:
        self._retired = [agent for agent in self._retired if agent.pending]

    def refresh(self) -> bool:
        if self.agent is None:
            return False
        self._prune()
        config = self.watcher.poll()
        if config is None:
            return False
        try:
            agent = self._factory(config, self.transport)
        except Exception as exc:
            log.warning("failed to rebuild agent after config change: %s", exc)
            return False
        self.swap(agent)
        log.info("agent reloaded")
        return True

    async def dispatch(self, messages: Sequence[InboundMessage]) -> None:
        if self.agent is None:
            raise RuntimeError("no transport attached")
        self.refresh()
        await self.agent.handle_batch(messages)

    async def drain(self) -> None:
        retired, self._retired = self._retired, []
        for agent in retired:
            await agent.drain()
        if self.agent is not None:
            await self.agent.drain()

    def status(self) -> dict:
        if self.agent is None:
            return {"status": "initializing"}
        return self.agent.status()
