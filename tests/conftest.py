from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional

import pytest

from src.colloquy.models.events import Event
from src.colloquy.services.completion_gateway import CompletionGateway
from src.colloquy.services.document_store import InMemoryDocumentStore, SQLiteDocumentStore
from src.colloquy.services.history_assembler import HistoryAssembler
from src.colloquy.services.session_cache import SessionCache
from src.colloquy.services.session_manager import SessionManager
from src.colloquy.services.session_store import SessionStore


class RecordingEventBus:
    """Synchronous in-memory event bus used by tests."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Event], None]]] = {}
        self.dispatched: List[Event] = []

    def subscribe(self, event_type: str, callback: Callable[[Event], None]) -> None:
        self._subscribers.setdefault(event_type, []).append(callback)

    def dispatch(self, event: Event) -> None:
        self.dispatched.append(event)
        for callback in self._subscribers.get(event.event_type, []):
            callback(event)

    def types(self) -> List[str]:
        return [event.event_type for event in self.dispatched]

    def of_type(self, event_type: str) -> List[Event]:
        return [event for event in self.dispatched if event.event_type == event_type]


class StepClock:
    """Deterministic clock; each call advances by ``step`` unless frozen."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def rewind(self, delta: timedelta) -> None:
        self.current = self.current - delta


class ScriptedProvider:
    """
    Stateless provider double: every call receives the full message list.

    Replies are consumed in order; an Exception instance in the script is raised
    instead of streaming.
    """

    provider_name = "Scripted"
    supports_conversation_handles = False

    def __init__(self, replies: Optional[Iterable[Any]] = None, chunk_size: int = 0) -> None:
        self.replies: List[Any] = list(replies or [])
        self.chunk_size = chunk_size
        self.structured_calls: List[Dict[str, Any]] = []
        self.prompt_calls: List[Dict[str, Any]] = []

    def get_available_models(self) -> List[str]:
        return ["scripted-model"]

    def _next_stream(self) -> Generator[str, None, None]:
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, Exception):
            raise reply
        return self._chunks(reply)

    def _chunks(self, reply: str) -> Generator[str, None, None]:
        if not self.chunk_size:
            yield reply
            return
        for start in range(0, len(reply), self.chunk_size):
            yield reply[start:start + self.chunk_size]

    def stream_chat(self, model_name: str, prompt: str, config: Dict[str, Any]) -> Generator[str, None, None]:
        self.prompt_calls.append({"model": model_name, "prompt": prompt, "config": config})
        return self._next_stream()

    def stream_chat_structured(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        config: Dict[str, Any],
    ) -> Generator[str, None, None]:
        self.structured_calls.append({"model": model_name, "messages": list(messages), "config": config})
        return self._next_stream()


class FakeChat:
    def __init__(self, history: List[Dict[str, str]], config: Dict[str, Any]) -> None:
        self.history = list(history)
        self.config = config
        self.sent: List[str] = []
        self.turns: List[Dict[str, str]] = list(history)
        self.context_sizes: List[int] = []


class HandleProvider(ScriptedProvider):
    """Provider double that keeps conversation state in reusable chat handles."""

    provider_name = "Handles"
    supports_conversation_handles = True

    def __init__(self, replies: Optional[Iterable[Any]] = None, chunk_size: int = 0) -> None:
        super().__init__(replies, chunk_size)
        self.chats: List[FakeChat] = []

    def start_conversation(self, model_name: str, history: List[Dict[str, str]], config: Dict[str, Any]) -> FakeChat:
        chat = FakeChat(history, config)
        self.chats.append(chat)
        return chat

    def stream_conversation(self, handle: FakeChat, message: str) -> Generator[str, None, None]:
        handle.sent.append(message)
        handle.turns.append({"role": "user", "content": message})
        handle.context_sizes.append(len(handle.turns))
        return self._record_reply(handle, self._next_stream())

    @staticmethod
    def _record_reply(handle: FakeChat, stream: Generator[str, None, None]) -> Generator[str, None, None]:
        chunks: List[str] = []
        for chunk in stream:
            chunks.append(chunk)
            yield chunk
        handle.turns.append({"role": "assistant", "content": "".join(chunks)})


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Generator[SQLiteDocumentStore, None, None]:
    store = SQLiteDocumentStore(tmp_path / "sessions.db")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def document_store(request: pytest.FixtureRequest, tmp_path: Path):
    """Runs a test against both document store implementations."""
    if request.param == "memory":
        store = InMemoryDocumentStore()
    else:
        store = SQLiteDocumentStore(tmp_path / "sessions.db")
    yield store
    store.close()


@pytest.fixture
def session_store(memory_store: InMemoryDocumentStore) -> SessionStore:
    return SessionStore(memory_store)


@pytest.fixture
def session_cache() -> SessionCache:
    return SessionCache()


@pytest.fixture
def assembler() -> HistoryAssembler:
    return HistoryAssembler(max_messages=30, max_tokens=8000)


@pytest.fixture
def scripted_provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def gateway_factory(
    session_store: SessionStore,
    assembler: HistoryAssembler,
    session_cache: SessionCache,
) -> Callable[[Any], CompletionGateway]:
    def _factory(provider: Any) -> CompletionGateway:
        return CompletionGateway(provider, "test-model", session_store, assembler, session_cache)

    return _factory


@pytest.fixture
def manager_factory(
    session_store: SessionStore,
    session_cache: SessionCache,
    assembler: HistoryAssembler,
    gateway_factory: Callable[[Any], CompletionGateway],
    event_bus: RecordingEventBus,
    clock: StepClock,
) -> Callable[..., SessionManager]:
    """Factory fixture wiring a SessionManager around an optional provider double."""

    def _factory(provider: Any = None) -> SessionManager:
        gateway = gateway_factory(provider) if provider is not None else None
        return SessionManager(
            session_store,
            session_cache,
            assembler,
            gateway=gateway,
            event_bus=event_bus,
            clock=clock,
        )

    return _factory


@pytest.fixture
def manager(manager_factory: Callable[..., SessionManager], scripted_provider: ScriptedProvider) -> SessionManager:
    return manager_factory(scripted_provider)
