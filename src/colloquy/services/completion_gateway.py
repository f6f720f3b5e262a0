import asyncio
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Collection, Dict, Generator, List, Optional, Tuple, Union

import httpx
from google.api_core import exceptions as google_exceptions

from src.colloquy.config import DEFAULT_TITLE, MODE_CONFIG, TITLE_MAX_CHARS
from src.colloquy.models.exceptions import (
    ColloquyError,
    CompletionCancelled,
    EmptyContent,
    ProviderConnectionError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailable,
    SessionNotFound,
)
from src.colloquy.models.session import CompletionResult, Message, ThinkingMode
from src.colloquy.services.history_assembler import HistoryAssembler, estimate_tokens
from src.colloquy.services.session_cache import SessionCache
from src.colloquy.services.session_store import SessionStore
from src.providers.base import CompletionProvider

logger = logging.getLogger(__name__)

TITLE_PROMPT_TEMPLATE = """Generate a concise, descriptive title (max 6 words) for a chat session that starts with this message: "{message}".

Rules:
- Maximum 6 words
- No quotes or punctuation at the end
- Capture the main topic or intent
- Be specific but brief
- Use title case

Examples:
"Show me all high priority findings" -> "High Priority Findings Review"
"Analyze project completion rates" -> "Project Completion Analysis"
"What are the common issues?" -> "Common Issues Overview"

Title:"""


@dataclass
class ConversationHandle:
    """
    Cached provider-side chat plus the bookkeeping needed to detect staleness.

    Attributes:
        chat: Opaque object returned by the provider's start_conversation().
        model_name: Model the chat was opened with.
        mode: Thinking mode the chat's generation config was built from.
        synced_message_count: Number of committed session messages the chat mirrors.
        context_messages: Turns the chat currently holds and resends with each message.
        context_tokens: Estimated tokens across those turns.
    """
    chat: Any
    model_name: str
    mode: ThinkingMode
    synced_message_count: int
    context_messages: int = 0
    context_tokens: int = 0

    def fits(self, max_messages: int, max_tokens: int) -> bool:
        return self.context_messages <= max_messages and self.context_tokens <= max_tokens


class CompletionGateway:
    """
    Wraps the AI completion provider call for a session.

    Responsibilities:
    - Assemble bounded history and inject it into the provider call.
    - Reuse cached provider handles when the provider keeps chat state.
    - Normalize provider failures into ProviderUnavailable subclasses.

    The gateway never persists messages and never retries; retry policy belongs
    to the caller.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        model_name: str,
        store: SessionStore,
        assembler: HistoryAssembler,
        cache: SessionCache,
    ) -> None:
        self.provider = provider
        self.model_name = model_name
        self.store = store
        self.assembler = assembler
        self.cache = cache

    # ------------------- Public API -------------------
    def ask(
        self,
        session_id: str,
        new_user_message: str,
        mode: Union[ThinkingMode, str] = ThinkingMode.LOW,
        *,
        exclude_ids: Collection[str] = (),
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResult:
        """
        Request the assistant reply to ``new_user_message`` within a session.

        Args:
            session_id: Session whose committed history provides context.
            new_user_message: The user's new turn.
            mode: Thinking mode selecting the generation profile.
            exclude_ids: Ids of in-flight messages to keep out of the history.
            cancel_event: Set by the caller to abandon the completion.

        Returns:
            The normalized completion result.

        Raises:
            EmptyContent: If the new message is blank.
            SessionNotFound: If the session does not exist.
            StoreUnavailable: If the history could not be loaded.
            CompletionCancelled: If the caller abandoned the request.
            ProviderUnavailable: If the provider call could not be completed.
        """
        if not new_user_message or not new_user_message.strip():
            raise EmptyContent("Cannot request a completion for an empty message.", session_id=session_id)
        mode = ThinkingMode(mode)
        config = dict(MODE_CONFIG[mode.value])

        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        committed = [message for message in session.messages if message.id not in exclude_ids]

        started = time.monotonic()
        handle: Optional[ConversationHandle] = None
        used_cached_handle = False
        history_length = 0
        try:
            self._raise_if_cancelled(session_id, cancel_event)
            if self.provider.supports_conversation_handles:
                handle, used_cached_handle, history_length = self._resolve_handle(
                    session_id, committed, mode, config
                )
                stream = self.provider.stream_conversation(handle.chat, new_user_message)
            else:
                history = self.assembler.assemble(committed)
                history_length = len(history)
                messages = [turn.as_dict() for turn in history]
                messages.append({"role": "user", "content": new_user_message})
                stream = self.provider.stream_chat_structured(self.model_name, messages, config)
            text = self._collect(stream, session_id, cancel_event)
        except ColloquyError:
            self.cache.evict(session_id)
            raise
        except Exception as exc:  # noqa: BLE001 - classified below
            self.cache.evict(session_id)
            error = self._categorize_exception(exc, session_id)
            logger.error("Completion failed for session %s: %s", session_id, error)
            raise error from exc

        if not text.strip():
            self.cache.evict(session_id)
            raise ProviderUnavailable(
                f"{self.provider.provider_name} returned an empty completion.",
                session_id=session_id,
                provider_name=self.provider.provider_name,
            )

        if handle is not None:
            handle.synced_message_count = len(committed) + 2
            handle.context_messages += 2
            handle.context_tokens += estimate_tokens(new_user_message) + estimate_tokens(text)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Completion for session %s succeeded in %d ms (history=%d, cached_handle=%s)",
            session_id,
            elapsed_ms,
            history_length,
            used_cached_handle,
        )
        return CompletionResult(
            text=text,
            provider_name=self.provider.provider_name,
            model_name=self.model_name,
            mode=mode,
            used_cached_handle=used_cached_handle,
            history_length=history_length,
            response_time_ms=elapsed_ms,
            estimated_tokens=estimate_tokens(new_user_message) + estimate_tokens(text),
        )

    def generate_title(self, first_message: str) -> str:
        """
        Ask the provider for a short session title derived from the first message.

        Raises:
            ProviderUnavailable: If the provider call could not be completed.
        """
        prompt = TITLE_PROMPT_TEMPLATE.format(message=first_message.strip())
        try:
            text = self._collect(
                self.provider.stream_chat(self.model_name, prompt, dict(MODE_CONFIG[ThinkingMode.LOW.value])),
                None,
                None,
            )
        except Exception as exc:  # noqa: BLE001 - classified below
            error = self._categorize_exception(exc, None)
            logger.warning("Title generation failed: %s", error)
            raise error from exc
        return self.clean_title(text)

    @staticmethod
    def clean_title(raw: str) -> str:
        lines = [line.strip() for line in (raw or "").splitlines() if line.strip()]
        title = lines[0] if lines else ""
        title = title.strip("\"'").strip()
        if title.endswith("."):
            title = title[:-1].rstrip()
        if len(title) > TITLE_MAX_CHARS:
            title = title[: TITLE_MAX_CHARS - 3] + "..."
        return title or DEFAULT_TITLE

    # ------------------- Handle management -------------------
    def _resolve_handle(
        self,
        session_id: str,
        committed: List[Message],
        mode: ThinkingMode,
        config: Dict[str, Any],
    ) -> Tuple[ConversationHandle, bool, int]:
        cached = self.cache.get(session_id)
        if (
            isinstance(cached, ConversationHandle)
            and cached.model_name == self.model_name
            and cached.mode == mode
            and cached.synced_message_count == len(committed)
            and cached.fits(self.assembler.max_messages, self.assembler.max_tokens)
        ):
            logger.debug("Reusing cached provider handle for session %s", session_id)
            return cached, True, 0

        if cached is not None:
            logger.debug("Discarding stale provider handle for session %s", session_id)
            self.cache.evict(session_id)

        history = self.assembler.assemble(committed)
        chat = self.provider.start_conversation(
            self.model_name,
            [turn.as_dict() for turn in history],
            config,
        )
        handle = ConversationHandle(
            chat=chat,
            model_name=self.model_name,
            mode=mode,
            synced_message_count=len(committed),
            context_messages=len(history),
            context_tokens=sum(estimate_tokens(turn.content) for turn in history),
        )
        self.cache.put(session_id, handle)
        return handle, False, len(history)

    # ------------------- Streaming helpers -------------------
    def _collect(
        self,
        stream: Generator[str, None, None],
        session_id: Optional[str],
        cancel_event: Optional[threading.Event],
    ) -> str:
        chunks: List[str] = []
        try:
            for chunk in stream:
                self._raise_if_cancelled(session_id, cancel_event)
                if chunk is None:
                    continue
                chunks.append(str(chunk))
            self._raise_if_cancelled(session_id, cancel_event)
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
        return "".join(chunks)

    @staticmethod
    def _raise_if_cancelled(session_id: Optional[str], cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Completion for session %s was cancelled by the caller", session_id)
            raise CompletionCancelled("Completion was cancelled.", session_id=session_id)

    # ------------------- Error classification -------------------
    def _categorize_exception(self, exc: Exception, session_id: Optional[str]) -> ProviderUnavailable:
        """
        Classify a provider exception into the ProviderUnavailable family.

        Args:
            exc: The exception raised by the provider.
            session_id: Session associated with the request, if any.

        Returns:
            The classified error.
        """
        provider_name = self.provider.provider_name
        if isinstance(exc, ProviderUnavailable):
            return exc

        if self._is_timeout_error(exc):
            error_type = ProviderTimeoutError
            message = f"Timeout while waiting for {provider_name}: {exc}"
        elif self._is_rate_limit_error(exc):
            error_type = ProviderRateLimitError
            message = f"Rate limit encountered at {provider_name}: {exc}"
        elif self._is_connection_error(exc):
            error_type = ProviderConnectionError
            message = f"Connection issue while contacting {provider_name}: {exc}"
        else:
            error_type = ProviderUnavailable
            message = f"Unhandled provider error from {provider_name}: {exc}"

        return error_type(message, session_id=session_id, provider_name=provider_name, cause=exc)

    @staticmethod
    def _is_timeout_error(exc: Exception) -> bool:
        """
        Determine whether the exception represents a timeout condition.
        """
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, socket.timeout)):
            return True
        if isinstance(exc, (httpx.TimeoutException, google_exceptions.DeadlineExceeded)):
            return True

        message = str(exc).lower()
        return "timeout" in message or "timed out" in message

    @staticmethod
    def _is_rate_limit_error(exc: Exception) -> bool:
        """
        Determine whether the exception represents a rate limit or quota issue.
        """
        if isinstance(exc, google_exceptions.ResourceExhausted):
            return True
        if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
            return True
        if getattr(exc, "status_code", None) == 429:
            return True

        message = str(exc).lower()
        return "rate limit" in message or "quota" in message

    @staticmethod
    def _is_connection_error(exc: Exception) -> bool:
        """
        Determine whether the exception represents a connectivity problem.
        """
        connection_indicators = (
            "connection reset",
            "connection aborted",
            "connection refused",
            "temporary failure in name resolution",
            "network unreachable",
            "connection closed",
            "dns failure",
        )

        if isinstance(exc, (ConnectionError, socket.gaierror)):
            return True
        if isinstance(exc, (httpx.TransportError, google_exceptions.ServiceUnavailable)):
            return True

        message = str(exc).lower()
        return any(indicator in message for indicator in connection_indicators)
