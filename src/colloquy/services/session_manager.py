import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from src.colloquy.app.event_bus import EventBus
from src.colloquy.config import DEFAULT_TITLE, TITLE_MAX_CHARS
from src.colloquy.models.event_types import (
    CHAT_COMPLETION_FAILED,
    CHAT_MESSAGE_ADDED,
    CHAT_SESSION_CLEARED,
    CHAT_SESSION_CREATED,
    CHAT_SESSION_DEACTIVATED,
    CHAT_SESSION_DELETED,
    CHAT_SESSION_UPDATED,
)
from src.colloquy.models.events import Event
from src.colloquy.models.exceptions import (
    ColloquyError,
    CompletionCancelled,
    EmptyContent,
    Forbidden,
    InvalidMetadata,
    InvalidOwner,
    InvalidRole,
    InvalidTitle,
    ProviderUnavailable,
    SessionNotFound,
)
from src.colloquy.models.session import (
    ConversationTurn,
    Message,
    MessageRole,
    MessageSearchHit,
    Session,
    ThinkingMode,
    utc_now,
)
from src.colloquy.services.completion_gateway import CompletionGateway
from src.colloquy.services.history_assembler import HistoryAssembler
from src.colloquy.services.session_cache import SessionCache
from src.colloquy.services.session_store import SessionStore

logger = logging.getLogger(__name__)

TITLE_MAX_WORDS = 8
SEARCH_SNIPPET_RADIUS = 80


def derive_title(content: str, max_words: int = TITLE_MAX_WORDS, max_chars: int = TITLE_MAX_CHARS) -> str:
    """
    Build a provisional title from the opening words of a message.

    Returns:
        At most ``max_words`` words and ``max_chars`` characters, or the
        default title when the message has no words.
    """
    words = (content or "").split()
    if not words:
        return DEFAULT_TITLE
    title = " ".join(words[:max_words])
    if len(title) > max_chars:
        title = title[: max_chars - 3].rstrip() + "..."
    return title


class SessionManager:
    """
    Owns the session lifecycle and every mutation of a session.

    Responsibilities:
    - Create, list, load, retitle, soft-delete, restore and permanently delete
      sessions on behalf of their owner.
    - Commit messages in strict order with non-decreasing timestamps.
    - Drive a conversational turn through the completion gateway without ever
      committing a partial or failed assistant reply.
    - Keep the provider-handle cache in step with lifecycle changes.

    Mutations on one session are serialized by a per-session lock; different
    sessions proceed in parallel.
    """

    _FAILURE_SUGGESTIONS: Tuple[str, ...] = (
        "Check your LLM API key configuration.",
        "Verify your provider quota usage.",
        "Ensure your network connection is stable.",
    )

    def __init__(
        self,
        store: SessionStore,
        cache: SessionCache,
        assembler: HistoryAssembler,
        gateway: Optional[CompletionGateway] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initializes the SessionManager.

        Args:
            store: Adapter translating sessions to document store records.
            cache: Provider-handle cache shared with the completion gateway.
            assembler: Builds the history window for get_conversation_history().
            gateway: Completion gateway; required only for send_message().
            event_bus: Optional bus notified after each committed change.
            clock: Returns the current time as a timezone-aware UTC datetime.
        """
        self.store = store
        self.cache = cache
        self.assembler = assembler
        self.gateway = gateway
        self.event_bus = event_bus
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.RLock()

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #
    def create_session(self, owner_id: str, title: Optional[str] = None) -> Session:
        """
        Create and persist a new, empty, active session.

        Args:
            owner_id: Identifier of the owning user.
            title: Optional initial title; blank or missing falls back to the default.

        Raises:
            InvalidOwner: If owner_id is blank.
            StoreUnavailable: If the session could not be written.
        """
        owner_id = self._require_owner(owner_id)
        now = self._clock()
        session = Session(
            owner_id=owner_id,
            title=(title or "").strip() or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
        )
        self.store.save(session)
        logger.info("Created session %s for user %s", session.id, owner_id)
        self._emit(
            CHAT_SESSION_CREATED,
            {"session_id": session.id, "owner_id": owner_id, "title": session.title},
        )
        return session

    def get_user_sessions(self, owner_id: str, active_only: bool = True) -> List[Session]:
        """Return the owner's sessions, most recently updated first."""
        owner_id = self._require_owner(owner_id)
        return self.store.query(owner_id, active_only=active_only)

    def get_session(self, session_id: str, caller_id: Optional[str] = None) -> Optional[Session]:
        """
        Load a session snapshot.

        Returns:
            The session, or None if it does not exist.

        Raises:
            Forbidden: If caller_id is given and does not own the session.
        """
        session = self.store.load(session_id)
        if session is None:
            return None
        self._check_owner(session, caller_id)
        return session

    def get_most_recent_session(self, owner_id: str) -> Optional[Session]:
        owner_id = self._require_owner(owner_id)
        sessions = self.store.query(owner_id, active_only=True, limit=1)
        return sessions[0] if sessions else None

    def get_or_create_session(self, owner_id: str, title: Optional[str] = None) -> Session:
        """Return the owner's most recent active session, creating one if none exists."""
        session = self.get_most_recent_session(owner_id)
        if session is not None:
            return session
        logger.debug("No active session found for user %s; creating one", owner_id)
        return self.create_session(owner_id, title)

    def update_session_title(self, session_id: str, title: str, *, caller_id: str) -> Session:
        """
        Rename a session. An identical title leaves the session untouched.

        Raises:
            InvalidTitle: If the title is blank.
            SessionNotFound: If the session does not exist.
            Forbidden: If the caller does not own the session.
        """
        title = (title or "").strip()
        if not title:
            raise InvalidTitle("Session title cannot be empty.", session_id=session_id)

        with self._session_lock(session_id):
            session = self._load_required(session_id, caller_id)
            if session.title == title:
                return session
            updated = self.store.patch(session_id, updated_at=self._next_timestamp(session), title=title)
            if updated is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        logger.info("Renamed session %s to '%s'", session_id, title)
        self._emit_session_updated(updated)
        return updated

    def deactivate_session(self, session_id: str, *, caller_id: str) -> None:
        """
        Soft-delete a session. Absent or already inactive sessions are left as they are.

        Raises:
            Forbidden: If the caller does not own the session.
        """
        with self._session_lock(session_id):
            session = self.store.load(session_id)
            if session is None:
                self.cache.evict(session_id)
                return
            self._check_owner(session, caller_id, required=True)
            self.cache.evict(session_id)
            if not session.is_active:
                return
            self.store.patch(session_id, updated_at=self._next_timestamp(session), is_active=False)

        logger.info("Deactivated session %s", session_id)
        self._emit(CHAT_SESSION_DEACTIVATED, {"session_id": session_id})

    def restore_session(self, session_id: str, *, caller_id: str) -> Session:
        """
        Reactivate a soft-deleted session.

        Raises:
            SessionNotFound: If the session does not exist.
            Forbidden: If the caller does not own the session.
        """
        with self._session_lock(session_id):
            session = self._load_required(session_id, caller_id)
            if session.is_active:
                return session
            updated = self.store.patch(session_id, updated_at=self._next_timestamp(session), is_active=True)
            if updated is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        logger.info("Restored session %s", session_id)
        self._emit_session_updated(updated)
        return updated

    def delete_session(self, session_id: str, *, caller_id: str) -> bool:
        """
        Permanently remove a session and all of its messages.

        Returns:
            True if a session was removed, False if it did not exist.

        Raises:
            Forbidden: If the caller does not own the session.
        """
        with self._session_lock(session_id):
            session = self.store.load(session_id)
            if session is not None:
                self._check_owner(session, caller_id, required=True)
            self.cache.evict(session_id)
            removed = session is not None and self.store.remove(session_id)
        with self._locks_guard:
            self._locks.pop(session_id, None)

        if removed:
            logger.info("Deleted session %s", session_id)
            self._emit(CHAT_SESSION_DELETED, {"session_id": session_id})
        return removed

    def clear_session_messages(self, session_id: str, *, caller_id: str) -> Session:
        """
        Remove every message while keeping the session's identity and creation time.

        Raises:
            SessionNotFound: If the session does not exist.
            Forbidden: If the caller does not own the session.
        """
        with self._session_lock(session_id):
            session = self._load_required(session_id, caller_id)
            updated = self.store.patch(
                session_id,
                updated_at=self._next_timestamp(session),
                clear_messages=True,
            )
            self.cache.evict(session_id)
            if updated is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        logger.info("Cleared %d message(s) from session %s", len(session.messages), session_id)
        self._emit(CHAT_SESSION_CLEARED, {"session_id": session_id})
        return updated

    def purge_inactive_sessions(self, owner_id: str, older_than_days: int = 30) -> int:
        """
        Permanently delete the owner's inactive sessions not updated within the window.

        Returns:
            The number of sessions removed.
        """
        owner_id = self._require_owner(owner_id)
        cutoff = self._clock() - timedelta(days=older_than_days)
        purged = 0
        for session in self.store.query(owner_id, active_only=False):
            if session.is_active or session.updated_at >= cutoff:
                continue
            if self.delete_session(session.id, caller_id=owner_id):
                purged += 1
        if purged:
            logger.info("Purged %d inactive session(s) for user %s", purged, owner_id)
        return purged

    def close(self) -> None:
        """Drop every cached provider handle and release the store."""
        dropped = self.cache.clear()
        logger.debug("Session cache cleared on shutdown (%d handle(s))", dropped)
        self.store.close()

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #
    def add_message(
        self,
        session_id: str,
        role: Union[MessageRole, str],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        caller_id: str,
    ) -> Session:
        """
        Commit one message to the end of a session.

        Args:
            session_id: Target session.
            role: 'user' or 'assistant'.
            content: Message text; must not be blank.
            metadata: Optional opaque mapping stored with the message.
            caller_id: Identity of the user performing the append.

        Returns:
            The session snapshot after the append.

        Raises:
            EmptyContent: If content is blank.
            InvalidRole: If role is not a persisted role.
            SessionNotFound: If the session does not exist.
            Forbidden: If the caller does not own the session.
            StoreUnavailable: If the append could not be written.
        """
        session, _ = self._append(session_id, role, content, metadata, caller_id)
        return session

    def get_conversation_history(self, session_id: str, caller_id: Optional[str] = None) -> List[ConversationTurn]:
        """Return the bounded history window for a session; empty if it does not exist."""
        session = self.store.load(session_id)
        if session is None:
            return []
        self._check_owner(session, caller_id)
        return self.assembler.assemble(session.messages)

    def search_messages(
        self,
        owner_id: str,
        query: str,
        limit: int = 50,
        include_inactive: bool = False,
    ) -> List[MessageSearchHit]:
        """
        Case-insensitive substring search across the owner's sessions.

        Returns:
            Matches with a short snippet around the hit, newest first.
        """
        owner_id = self._require_owner(owner_id)
        term = (query or "").strip()
        if not term:
            return []

        needle = term.lower()
        hits: List[MessageSearchHit] = []
        for session in self.store.query(owner_id, active_only=not include_inactive):
            for message in session.messages:
                if needle not in message.content.lower():
                    continue
                hits.append(
                    MessageSearchHit(
                        session_id=session.id,
                        session_title=session.title,
                        message_id=message.id,
                        role=message.role,
                        snippet=self._build_snippet(message.content, term),
                        timestamp=message.timestamp,
                    )
                )
        hits.sort(key=lambda hit: hit.timestamp, reverse=True)
        return hits[:limit]

    # ------------------------------------------------------------------ #
    # Conversational turns
    # ------------------------------------------------------------------ #
    def send_message(
        self,
        session_id: str,
        content: str,
        mode: Union[ThinkingMode, str] = ThinkingMode.LOW,
        *,
        caller_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Session:
        """
        Commit a user turn, request the assistant reply and commit it.

        The user turn stays committed whatever happens afterwards. The assistant
        turn is committed only when the completion succeeded and the caller did
        not abandon the request.

        Args:
            session_id: Target session.
            content: The user's message.
            mode: Thinking mode forwarded to the provider.
            caller_id: Identity of the user sending the message.
            cancel_event: Set by the caller to abandon the pending reply.

        Returns:
            The session snapshot after the assistant turn was committed.

        Raises:
            ProviderUnavailable: If the completion could not be produced.
            CompletionCancelled: If the caller abandoned the request.
        """
        if self.gateway is None:
            raise RuntimeError("SessionManager was created without a completion gateway.")
        mode = ThinkingMode(mode)

        _, user_message = self._append(
            session_id,
            MessageRole.USER,
            content,
            {"thinking_mode": mode.value},
            caller_id,
        )

        try:
            result = self.gateway.ask(
                session_id,
                content,
                mode,
                exclude_ids={user_message.id},
                cancel_event=cancel_event,
            )
        except ProviderUnavailable as exc:
            self._emit_completion_failed(session_id, exc)
            raise

        if cancel_event is not None and cancel_event.is_set():
            self.cache.evict(session_id)
            logger.info("Discarding completion for session %s: request was cancelled", session_id)
            raise CompletionCancelled("Completion was cancelled.", session_id=session_id)

        try:
            session, _ = self._append(
                session_id,
                MessageRole.ASSISTANT,
                result.text,
                result.to_metadata(),
                caller_id,
            )
        except ColloquyError:
            self.cache.evict(session_id)
            raise
        return session

    def generate_session_title(self, session_id: str, *, caller_id: str) -> str:
        """
        Title a session from its first user message and store the result.

        Falls back to the word-based title when the provider is unavailable.

        Returns:
            The session's title after the update.
        """
        session = self._load_required(session_id, caller_id)
        first_message = session.first_user_message()
        if first_message is None:
            return session.title

        title = derive_title(first_message.content)
        if self.gateway is not None:
            try:
                title = self.gateway.generate_title(first_message.content)
            except ProviderUnavailable as exc:
                logger.warning("Falling back to heuristic title for session %s: %s", session_id, exc)

        return self.update_session_title(session_id, title, caller_id=caller_id).title

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _append(
        self,
        session_id: str,
        role: Union[MessageRole, str],
        content: str,
        metadata: Optional[Dict[str, Any]],
        caller_id: str,
    ) -> Tuple[Session, Message]:
        if not isinstance(content, str) or not content.strip():
            raise EmptyContent("Message content cannot be empty.", session_id=session_id)
        try:
            role = MessageRole(role)
        except ValueError as exc:
            raise InvalidRole(f"Unsupported message role: {role!r}", session_id=session_id, cause=exc) from exc
        if metadata is not None:
            try:
                metadata = json.loads(json.dumps(dict(metadata), allow_nan=False))
            except (TypeError, ValueError) as exc:
                raise InvalidMetadata(
                    "Message metadata must be JSON-serializable.", session_id=session_id, cause=exc
                ) from exc

        with self._session_lock(session_id):
            session = self._load_required(session_id, caller_id)
            timestamp = self._next_timestamp(session)
            message = Message(role=role, content=content, timestamp=timestamp, metadata=metadata)
            updated = self.store.append_message(session_id, message, timestamp)
            if updated is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

            if (
                role == MessageRole.USER
                and session.title == DEFAULT_TITLE
                and session.first_user_message() is None
            ):
                title = derive_title(content)
                if title != DEFAULT_TITLE:
                    updated = self.store.patch(session_id, updated_at=timestamp, title=title) or updated

        logger.debug("Committed %s message %s to session %s", role.value, message.id, session_id)
        payload: Dict[str, Any] = {
            "session_id": session_id,
            "message_id": message.id,
            "role": role.value,
            "content": content,
            "message_count": len(updated.messages),
        }
        if metadata and "token_usage" in metadata:
            payload["token_usage"] = metadata["token_usage"]
        self._emit(CHAT_MESSAGE_ADDED, payload)
        return updated, message

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(session_id, threading.Lock())

    def _load_required(self, session_id: str, caller_id: Optional[str]) -> Session:
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        self._check_owner(session, caller_id, required=True)
        return session

    @staticmethod
    def _check_owner(session: Session, caller_id: Optional[str], required: bool = False) -> None:
        if caller_id is None and not required:
            return
        if session.owner_id != caller_id:
            logger.warning("User %s attempted to access session %s owned by another user", caller_id, session.id)
            raise Forbidden(f"Caller does not own session {session.id}", session_id=session.id)

    @staticmethod
    def _require_owner(owner_id: str) -> str:
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise InvalidOwner("Owner identifier cannot be empty.")
        return owner_id

    def _next_timestamp(self, session: Session) -> datetime:
        # Never earlier than anything already recorded for the session.
        candidates = [self._clock(), session.updated_at]
        if session.messages:
            candidates.append(session.messages[-1].timestamp)
        return max(candidates)

    @staticmethod
    def _build_snippet(content: str, query: str, radius: int = SEARCH_SNIPPET_RADIUS) -> str:
        if not content:
            return ""
        lower = content.lower()
        idx = lower.find(query.lower())
        if idx == -1:
            return content[:radius].strip()
        start = max(idx - radius // 2, 0)
        end = min(idx + len(query) + radius // 2, len(content))
        snippet = content[start:end]
        if start > 0:
            snippet = "..." + snippet
        if end < len(content):
            snippet += "..."
        return snippet.strip()

    # ------------------------------------------------------------------ #
    # Event helpers
    # ------------------------------------------------------------------ #
    def _emit_session_updated(self, session: Session) -> None:
        self._emit(
            CHAT_SESSION_UPDATED,
            {"session_id": session.id, "title": session.title, "is_active": session.is_active},
        )

    def _emit_completion_failed(self, session_id: str, error: ProviderUnavailable) -> None:
        self._emit(
            CHAT_COMPLETION_FAILED,
            {
                "session_id": session_id,
                "message": str(error),
                "error_type": type(error).__name__,
                "suggestions": list(self._FAILURE_SUGGESTIONS),
            },
        )

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_bus:
            return
        try:
            self.event_bus.dispatch(Event(event_type=event_type, payload=payload))
        except Exception:
            logger.debug("Failed to dispatch %s event", event_type, exc_info=True)
