import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from src.colloquy.config import SESSIONS_COLLECTION
from src.colloquy.models.exceptions import StoreUnavailable
from src.colloquy.models.session import Message, Session
from src.colloquy.services.document_store import DocumentStore

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Translates Session and Message entities to and from document store records.

    Records live in the ``chatSessions`` collection, one document per session,
    using the camelCase layout shared with other clients of the same store.
    ``save`` is a full-document replace; message appends go through
    ``append_message`` which relies on the store's atomic array append.
    """

    def __init__(self, store: DocumentStore, collection: str = SESSIONS_COLLECTION) -> None:
        self.store = store
        self.collection = collection

    # --------------------------------------------------------------------- #
    # Read / write primitives
    # --------------------------------------------------------------------- #
    def load(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        record = self.store.get(self.collection, session_id)
        return self._record_to_session(record) if record else None

    def save(self, session: Session) -> None:
        self.store.put(self.collection, session.id, self._session_to_record(session))
        logger.debug("Saved session %s (%d messages)", session.id, len(session.messages))

    def query(self, owner_id: str, active_only: bool = True, limit: Optional[int] = None) -> List[Session]:
        filters = [("userId", "==", owner_id)]
        if active_only:
            filters.append(("isActive", "==", True))
        records = self.store.find(
            self.collection,
            filters,
            order_by="updatedAt",
            descending=True,
            limit=limit,
        )
        return [self._record_to_session(record) for record in records]

    def remove(self, session_id: str) -> bool:
        removed = self.store.delete(self.collection, session_id)
        if removed:
            logger.debug("Removed session %s from store", session_id)
        return removed

    def append_message(self, session_id: str, message: Message, updated_at: datetime) -> Optional[Session]:
        """
        Append one message and bump ``updatedAt`` in a single atomic store operation.

        Returns:
            The updated session, or None if the session does not exist.
        """
        record = self.store.array_append(
            self.collection,
            session_id,
            "messages",
            self._message_to_record(message),
            updates={"updatedAt": self._format_timestamp(updated_at)},
        )
        return self._record_to_session(record) if record else None

    def patch(
        self,
        session_id: str,
        *,
        updated_at: datetime,
        title: Optional[str] = None,
        is_active: Optional[bool] = None,
        clear_messages: bool = False,
    ) -> Optional[Session]:
        """
        Set session-level fields without rewriting the message list.

        Returns:
            The updated session, or None if the session does not exist.
        """
        updates: Dict[str, Any] = {"updatedAt": self._format_timestamp(updated_at)}
        if title is not None:
            updates["title"] = title
        if is_active is not None:
            updates["isActive"] = is_active
        if clear_messages:
            updates["messages"] = []
        record = self.store.update(self.collection, session_id, updates)
        return self._record_to_session(record) if record else None

    def close(self) -> None:
        self.store.close()

    # --------------------------------------------------------------------- #
    # Record translation
    # --------------------------------------------------------------------- #
    def _session_to_record(self, session: Session) -> Dict[str, Any]:
        return {
            "id": session.id,
            "userId": session.owner_id,
            "title": session.title,
            "messages": [self._message_to_record(message) for message in session.messages],
            "createdAt": self._format_timestamp(session.created_at),
            "updatedAt": self._format_timestamp(session.updated_at),
            "isActive": session.is_active,
        }

    def _message_to_record(self, message: Message) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": message.id,
            "role": message.role.value,
            "content": message.content,
            "timestamp": self._format_timestamp(message.timestamp),
        }
        if message.metadata is not None:
            record["metadata"] = message.metadata
        return record

    def _record_to_session(self, record: Dict[str, Any]) -> Session:
        try:
            return Session(
                id=record["id"],
                owner_id=record["userId"],
                title=record.get("title") or "",
                messages=[self._record_to_message(item) for item in record.get("messages") or []],
                created_at=self._parse_timestamp(record["createdAt"]),
                updated_at=self._parse_timestamp(record["updatedAt"]),
                is_active=bool(record.get("isActive", True)),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            logger.error("Malformed session record %s: %s", record.get("id"), exc)
            raise StoreUnavailable(
                f"Malformed session record {record.get('id')}: {exc}",
                session_id=record.get("id"),
                cause=exc,
            ) from exc

    def _record_to_message(self, record: Dict[str, Any]) -> Message:
        return Message(
            id=record["id"],
            role=record["role"],
            content=record["content"],
            timestamp=self._parse_timestamp(record["timestamp"]),
            metadata=record.get("metadata"),
        )

    @staticmethod
    def _format_timestamp(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    @staticmethod
    def _parse_timestamp(value: Any) -> datetime:
        if isinstance(value, datetime):
            parsed = value
        else:
            parsed = datetime.fromisoformat(str(value))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
