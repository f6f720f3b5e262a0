"""
Event Type Constants

Centralized definitions for all event types dispatched by the session core.
"""

CHAT_SESSION_CREATED = "CHAT_SESSION_CREATED"
"""
Dispatched after a new session has been durably written.

Payload:
    session_id (str): Identifier of the new session
    owner_id (str): Owning user identifier
    title (str): Initial session title
"""

CHAT_MESSAGE_ADDED = "CHAT_MESSAGE_ADDED"
"""
Dispatched whenever a message is committed to a session.

Payload:
    session_id (str): Identifier for the conversation session
    message_id (str): Identifier of the committed message
    role (str): 'user' or 'assistant'
    content (str): Message content
    message_count (int): Number of messages in the session after the append
    token_usage (dict, optional): Provider-reported or estimated token usage
"""

CHAT_SESSION_UPDATED = "CHAT_SESSION_UPDATED"
"""
Dispatched when session attributes change (title, restore).

Payload:
    session_id (str): Identifier for the conversation session
    title (str): Current title
    is_active (bool): Current lifecycle flag
"""

CHAT_SESSION_CLEARED = "CHAT_SESSION_CLEARED"
"""
Dispatched after all messages of a session were removed.

Payload:
    session_id (str): Identifier for the conversation session
"""

CHAT_SESSION_DEACTIVATED = "CHAT_SESSION_DEACTIVATED"
"""
Dispatched when a session is soft-deleted.

Payload:
    session_id (str): Identifier for the conversation session
"""

CHAT_SESSION_DELETED = "CHAT_SESSION_DELETED"
"""
Dispatched when a session is permanently removed.

Payload:
    session_id (str): Identifier for the removed session
"""

CHAT_COMPLETION_FAILED = "CHAT_COMPLETION_FAILED"
"""
Dispatched when the assistant reply could not be produced.

Payload:
    session_id (str): Identifier for the conversation session
    message (str): Human-readable failure description
    error_type (str): Exception class name
    suggestions (list[str]): Hints the UI may surface to the user
"""
