"""
Conversation Identifiers

Conversation ids double as storage keys (file names, lock names), so only
letters, digits, ``_``, ``-`` and non-leading dots are accepted.
"""

import re

from toolrelay.core.domain.errors import InvalidConversationIdError

CONVERSATION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}")


def validate_conversation_id(conversation_id: str) -> str:
    """Return the id unchanged or raise InvalidConversationIdError."""
    if not isinstance(conversation_id, str) or not CONVERSATION_ID_PATTERN.fullmatch(conversation_id):
        raise InvalidConversationIdError(f"Invalid conversation id: {conversation_id!r}")
    return conversation_id
