"""Channel naming.

A channel scopes event delivery to one user or one conversation.
"""

USER_PREFIX = "private-user-"
CONVERSATION_PREFIX = "presence-conversation-"
TOPIC_PREFIX = "kephale:channel:"

USER = "user"
CONVERSATION = "conversation"


def user_channel(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


def conversation_channel(conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def parse_channel(name: str) -> tuple[str, str]:
    """Split a channel name into (kind, id).

    Raises ValueError for names that aren't a user or conversation channel.
    """
    for prefix, kind in ((USER_PREFIX, USER), (CONVERSATION_PREFIX, CONVERSATION)):
        if name.startswith(prefix):
            ident = name[len(prefix):]
            if ident:
                return kind, ident
    raise ValueError(f"Unknown channel: {name!r}")


def redis_topic(channel: str) -> str:
    """Redis pub/sub topic carrying a channel's events."""
    return f"{TOPIC_PREFIX}{channel}"
