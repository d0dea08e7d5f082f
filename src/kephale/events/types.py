"""Real-time event names.

Learn: Centralizing event names as constants prevents typos and makes
it easy to see everything a client may receive. The names are part of
the wire contract with the web client, so they keep its colon style.
"""

# ─── Calls (user channel) ────────────────────────────────

CALL_INCOMING = "call:incoming"
CALL_ANSWERED = "call:answered"
CALL_REJECTED = "call:rejected"
CALL_ENDED = "call:ended"
CALL_ICE_CANDIDATE = "call:ice-candidate"

# ─── Conversations (conversation channel) ────────────────

MESSAGE_NEW = "message:new"
TYPING_USER = "typing:user"

# ─── Notifications (user channel) ────────────────────────

NOTIFICATION_NEW = "notification:new"
