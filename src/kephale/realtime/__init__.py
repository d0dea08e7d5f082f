"""Real-time infrastructure — Redis pub/sub + WebSocket.

Learn: Events flow through two hops:
1. Services → Redis PUBLISH on kephale:channel:{channel}
2. Redis SUBSCRIBE → WebSocket → client, for every channel the
   connection is authorized for

Channel names mirror what the web client already uses:
private-user-{id} for per-user events (calls, notifications) and
presence-conversation-{id} for conversation events (messages, typing).
"""
