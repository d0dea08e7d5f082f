"""Kephale — presence and real-time delivery for the Kephale messenger.

Tracks who is online, hands incoming calls between devices, fans events
out to user and conversation channels, and delivers Web Push notifications
to registered devices.
"""

__version__ = "0.1.0"
