"""
Disposable Mailbox Notification Relay.

Polls disposable mailboxes for new mail and relays notifications to
Telegram chats and WebSocket clients.
"""

__version__ = "0.1.0"
