from .mailbox import MailboxService

__all__ = ["MailboxService"]
