"""Exceptions raised by the follow-up scheduler."""
from __future__ import annotations


class FollowUpError(Exception):
    """Base class for follow-up scheduling failures."""


class FollowUpConfigError(FollowUpError):
    """The organization's follow-up config cannot drive a sequence.

    ``code`` is one of ``no-config``, ``config-inactive``, ``no-steps``.
    Not retried: an admin has to fix the configuration first.
    """

    NO_CONFIG = "no-config"
    CONFIG_INACTIVE = "config-inactive"
    NO_STEPS = "no-steps"

    def __init__(self, code: str, organization_id: str = ""):
        self.code = code
        self.organization_id = organization_id
        super().__init__(f"Follow-up not configured for organization {organization_id!r}: {code}")


class TicketNotFoundError(FollowUpError):
    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket {ticket_id!r} not found")


class TicketBusyError(FollowUpError):
    """Another scheduler call kept the ticket mutex past the wait budget."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket {ticket_id!r} is locked by another follow-up operation")
