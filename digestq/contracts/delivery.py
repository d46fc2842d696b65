"""
Delivery collaborator protocols.

- ChannelTransport: hands one Summary to one channel
- PreferencesProvider: supplies a recipient's channels, verbosity and quiet hours
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from digestq.delivery.models import SendResult, UserPreferences
    from digestq.storage.models import Summary


class ChannelTransport(Protocol):
    """One outbound channel (email, real-time push, ...)."""

    channel: str
    requires_ack: bool  # True: SENT waits for an asynchronous confirmation
    suppressed_in_quiet_hours: bool  # True: time-sensitive, SKIPPED during quiet hours

    def send(self, recipient_id: str, summary: Summary) -> SendResult:
        """Hand the summary to the channel.

        Returns:
            SendResult.ok(transport_ref) or SendResult.rejected(reason)

        Raises:
            TransportError on transport-level failure (treated like a retryable rejection)
        """
        ...


class PreferencesProvider(Protocol):
    def get(self, recipient_id: str) -> UserPreferences:
        """Preferences for a recipient; an unknown recipient has no channels."""
        ...
