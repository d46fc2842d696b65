"""
Type contracts for the collaborators the core treats as black boxes.

Protocols only, no logic: concrete adapters live in digestq.llm and
digestq.delivery, and tests substitute their own fakes.

Re-exports for convenience:
"""

from digestq.contracts.delivery import ChannelTransport, PreferencesProvider
from digestq.contracts.summarizer import Summarizer

__all__ = [
    "ChannelTransport",
    "PreferencesProvider",
    "Summarizer",
]
