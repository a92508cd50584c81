"""Exception hierarchy shared by the engine and its collaborators."""

from __future__ import annotations


class MigrationError(Exception):
    """Base class for every error raised by vmimport."""


class TransientError(MigrationError):
    """A precondition is not met yet; the phase is retried after a poll delay.

    Never recorded in the workflow's error log.
    """


class ItineraryError(MigrationError):
    """A phase or itinerary name is not part of the known tables."""


class TemplateNotFoundError(MigrationError):
    """No target template matches the source VM."""


class CleanUpError(MigrationError):
    """One or more independent clean-up deletions failed.

    The message is already folded into a single human-readable line.
    """


class UnsupportedProviderError(MigrationError):
    """The declared source type has no provider implementation."""


class PhaseFailedError(MigrationError):
    """A phase hit an unrecoverable condition.

    ``messages`` are appended verbatim to the workflow's error log.
    """

    def __init__(self, messages: list[str] | str):
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__("; ".join(self.messages))
