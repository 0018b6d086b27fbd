"""Error taxonomy shared by the presence, relay and session layers.

Only ``AuthenticationFailure`` ends a session. Every other error is reported
back to the caller as a typed failure event and the session stays usable.
An unreachable recipient is not an error at all: routing simply returns
``None`` and the live push is skipped.
"""


class ChatPulseError(Exception):
    """Base class for all service errors."""


class AuthenticationFailure(ChatPulseError):
    """Missing, malformed or expired credential, or an unknown user."""


class InvalidMessage(ChatPulseError):
    """A send or receipt payload failed validation."""


class NotAMember(InvalidMessage):
    """The caller does not belong to the addressed group."""


class StoreFailure(ChatPulseError):
    """A persistence or query error raised by the database layer."""


class StoreTimeout(StoreFailure):
    """A store call did not complete within the configured timeout."""


class UserExists(ChatPulseError):
    """Registration conflicts with an existing username or email."""
