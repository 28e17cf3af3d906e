"""Exceptions for duo-rtc room sessions."""


class ChannelUnavailableError(Exception):
    """Signaling channel could not be joined (connect or auth failure)."""

    pass


class CaptureError(Exception):
    """Camera, microphone or screen capture is denied or unavailable."""

    pass


class NegotiationError(Exception):
    """Session description or candidate applied out of valid order."""

    pass


class OverCapacityError(Exception):
    """Room already holds two members at subscription time."""

    pass


class ConfigError(Exception):
    """Invalid configuration value."""

    pass
