"""Error types raised (or logged) by the flashroom client core."""


class FlashError(Exception):
    """Base class for flashroom errors."""


class ValidationError(FlashError):
    """Local input rejected before any network action (empty nick, ...)."""


class ChannelError(FlashError):
    """The relay channel could not be opened or was lost."""


class SignalingError(FlashError):
    """Malformed or unexpected offer/answer/candidate payload.

    Logged by the negotiator, never raised to callers.
    """


class MediaAcquisitionError(FlashError):
    """Camera/microphone denied or unavailable."""
