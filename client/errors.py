class CallError(Exception):
    """Base class for failures surfaced to the user of a call."""


class MediaAccessDenied(CallError):
    """Camera or microphone could not be opened. Never retried automatically."""


class PeerNegotiationFailure(CallError):
    """The negotiation with one remote peer failed or was closed underneath us."""

    def __init__(self, remote_id: str, reason: str):
        super().__init__(f"negotiation with {remote_id} failed: {reason}")
        self.remote_id = remote_id
        self.reason = reason


class SignalingUnavailable(CallError):
    """The signaling channel is not connected."""
