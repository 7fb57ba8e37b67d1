from __future__ import annotations

import enum


class RelayError(Exception):
    pass


class SetupError(RelayError):
    """Misconfiguration reported by the gateway (wrong chat, missing rights).

    Never retried; surfaced to staff.
    """


class TransientGatewayError(RelayError):
    def __init__(self, method: str, description: str | None = None) -> None:
        super().__init__(f"{method} failed: {description or 'unknown error'}")
        self.method = method
        self.description = description


class DeletionSignal(RelayError):
    """The topic is gone, either reported missing or silently redirected.

    ``misplaced_message_id`` is set when the message landed in another thread.
    """

    def __init__(
        self,
        topic_id: int | None,
        description: str | None = None,
        *,
        misplaced_message_id: int | None = None,
    ) -> None:
        super().__init__(f"topic {topic_id} is gone: {description or 'redirected'}")
        self.topic_id = topic_id
        self.description = description
        self.misplaced_message_id = misplaced_message_id


class RejectReason(enum.StrEnum):
    EXPIRED = "expired"
    FOREIGN = "foreign"
    OUT_OF_RANGE = "out_of_range"


class ChallengeRejected(RelayError):
    def __init__(self, reason: RejectReason, challenge_id: str) -> None:
        super().__init__(f"challenge {challenge_id} rejected: {reason}")
        self.reason = reason
        self.challenge_id = challenge_id


class RateLimitExceeded(RelayError):
    def __init__(self, action: str, user_id: int, retry_in_s: float) -> None:
        super().__init__(f"rate limit for {action!r} exceeded by {user_id}")
        self.action = action
        self.user_id = user_id
        self.retry_in_s = retry_in_s
