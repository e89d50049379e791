from enum import Enum


class QuizError(Exception):
    """Base class for everything the quiz core raises on purpose."""


class InsufficientCandidatesError(QuizError):
    """Not enough distinct material to assemble a question. The user should just try again."""


class ContentSourceError(QuizError):
    """The verse-content API failed (network, auth or HTTP error)."""


class GlyphRenderError(QuizError):
    """A verse could not be rasterised (unknown page or missing page font)."""


class PersistenceError(QuizError):
    """A read or write against the stats database failed."""


class QueueSlotConflictError(QuizError):
    def __init__(self, subject_id: int):
        super().__init__(f"user {subject_id} already holds a quiz queue slot")
        self.subject_id = subject_id


class HandshakeFailure(Enum):
    ALREADY_ACKNOWLEDGED = "already_acknowledged"
    TOKEN_EXPIRED = "token_expired"
    DOUBLE_ACK = "double_ack"


class PlatformHandshakeError(QuizError):
    """Discord refused an interaction acknowledgement or edit."""

    def __init__(self, kind: HandshakeFailure, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

    @property
    def expired(self) -> bool:
        return self.kind is HandshakeFailure.TOKEN_EXPIRED
