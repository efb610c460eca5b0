class TutorBotError(Exception):
    """Base class for failures handled at the per-message boundary."""


class DuplicateDelivery(TutorBotError):
    """The inbound message id is already being processed."""


class NoActivePrompt(TutorBotError):
    """No prompt is marked active."""


class PromptNotFound(NoActivePrompt):
    """The active prompt pointer references a prompt that does not exist.

    A dangling pointer means there is effectively no active prompt.
    """


class ModelFailure(TutorBotError):
    """The completion call timed out, errored or returned nothing."""


class TranscriptionFailure(TutorBotError):
    """The voice message could not be turned into text."""


class StorageFailure(TutorBotError):
    """Reading or writing a dialog/prompt file failed."""


class DeliveryFailure(TutorBotError):
    """Sending a fragment to the user failed.

    `delivered` is the number of fragments that reached the user before the
    failing one.
    """

    def __init__(self, message: str, delivered: int = 0):
        self.delivered = delivered
        super().__init__(message)
