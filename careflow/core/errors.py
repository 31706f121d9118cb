"""
Error taxonomy shared by the adapters, the pipeline and the API.
"""


class CareflowError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__doc__
        super().__init__(self.message)


class AdapterError(CareflowError):
    """An external AI provider call failed."""


class TransientAdapterError(AdapterError):
    """Timeout, network or 5xx failure that may succeed when repeated."""


class MalformedAdapterResponse(AdapterError):
    """Provider returned a payload that does not match the expected shape."""


class UnrecoverableInputError(CareflowError):
    """Input cannot be processed; the note must be recorded again."""


class ScopeViolation(CareflowError):
    """A retrieval result crossed the patient boundary."""


class NoteNotFoundError(CareflowError):
    """Note does not exist."""


class ChatUnavailableError(CareflowError):
    """Chart assistant is temporarily unavailable. Please check your network and try again."""
