class QuizError(Exception):
    """Base class for errors raised by the quiz core."""


class EmptySelection(QuizError):
    """The chosen lists contain no words; no session was created."""


class RemoteError(QuizError):
    """A read or write against the session store failed."""


class InvalidTransition(QuizError):
    """An operation was called in a state that does not allow it."""
