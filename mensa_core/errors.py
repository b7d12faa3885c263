"""Exceptions shared by the bot, the coordinator and the meal-plan backends."""


class MensaBotError(Exception):
    """Base class for all errors raised by this project."""


class ConfigError(MensaBotError):
    """Raised when the environment does not describe a runnable bot."""


class StoreError(MensaBotError):
    """A registration store operation failed. The task may be retried."""


class RegistrationMissing(MensaBotError):
    """A task referenced a chat that never registered."""

    def __init__(self, chat_id: int):
        super().__init__(f"chat_id {chat_id} has no registration")
        self.chat_id = chat_id


class CoordinatorUnavailable(MensaBotError):
    """The coordinator did not answer within the reply timeout."""


class TimeParseError(MensaBotError):
    """Base class for user supplied times that could not be read."""


class NoTimeGiven(TimeParseError):
    pass


class InvalidTime(TimeParseError):
    pass


class OracleUnconfigured(TimeParseError):
    pass


class OracleUnavailable(TimeParseError):
    pass
