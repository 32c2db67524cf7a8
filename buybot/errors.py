# buybot/errors.py


class BuyBotError(Exception):
    """Base class for every error the bot raises on purpose."""


class TransientIO(BuyBotError):
    """Network failure or timeout against the chain, market or chat service.

    Always recoverable: the work is retried on the next scheduled cycle.
    """


class RateLimitExceeded(BuyBotError):
    """A token bucket had no capacity; the operation is abandoned for this cycle."""


class InvalidUserInput(BuyBotError):
    """Malformed command argument. The message is shown to the user as-is."""


class PersistenceFailure(BuyBotError):
    """Settings could not be written. In-memory settings stay authoritative."""


class StartupFailure(BuyBotError):
    """Settings file exists but cannot be parsed."""
