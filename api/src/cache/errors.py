"""Errors raised by the coalescing store."""


class CacheError(Exception):
    """Base class for store errors."""


class InvalidTTLError(CacheError, ValueError):
    """TTL was not a positive, finite number of seconds."""


class ProducerError(CacheError):
    """
    A producer invocation failed.

    One instance is created per fetch episode and handed to the leader and
    every waiter, so all of them see the same failure. The original exception
    is kept on ``cause`` and chained as ``__cause__``.
    """

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"fetch for {key!r} failed: {cause!r}")
        self.key = key
        self.cause = cause
        self.__cause__ = cause
