"""
Error taxonomy shared by the gateway, lifecycle manager and config loader
"""


class ExchangeError(Exception):
    """Non-retryable exchange failure (e.g. order rejected)"""

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


class TransientExchangeError(ExchangeError):
    """Timeout, rate limit or 5xx; safe to retry with backoff"""


class FatalConfigurationError(Exception):
    """Missing credentials, invalid symbol or invalid config; needs an operator"""
