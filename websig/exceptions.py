"""Exceptions raised by the signer."""


class SigningError(Exception):
    """Base class for all signing errors."""


class SignerConfigError(SigningError, ValueError):
    """The signer was configured without required values, e.g. credentials."""


class RequestError(SigningError, ValueError):
    """The request (or sign time) cannot be signed as given."""
