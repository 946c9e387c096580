"""
Error taxonomy shared by the validator node and the hub.
"""


class UptimeError(Exception):
    """Base class for every error raised by this project."""


class ProbeError(UptimeError):
    """A single measurement technique failed."""


class ProbeTimeout(ProbeError):
    pass


class RedirectError(ProbeError):
    """Too many redirects while following HEAD responses."""


class MalformedRedirectError(RedirectError):
    """3xx response without a Location header."""


class ProtocolError(UptimeError):
    """Malformed or unexpected frame."""


class SignatureError(ProtocolError):
    """Signature missing or not valid for the claimed public key."""


class HubConnectionError(UptimeError, ConnectionError):
    """Transport-level failure talking to the hub."""


class FatalConfigError(UptimeError):
    """Missing or corrupt key material or configuration; the process cannot continue."""
