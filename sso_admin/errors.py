"""
Error taxonomy and normalization for SSO admin operations.

Every failure surfaced by the registry or a session client is one of the
kinds defined here. Transport exceptions (ldap3, ssl, socket) are unwrapped
to their innermost cause and translated before they reach the caller.
"""

import ssl
import logging
from typing import Optional

from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPCommunicationError,
    LDAPStartTLSError,
    LDAPSSLConfigurationError,
    LDAPOperationResult,
    LDAPInvalidCredentialsResult,
    LDAPNoSuchObjectResult,
)

logger = logging.getLogger(__name__)


class SsoAdminError(Exception):
    """Base exception for all SSO admin errors."""
    pass


class AuthenticationError(SsoAdminError):
    """Raised when the server rejects the supplied credentials."""
    pass


class ConnectivityError(SsoAdminError):
    """Raised when the host is unreachable or its certificate is rejected."""
    pass


class NotConnectedError(SsoAdminError):
    """Raised when an operation targets a torn-down or disconnected handle."""
    pass


class NotFoundError(SsoAdminError):
    """Raised when a referenced principal, group, policy or identity source is absent."""
    pass


class ValidationError(SsoAdminError):
    """Raised for malformed input, e.g. conflicting add/remove flags."""
    pass


class RemoteOperationError(SsoAdminError):
    """
    Raised when the server rejects a business operation.

    Attributes:
        result_code: LDAP result code reported by the server, if any
        description: Server-side result description, if any
    """

    def __init__(self, message: str, result_code: Optional[int] = None,
                 description: Optional[str] = None):
        super().__init__(message)
        self.result_code = result_code
        self.description = description


# LDAP result codes that map to a specific taxonomy kind
_AUTH_RESULT_CODES = (7, 8, 13, 48, 49)
_NOT_FOUND_RESULT_CODES = (32,)


def root_cause(exc: BaseException) -> BaseException:
    """
    Follow the exception chain down to the innermost cause.

    Args:
        exc: Exception to unwrap

    Returns:
        The deepest exception reachable through __cause__ / __context__
    """
    seen = set()
    current = exc
    while id(current) not in seen:
        seen.add(id(current))
        nested = current.__cause__ or current.__context__
        if nested is None:
            break
        current = nested
    return current


def _message(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


def translate(exc: BaseException, operation: Optional[str] = None) -> SsoAdminError:
    """
    Translate any exception into one of the taxonomy kinds.

    Taxonomy errors are returned unchanged. Everything else is unwrapped to
    its root cause, classified, and wrapped with the original exception
    chained as __cause__.

    Args:
        exc: Exception raised at the point of remote invocation
        operation: Optional operation name used as message prefix

    Returns:
        SsoAdminError subclass instance
    """
    if isinstance(exc, SsoAdminError):
        return exc

    cause = root_cause(exc)
    if isinstance(cause, SsoAdminError):
        return cause

    prefix = f"{operation} failed: " if operation else ""
    message = prefix + _message(cause)

    if isinstance(cause, (LDAPInvalidCredentialsResult, LDAPBindError)):
        error = AuthenticationError(message)
    elif isinstance(cause, LDAPNoSuchObjectResult):
        error = NotFoundError(message)
    elif isinstance(cause, LDAPOperationResult):
        code = getattr(cause, 'result', None)
        description = getattr(cause, 'description', None)
        if code in _AUTH_RESULT_CODES:
            error = AuthenticationError(message)
        elif code in _NOT_FOUND_RESULT_CODES:
            error = NotFoundError(message)
        else:
            error = RemoteOperationError(message, result_code=code, description=description)
    elif isinstance(cause, (LDAPCommunicationError, LDAPStartTLSError,
                            LDAPSSLConfigurationError, ssl.SSLError,
                            ConnectionError, TimeoutError, OSError)):
        error = ConnectivityError(message)
    elif isinstance(cause, LDAPException):
        error = RemoteOperationError(message)
    elif isinstance(cause, (ValueError, TypeError)):
        error = ValidationError(message)
    else:
        error = RemoteOperationError(message)

    error.__cause__ = exc
    logger.debug(f"Translated {type(cause).__name__} into {type(error).__name__}: {message}")
    return error
