"""
Session registry for SSO admin connections.

The registry authenticates connections to SSO servers, deduplicates them by
(host, user) and reference-counts shared handles. A handle is torn down,
and its transport closed, only when its last holder disconnects.
"""

import uuid
import hashlib
import logging
import threading
from typing import Callable, Dict, Optional, Set, Tuple

from sso_admin.errors import AuthenticationError, ValidationError, translate
from sso_admin.ldap_transport import LdapAdminTransport
from sso_admin.logging_setup import security_logger
from sso_admin.session import SessionClient
from sso_admin.transport import AdminTransport, Credentials, TlsPolicy

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, Credentials, TlsPolicy], AdminTransport]


def identity_key(host: str, user: str) -> Tuple[str, str]:
    """Normalized (host, user) identity used for deduplication."""
    return host.strip().lower(), user.strip().lower()


def _password_digest(password: str) -> str:
    return hashlib.sha256(password.encode('utf-8')).hexdigest()


def _close_quietly(transport: AdminTransport, label: str):
    try:
        transport.close()
    except Exception as e:
        logger.warning(f"Error closing transport for {label}: {translate(e, 'close')}")


class ServerConnection:
    """
    Handle for one authenticated server connection.

    Shared by every caller that connected with the same (host, user);
    ``ref_count`` tracks how many logical holders remain.
    """

    def __init__(self, host: str, user: str, transport: AdminTransport, password_digest: str,
                 registry: Optional['SessionRegistry'] = None):
        self.id = str(uuid.uuid4())
        self.host = host
        self.user = user
        self.ref_count = 1
        self._transport = transport
        self._password_digest = password_digest
        self._registry = registry
        self._connected = True
        self.client = SessionClient(self, transport)

    @property
    def key(self) -> Tuple[str, str]:
        return identity_key(self.host, self.user)

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def transport(self) -> AdminTransport:
        return self._transport

    def _mark_disconnected(self):
        self._connected = False
        self.ref_count = 0

    def _teardown(self):
        self._mark_disconnected()
        _close_quietly(self._transport, str(self))

    def disconnect(self) -> None:
        """Release this holder's reference through the owning registry."""
        if self._registry is None:
            self._teardown()
        else:
            self._registry.disconnect(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def __str__(self):
        return f"{self.user}@{self.host}"

    def __repr__(self):
        state = 'Connected' if self._connected else 'Disconnected'
        return f"<ServerConnection {self} refs={self.ref_count} {state}>"


def default_transport_factory(**options) -> TransportFactory:
    """
    Build a factory creating LdapAdminTransport instances.

    Args:
        **options: Extra LdapAdminTransport keyword arguments
            (tenant, connection_timeout, receive_timeout, page_size)
    """
    def factory(host: str, credentials: Credentials, tls_policy: TlsPolicy) -> AdminTransport:
        return LdapAdminTransport(host, credentials, tls_policy, **options)
    return factory


class SessionRegistry:
    """
    Caller-owned registry of live server connections.

    Reference-count updates are atomic with respect to concurrent
    connect/disconnect calls on the same identity.
    """

    def __init__(self, transport_factory: Optional[TransportFactory] = None):
        self._transport_factory = transport_factory or default_transport_factory()
        self._connections: Dict[Tuple[str, str], ServerConnection] = {}
        self._lock = threading.RLock()

    def _reuse(self, existing: ServerConnection, digest: str) -> ServerConnection:
        # Caller holds the lock
        if existing._password_digest != digest:
            security_logger.log_authentication_attempt(existing.host, existing.user, False)
            raise AuthenticationError(
                f"Credentials differ from the existing connection to {existing}; disconnect it first"
            )
        existing.ref_count += 1
        logger.info(f"Reusing connection {existing} (refs={existing.ref_count})")
        return existing

    def connect(self, host: str, credentials: Credentials,
                tls_policy: Optional[TlsPolicy] = None) -> ServerConnection:
        """
        Connect to an SSO server, or reuse the live connection for (host, user).

        Args:
            host: Server host name or address
            credentials: Administrator credentials
            tls_policy: Channel security; chain-validated LDAPS by default

        Returns:
            The connection handle

        Raises:
            ValidationError: If host or user is empty
            AuthenticationError: If the credentials are rejected, or differ
                from those of an existing connection to the same identity
            ConnectivityError: If the host is unreachable or its certificate
                fails validation
        """
        if not host or not host.strip():
            raise ValidationError("Host is required")
        if not credentials or not credentials.user:
            raise ValidationError("User is required")

        key = identity_key(host, credentials.user)
        digest = _password_digest(credentials.password or '')

        with self._lock:
            existing = self._connections.get(key)
            if existing is not None:
                return self._reuse(existing, digest)

        try:
            transport = self._transport_factory(host.strip(), credentials, tls_policy or TlsPolicy())
            transport.authenticate()
        except Exception as e:
            error = translate(e, f"Connect to {host}")
            security_logger.log_authentication_attempt(host, credentials.user, False)
            logger.error(str(error))
            raise error from e

        try:
            with self._lock:
                existing = self._connections.get(key)
                if existing is not None:
                    # Lost a race with a concurrent connect to the same identity
                    return self._reuse(existing, digest)

                connection = ServerConnection(host.strip(), credentials.user.strip(), transport, digest,
                                              registry=self)
                self._connections[key] = connection
                transport = None
        finally:
            # An unused transport is closed after the lock is released
            if transport is not None:
                _close_quietly(transport, f"{credentials.user}@{host}")

        security_logger.log_authentication_attempt(connection.host, connection.user, True)
        logger.info(f"Connected to {connection}")
        return connection

    def disconnect(self, connection: ServerConnection) -> None:
        """
        Release one hold on a connection.

        The transport is closed and the handle removed from the registry only
        when the reference count reaches zero. Disconnecting a handle that is
        already torn down is a no-op.
        """
        with self._lock:
            registered = self._connections.get(connection.key)
            if registered is not connection or not connection.is_connected:
                logger.warning(f"Connection {connection} is not connected; nothing to disconnect")
                return

            connection.ref_count -= 1
            if connection.ref_count > 0:
                logger.info(f"Released {connection} (refs={connection.ref_count})")
                return

            del self._connections[connection.key]
            connection._mark_disconnected()

        _close_quietly(connection.transport, str(connection))
        security_logger.log_disconnect(connection.host, connection.user)
        logger.info(f"Disconnected from {connection}")

    def disconnect_all(self) -> None:
        """Tear down every connection regardless of reference counts."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            for connection in connections:
                connection._mark_disconnected()

        for connection in connections:
            _close_quietly(connection.transport, str(connection))
            security_logger.log_disconnect(connection.host, connection.user)
        if connections:
            logger.info(f"Disconnected {len(connections)} connection(s)")

    def list_active(self) -> Set[ServerConnection]:
        with self._lock:
            return {c for c in self._connections.values() if c.is_connected}

    def get(self, host: str, user: str) -> Optional[ServerConnection]:
        with self._lock:
            return self._connections.get(identity_key(host, user))

    def __len__(self):
        with self._lock:
            return len(self._connections)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect_all()

