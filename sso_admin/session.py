"""
Per-connection session client.

SessionClient exposes typed directory operations (person users, groups,
group membership, password/lockout/token-lifetime policies and identity
sources) over one authenticated connection. Every call checks that the
owning connection is still live before the transport is contacted, and every
transport failure is translated into the sso_admin error taxonomy.
"""

import re
import logging
from typing import Callable, Iterable, List, Optional, TypeVar

from sso_admin.certificates import load_certificates, thumbprint
from sso_admin.errors import (
    NotConnectedError,
    NotFoundError,
    SsoAdminError,
    ValidationError,
    translate,
)
from sso_admin.filters import filter_by_name
from sso_admin.logging_setup import security_logger
from sso_admin.models import (
    ExternalIdentitySource,
    Group,
    IdentitySourceKind,
    LocalOSIdentitySource,
    LockoutPolicy,
    PasswordPolicy,
    PersonUser,
    PrincipalId,
    SystemIdentitySource,
    TokenLifetime,
    merge,
)
from sso_admin.transport import AdminTransport

logger = logging.getLogger(__name__)

T = TypeVar('T')

SERVER_TYPES = ('ActiveDirectory', 'OpenLdap')
LDAP_URL_PATTERN = re.compile(r'^ldaps?://[^/\s]+(:\d+)?/?$', re.IGNORECASE)
IDENTITY_SOURCE_TYPES = (LocalOSIdentitySource, SystemIdentitySource, ExternalIdentitySource)


def _exact_match(matches, value, label):
    for match in matches:
        if match.name == value.name:
            return match
    raise NotFoundError(f"{label} not found: {value}")


class SessionClient:
    """
    Typed SSO admin operations over one server connection.

    The client never outlives its connection's validity: once the connection
    is disconnected, every operation fails with NotConnectedError without
    contacting the server.
    """

    def __init__(self, connection, transport: AdminTransport):
        """
        Args:
            connection: Owning ServerConnection
            transport: Authenticated transport for that connection
        """
        self._connection = connection
        self._transport = transport

    @property
    def connection(self):
        return self._connection

    @property
    def system_domain(self) -> str:
        return self._transport.system_domain

    def _require_connected(self):
        if not self._connection.is_connected:
            raise NotConnectedError(f"Server {self._connection} is not connected")

    def _owned(self, value):
        """
        Return ``value`` checked against this connection.

        A value the caller built itself (never issued by a connection) is
        looked up by name on this connection; policies are used as given.
        An issued value must come from this connection, and that connection
        must still be live.
        """
        self._require_connected()
        if value._server_ref is None:
            return self._resolve(value)
        owner = value.server
        if owner is None or not owner.is_connected:
            raise NotConnectedError(
                f"{type(value).__name__} {value} was issued by a connection that is no longer connected"
            )
        if owner is not self._connection:
            raise ValidationError(
                f"{type(value).__name__} {value} was issued by {owner}, not {self._connection}"
            )
        return value

    def _resolve(self, value):
        if isinstance(value, PersonUser):
            return _exact_match(self.get_users(value.name, value.domain), value, 'User')
        if isinstance(value, Group):
            return _exact_match(self.get_groups(value.name, value.domain), value, 'Group')
        if isinstance(value, IDENTITY_SOURCE_TYPES):
            return self.get_identity_source(value.name)
        return value

    def _invoke(self, operation: str, call: Callable[..., T], *args, **kwargs) -> T:
        """Dispatch one remote call with state checks and error translation."""
        self._require_connected()
        logger.debug(f"{self._connection}: {operation}")
        try:
            return call(*args, **kwargs)
        except SsoAdminError:
            raise
        except Exception as e:
            error = translate(e, operation)
            logger.error(f"{self._connection}: {error}")
            raise error from e

    def _bind(self, value):
        return value.bind_server(self._connection)

    # Person users

    def get_users(self, name: Optional[str] = None, domain: Optional[str] = None) -> List[PersonUser]:
        """
        List person users of a domain, optionally filtered by name.

        Args:
            name: Exact name, or a glob pattern when it contains '*' or '?';
                  None or '' returns every user
            domain: Domain to list; defaults to the system domain
        """
        domain = domain or self.system_domain
        users = self._invoke('list users', self._transport.list_users, domain)
        return [self._bind(user) for user in filter_by_name(users, name)]

    def get_user(self, name: str, domain: Optional[str] = None) -> PersonUser:
        if not name:
            raise ValidationError("User name is required")
        matches = self.get_users(name, domain)
        if not matches:
            raise NotFoundError(f"User not found: {PrincipalId(name, domain or self.system_domain)}")
        return matches[0]

    def create_user(self, name: str, password: str, first_name: Optional[str] = None,
                    last_name: Optional[str] = None, email: Optional[str] = None,
                    description: Optional[str] = None) -> PersonUser:
        """Create a person user in the system domain."""
        if not name:
            raise ValidationError("User name is required")
        if not password:
            raise ValidationError("Password is required")

        user = PersonUser(name=name, domain=self.system_domain, description=description,
                          first_name=first_name, last_name=last_name, email=email)
        try:
            created = self._invoke('create user', self._transport.create_user, user, password)
        except SsoAdminError:
            security_logger.log_principal_operation('create user', str(user), str(self._connection), False)
            raise
        security_logger.log_principal_operation('create user', str(user), str(self._connection), True)
        return self._bind(created)

    def update_user(self, user: PersonUser, first_name: Optional[str] = None,
                    last_name: Optional[str] = None, email: Optional[str] = None,
                    description: Optional[str] = None) -> PersonUser:
        """Update user attributes; omitted fields keep the values of ``user``."""
        user = self._owned(user)
        updated = merge(user, first_name=first_name, last_name=last_name,
                        email=email, description=description)
        result = self._invoke('update user', self._transport.update_user, updated)
        security_logger.log_principal_operation('update user', str(user), str(self._connection), True)
        return self._bind(result)

    def set_user_password(self, user: PersonUser, new_password: str) -> None:
        user = self._owned(user)
        if not new_password:
            raise ValidationError("New password is required")
        self._invoke('reset password', self._transport.reset_user_password, user.principal_id, new_password)
        security_logger.log_principal_operation('reset password', str(user), str(self._connection), True)

    def unlock_user(self, user: PersonUser) -> None:
        target = self._owned(user)
        self._invoke('unlock user', self._transport.unlock_user, target.principal_id)
        target.locked = user.locked = False
        security_logger.log_principal_operation('unlock user', str(target), str(self._connection), True)

    def set_user_enabled(self, user: PersonUser, enabled: bool) -> None:
        target = self._owned(user)
        self._invoke('enable user' if enabled else 'disable user',
                     self._transport.set_user_enabled, target.principal_id, enabled)
        target.disabled = user.disabled = not enabled
        security_logger.log_principal_operation('enable user' if enabled else 'disable user',
                                                str(target), str(self._connection), True)

    def remove_user(self, user: PersonUser) -> None:
        user = self._owned(user)
        self._invoke('remove user', self._transport.delete_user, user.principal_id)
        security_logger.log_principal_operation('remove user', str(user), str(self._connection), True)

    # Groups

    def get_groups(self, name: Optional[str] = None, domain: Optional[str] = None) -> List[Group]:
        """List groups of a domain; ``name`` follows the same rules as get_users."""
        domain = domain or self.system_domain
        groups = self._invoke('list groups', self._transport.list_groups, domain)
        return [self._bind(group) for group in filter_by_name(groups, name)]

    def get_group(self, name: str, domain: Optional[str] = None) -> Group:
        if not name:
            raise ValidationError("Group name is required")
        matches = self.get_groups(name, domain)
        if not matches:
            raise NotFoundError(f"Group not found: {PrincipalId(name, domain or self.system_domain)}")
        return matches[0]

    def create_group(self, name: str, description: Optional[str] = None) -> Group:
        if not name:
            raise ValidationError("Group name is required")
        group = Group(name=name, domain=self.system_domain, description=description)
        created = self._invoke('create group', self._transport.create_group, group)
        security_logger.log_principal_operation('create group', str(group), str(self._connection), True)
        return self._bind(created)

    def update_group(self, group: Group, description: Optional[str] = None) -> Group:
        group = self._owned(group)
        updated = merge(group, description=description)
        result = self._invoke('update group', self._transport.update_group, updated)
        security_logger.log_principal_operation('update group', str(group), str(self._connection), True)
        return self._bind(result)

    def remove_group(self, group: Group) -> None:
        group = self._owned(group)
        self._invoke('remove group', self._transport.delete_group, group.principal_id)
        security_logger.log_principal_operation('remove group', str(group), str(self._connection), True)

    def get_group_members(self, group: Group) -> List[PrincipalId]:
        group = self._owned(group)
        return self._invoke('list group members', self._transport.list_group_members, group.principal_id)

    # Group membership

    def update_group_membership(self, principal, group: Group, add: bool = False,
                                remove: bool = False) -> None:
        """
        Add ``principal`` to, or remove it from, ``group``.

        Args:
            principal: PersonUser or Group to add/remove
            group: Target group
            add: Add the principal to the group
            remove: Remove the principal from the group

        Raises:
            ValidationError: If both or neither of add/remove are set, or the
                principal is not a user or group
        """
        if add == remove:
            raise ValidationError("Exactly one of add or remove must be specified")
        if not isinstance(principal, (PersonUser, Group)):
            raise ValidationError(f"Unsupported principal type: {type(principal).__name__}")
        principal = self._owned(principal)
        group = self._owned(group)

        member_is_group = isinstance(principal, Group)
        if add:
            self._invoke('add group member', self._transport.add_group_member,
                         group.principal_id, principal.principal_id, member_is_group)
            operation = f'add to group {group}'
        else:
            self._invoke('remove group member', self._transport.remove_group_member,
                         group.principal_id, principal.principal_id, member_is_group)
            operation = f'remove from group {group}'
        security_logger.log_principal_operation(operation, str(principal), str(self._connection), True)

    def add_to_group(self, principal, group: Group) -> None:
        self.update_group_membership(principal, group, add=True)

    def remove_from_group(self, principal, group: Group) -> None:
        self.update_group_membership(principal, group, remove=True)

    # Policies

    def _set_policy(self, label: str, getter: Callable, setter: Callable, policy, overrides):
        if policy is None:
            policy = getter()
        else:
            policy = self._owned(policy)
        merged = merge(policy, **overrides)
        merged.validate()
        self._invoke(f'set {label}', setter, merged)
        security_logger.log_policy_change(label, str(self._connection))
        return self._bind(merged)

    def get_password_policy(self) -> PasswordPolicy:
        return self._bind(self._invoke('get password policy', self._transport.get_password_policy))

    def set_password_policy(self, policy: Optional[PasswordPolicy] = None, **overrides) -> PasswordPolicy:
        """
        Replace the password policy.

        Args:
            policy: Base policy; fetched from the server when omitted
            **overrides: PasswordPolicy fields; None keeps the base value

        Returns:
            The policy that was sent to the server
        """
        return self._set_policy('password policy', self.get_password_policy,
                                self._transport.set_password_policy, policy, overrides)

    def get_lockout_policy(self) -> LockoutPolicy:
        return self._bind(self._invoke('get lockout policy', self._transport.get_lockout_policy))

    def set_lockout_policy(self, policy: Optional[LockoutPolicy] = None, **overrides) -> LockoutPolicy:
        return self._set_policy('lockout policy', self.get_lockout_policy,
                                self._transport.set_lockout_policy, policy, overrides)

    def get_token_lifetime(self) -> TokenLifetime:
        return self._bind(self._invoke('get token lifetime', self._transport.get_token_lifetime))

    def set_token_lifetime(self, policy: Optional[TokenLifetime] = None, **overrides) -> TokenLifetime:
        return self._set_policy('token lifetime', self.get_token_lifetime,
                                self._transport.set_token_lifetime, policy, overrides)

    # Identity sources

    def get_identity_sources(self, kinds: Optional[Iterable[IdentitySourceKind]] = None) -> list:
        """
        List identity sources, optionally restricted to some kinds.

        Args:
            kinds: IdentitySourceKind values to keep; None keeps all
        """
        sources = self._invoke('list identity sources', self._transport.list_identity_sources)
        if kinds is not None:
            wanted = set(kinds)
            sources = [source for source in sources if source.kind in wanted]
        return [self._bind(source) for source in sources]

    def get_identity_source(self, name: str):
        for source in self.get_identity_sources():
            if source.name == name:
                return source
        raise NotFoundError(f"Identity source not found: {name}")

    @staticmethod
    def _validate_external_source(source: ExternalIdentitySource):
        missing = [field_name for field_name in ('name', 'domain_name', 'primary_url',
                                                 'base_dn_users', 'base_dn_groups', 'username')
                   if not getattr(source, field_name)]
        if missing:
            raise ValidationError(f"Missing required identity source field(s): {', '.join(missing)}")
        if source.server_type not in SERVER_TYPES:
            raise ValidationError(
                f"Unsupported server type {source.server_type!r}; expected one of {', '.join(SERVER_TYPES)}"
            )
        for url in source.urls:
            if not LDAP_URL_PATTERN.match(url):
                raise ValidationError(f"Invalid LDAP URL: {url}")
        if any(url.lower().startswith('ldaps://') for url in source.urls) and not source.certificates:
            raise ValidationError("At least one certificate is required for ldaps:// URLs")
        load_certificates(source.certificates)

    def add_active_directory_identity_source(
            self, name: str, domain_name: str, primary_url: str, base_dn_users: str,
            base_dn_groups: str, username: str, password: str,
            domain_alias: Optional[str] = None, secondary_url: Optional[str] = None,
            certificates: Optional[List[str]] = None,
            server_type: str = 'ActiveDirectory') -> ExternalIdentitySource:
        """
        Register an Active Directory (over LDAP) identity source.

        Args:
            name: Friendly name of the identity source
            domain_name: Fully qualified domain name
            primary_url: ldap:// or ldaps:// URL of the primary domain controller
            base_dn_users: Base DN for users
            base_dn_groups: Base DN for groups
            username: Bind user for the external directory
            password: Bind password for the external directory
            domain_alias: NetBIOS-style alias
            secondary_url: Failover domain controller URL
            certificates: PEM certificates trusted for ldaps:// URLs
            server_type: 'ActiveDirectory' or 'OpenLdap'

        Returns:
            The identity source as registered
        """
        source = ExternalIdentitySource(
            name=name,
            domain_name=domain_name,
            alias=domain_alias,
            server_type=server_type,
            primary_url=primary_url,
            secondary_url=secondary_url,
            base_dn_users=base_dn_users,
            base_dn_groups=base_dn_groups,
            username=username,
            certificates=list(certificates or []),
        )
        self._validate_external_source(source)
        if not password:
            raise ValidationError("Password is required")

        try:
            self._invoke('add identity source', self._transport.add_identity_source, source, password)
        except SsoAdminError:
            security_logger.log_identity_source_change('add', name, str(self._connection), False)
            raise
        security_logger.log_identity_source_change('add', name, str(self._connection), True)
        for pem in source.certificates:
            logger.info(f"Identity source {name} trusts certificate {thumbprint(pem)}")
        return self._bind(source)

    def _require_external(self, source):
        source = self._owned(source)
        if source.kind is not IdentitySourceKind.EXTERNAL:
            raise ValidationError(
                f"Identity source {source.name} is {source.kind.value}; only external sources can be modified"
            )
        return source

    def update_identity_source(self, source: ExternalIdentitySource, password: Optional[str] = None,
                               **overrides) -> ExternalIdentitySource:
        """Update an external identity source; omitted fields keep their values."""
        source = self._require_external(source)
        if 'name' in overrides and overrides['name'] not in (None, source.name):
            raise ValidationError("Identity source name cannot be changed")
        updated = merge(source, **overrides)
        self._validate_external_source(updated)
        self._invoke('update identity source', self._transport.update_identity_source, updated, password)
        security_logger.log_identity_source_change('update', source.name, str(self._connection), True)
        return updated

    def remove_identity_source(self, source) -> None:
        source = self._require_external(source)
        self._invoke('remove identity source', self._transport.delete_identity_source, source.name)
        security_logger.log_identity_source_change('remove', source.name, str(self._connection), True)
