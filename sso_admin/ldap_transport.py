"""
LDAP transport for SSO administration.

This module talks to the directory that backs an SSO server (a vmdir-style
tree) and maps user, group, policy and identity-source operations onto LDAP
search/add/modify/delete calls.

Directory layout under the tenant domain DN (``dc=vsphere,dc=local``):

    cn=Users,<domain>                                 person users and groups
    cn=password and lockout policy,<domain>           password/lockout policy
    cn=<tenant>,cn=Tenants,cn=IdentityManager,
        cn=Services,<domain>                          token lifetimes
    cn=IdentityProviders,<tenant entry>               identity sources
"""

import logging
from typing import Any, Dict, List, Optional

from ldap3 import (
    ALL,
    BASE,
    LEVEL,
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
    SUBTREE,
    Connection,
    Server,
)
from ldap3.core.exceptions import (
    LDAPAttributeOrValueExistsResult,
    LDAPBindError,
    LDAPException,
    LDAPNoSuchAttributeResult,
)
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn, parse_dn

from sso_admin.certificates import der_to_pem, pem_to_der
from sso_admin.errors import NotFoundError
from sso_admin.logging_setup import security_logger
from sso_admin.models import (
    ExternalIdentitySource,
    Group,
    LocalOSIdentitySource,
    LockoutPolicy,
    PasswordPolicy,
    PersonUser,
    PrincipalId,
    SystemIdentitySource,
    TokenLifetime,
)
from sso_admin.transport import AdminTransport, Credentials, TlsPolicy

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

UAC_ACCOUNT_DISABLED = 0x2
UAC_LOCKOUT = 0x10
UAC_NORMAL_ACCOUNT = 0x200

USER_ATTRIBUTES = ['cn', 'sAMAccountName', 'description', 'givenName', 'sn', 'mail', 'userAccountControl']
GROUP_ATTRIBUTES = ['cn', 'sAMAccountName', 'description']

PASSWORD_POLICY_ATTRIBUTES = {
    'description': 'vmwPasswordPolicyDescription',
    'prohibited_previous_passwords_count': 'vmwPasswordProhibitedPreviousCount',
    'min_length': 'vmwPasswordMinLength',
    'max_length': 'vmwPasswordMaxLength',
    'max_identical_adjacent_characters': 'vmwPasswordMaxIdenticalAdjacentChars',
    'min_numeric_count': 'vmwPasswordMinNumericCount',
    'min_special_char_count': 'vmwPasswordMinSpecialCharCount',
    'min_alphabetic_count': 'vmwPasswordMinAlphabeticCount',
    'min_uppercase_count': 'vmwPasswordMinUpperCaseCount',
    'min_lowercase_count': 'vmwPasswordMinLowerCaseCount',
    'password_lifetime_days': 'vmwPasswordLifetimeDays',
}

LOCKOUT_POLICY_ATTRIBUTES = {
    'description': 'vmwLockoutPolicyDescription',
    'auto_unlock_interval_sec': 'vmwLockoutAutoUnlockIntervalSec',
    'failed_attempt_interval_sec': 'vmwLockoutFailedAttemptIntervalSec',
    'max_failed_attempts': 'vmwLockoutMaxFailedAttempts',
}

# Stored in milliseconds
TOKEN_LIFETIME_ATTRIBUTES = {
    'max_hok_token_lifetime': 'vmwSTSMaxHolderOfKeyTokenLifetime',
    'max_bearer_token_lifetime': 'vmwSTSMaxBearerTokenLifetime',
}

PROVIDER_LOCAL_OS = 'IDENTITY_STORE_TYPE_LOCAL_OS'
PROVIDER_SYSTEM = 'IDENTITY_STORE_TYPE_VMWARE_DIRECTORY'
PROVIDER_AD_OVER_LDAP = 'IDENTITY_STORE_TYPE_LDAP_WITH_AD_MAPPING'
PROVIDER_OPEN_LDAP = 'IDENTITY_STORE_TYPE_LDAP'

SERVER_TYPE_PROVIDERS = {
    'ActiveDirectory': PROVIDER_AD_OVER_LDAP,
    'OpenLdap': PROVIDER_OPEN_LDAP,
}

IDENTITY_SOURCE_ATTRIBUTES = [
    'cn', 'vmwSTSDomainName', 'vmwSTSAlias', 'vmwSTSProviderType',
    'vmwSTSConnectionStrings', 'vmwSTSUserBaseDN', 'vmwSTSGroupBaseDN',
    'vmwSTSUserName', 'vmwSTSAuthenticationType', 'userCertificate',
]


def domain_to_dn(domain: str) -> str:
    """'vsphere.local' -> 'dc=vsphere,dc=local'."""
    parts = [part for part in domain.strip().strip('.').split('.') if part]
    return ','.join(f"dc={part}" for part in parts)


def dn_to_principal(dn: str) -> PrincipalId:
    """Derive (cn, dotted dc domain) from an entry DN."""
    components = parse_dn(dn)
    name = next((value for attr, value, _ in components if attr.lower() == 'cn'), dn)
    domain = '.'.join(value for attr, value, _ in components if attr.lower() == 'dc')
    return PrincipalId(name, domain)


def _values(attributes: Dict[str, Any], name: str) -> List[Any]:
    value = attributes.get(name)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first(attributes: Dict[str, Any], name: str, default=None):
    values = _values(attributes, name)
    return values[0] if values else default


def _int(attributes: Dict[str, Any], name: str, default: int = 0) -> int:
    value = _first(attributes, name)
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        logger.warning(f"Non-integer value for {name}: {value!r}")
        return default


class LdapAdminTransport(AdminTransport):
    """
    AdminTransport backed by the SSO server's LDAP directory.

    Binds with the administrator's user principal name and performs all
    operations over a single authenticated connection.
    """

    def __init__(self, host: str, credentials: Credentials, tls_policy: Optional[TlsPolicy] = None,
                 tenant: Optional[str] = None, connection_timeout: int = 10,
                 receive_timeout: int = 30, page_size: int = 1000):
        """
        Initialize the transport.

        Args:
            host: Directory host name or address
            credentials: Administrator credentials (user@domain)
            tls_policy: Channel security settings; LDAPS with chain validation by default
            tenant: Tenant / system domain; derived from the user's UPN when omitted
            connection_timeout: Seconds to wait for the TCP connection
            receive_timeout: Seconds to wait for each response
            page_size: Page size for paged searches
        """
        self.host = host
        self.credentials = credentials
        self.tls_policy = tls_policy or TlsPolicy()
        self.connection_timeout = connection_timeout
        self.receive_timeout = receive_timeout
        self.page_size = page_size

        self.system_domain = tenant or PrincipalId.parse(credentials.user).domain

        self.server = None
        self.connection = None

    @property
    def port(self) -> int:
        if self.tls_policy.port:
            return self.tls_policy.port
        return 636 if self.tls_policy.use_ssl else 389

    @property
    def domain_dn(self) -> str:
        return domain_to_dn(self.system_domain)

    @property
    def tenant_dn(self) -> str:
        return (f"cn={escape_rdn(self.system_domain)},cn=Tenants,cn=IdentityManager,"
                f"cn=Services,{self.domain_dn}")

    @property
    def identity_providers_dn(self) -> str:
        return f"cn=IdentityProviders,{self.tenant_dn}"

    @property
    def policy_dn(self) -> str:
        return f"cn=password and lockout policy,{self.domain_dn}"

    @property
    def is_open(self) -> bool:
        return self.connection is not None and bool(self.connection.bound)

    def authenticate(self) -> None:
        """
        Open the connection, negotiate TLS and bind.

        Raises:
            LDAPException: Socket, TLS or bind failures from ldap3
        """
        tls = self.tls_policy.validator().create_tls() if self.tls_policy.secured else None
        if tls is not None and self.tls_policy.skip_certificate_check:
            security_logger.log_security_event("Server certificate verification disabled", f"host={self.host}")
        self.server = Server(
            self.host,
            port=self.port,
            use_ssl=self.tls_policy.use_ssl,
            tls=tls,
            get_info=ALL,
            connect_timeout=self.connection_timeout,
        )
        logger.debug(f"Created LDAP server object for {self.host}:{self.port} "
                     f"(SSL: {self.tls_policy.use_ssl}, StartTLS: {self.tls_policy.start_tls})")

        self.connection = Connection(
            self.server,
            user=self.credentials.user,
            password=self.credentials.password,
            auto_bind=False,
            raise_exceptions=True,
            receive_timeout=self.receive_timeout,
        )
        try:
            self.connection.open()
            if self.tls_policy.start_tls and not self.tls_policy.use_ssl:
                self.connection.start_tls()
                logger.debug("StartTLS negotiation successful")
            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._discard_connection()
            raise

        logger.info(f"Bound to {self.host} as {self.credentials.user}")

    def _discard_connection(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.unbind()
            logger.debug(f"LDAP connection to {self.host} closed")
        except LDAPException as e:
            logger.warning(f"Error closing LDAP connection to {self.host}: {e}")
        finally:
            self.connection = None

    # Search helpers

    def _search(self, base: str, search_filter: str, attributes: List[str],
                scope=SUBTREE) -> List[Dict[str, Any]]:
        """
        Run a (paged) search and return the raw entries.

        Returns:
            List of {'dn': str, 'attributes': dict}
        """
        entries = []
        cookie = None
        page_count = 0
        while True:
            self.connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                paged_size=self.page_size if scope != BASE else None,
                paged_cookie=cookie,
            )
            page_count += 1
            for response in self.connection.response or []:
                if response.get('type') == 'searchResEntry':
                    entries.append({'dn': response['dn'], 'attributes': response.get('attributes', {})})

            controls = (self.connection.result or {}).get('controls') or {}
            cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie or scope == BASE:
                break

        logger.debug(f"Search {search_filter} under {base}: {len(entries)} entries in {page_count} page(s)")
        return entries

    def _read_entry(self, dn: str, attributes: List[str]) -> Dict[str, Any]:
        entries = self._search(dn, '(objectClass=*)', attributes, scope=BASE)
        if not entries:
            raise NotFoundError(f"Entry not found: {dn}")
        return entries[0]['attributes']

    def _find_dn(self, principal: PrincipalId, object_class: str) -> str:
        account = escape_filter_chars(principal.name)
        search_filter = f"(&(objectClass={object_class})(|(sAMAccountName={account})(cn={account})))"
        entries = self._search(domain_to_dn(principal.domain), search_filter, ['cn'])
        if not entries:
            kind = 'Group' if object_class == 'group' else 'User'
            raise NotFoundError(f"{kind} not found: {principal}")
        return entries[0]['dn']

    # Person users

    def _to_user(self, entry: Dict[str, Any], domain: str) -> PersonUser:
        attrs = entry['attributes']
        uac = _int(attrs, 'userAccountControl', UAC_NORMAL_ACCOUNT)
        return PersonUser(
            name=_first(attrs, 'sAMAccountName') or _first(attrs, 'cn'),
            domain=domain,
            description=_first(attrs, 'description'),
            first_name=_first(attrs, 'givenName'),
            last_name=_first(attrs, 'sn'),
            email=_first(attrs, 'mail'),
            locked=bool(uac & UAC_LOCKOUT),
            disabled=bool(uac & UAC_ACCOUNT_DISABLED),
        )

    def _local_domain_dn(self, domain: str) -> str:
        """
        DN of ``domain``, which must be the system domain.

        Only the system domain is stored in this directory. Principals of
        external identity sources live in their own directories and cannot
        be listed over this connection.
        """
        if domain.strip().lower() != self.system_domain.strip().lower():
            raise NotFoundError(f"Domain {domain} is not stored in the directory of {self.host}; "
                                f"only {self.system_domain} principals can be listed")
        return domain_to_dn(domain)

    def list_users(self, domain: str) -> List[PersonUser]:
        entries = self._search(
            f"cn=Users,{self._local_domain_dn(domain)}",
            '(&(objectClass=user)(!(objectClass=computer)))',
            USER_ATTRIBUTES,
        )
        return [self._to_user(entry, domain) for entry in entries]

    def _get_user(self, principal: PrincipalId) -> PersonUser:
        dn = self._find_dn(principal, 'user')
        return self._to_user({'attributes': self._read_entry(dn, USER_ATTRIBUTES)}, principal.domain)

    def create_user(self, user: PersonUser, password: str) -> PersonUser:
        dn = f"cn={escape_rdn(user.name)},cn=Users,{domain_to_dn(user.domain)}"
        attributes = {
            'objectClass': ['top', 'person', 'organizationalPerson', 'user'],
            'cn': user.name,
            'sAMAccountName': user.name,
            'userPrincipalName': f"{user.name}@{user.domain}",
            'userPassword': password,
        }
        for field_name, attr in (('first_name', 'givenName'), ('last_name', 'sn'),
                                 ('email', 'mail'), ('description', 'description')):
            value = getattr(user, field_name)
            if value:
                attributes[attr] = value

        self.connection.add(dn, attributes=attributes)
        logger.info(f"Created user {user} at {dn}")
        return self._get_user(user.principal_id)

    def update_user(self, user: PersonUser) -> PersonUser:
        dn = self._find_dn(user.principal_id, 'user')
        changes = {}
        for field_name, attr in (('first_name', 'givenName'), ('last_name', 'sn'),
                                 ('email', 'mail'), ('description', 'description')):
            value = getattr(user, field_name)
            if value is not None:
                changes[attr] = [(MODIFY_REPLACE, [value])]
        if changes:
            self.connection.modify(dn, changes)
        return self._get_user(user.principal_id)

    def delete_user(self, principal: PrincipalId) -> None:
        self.connection.delete(self._find_dn(principal, 'user'))

    def reset_user_password(self, principal: PrincipalId, password: str) -> None:
        dn = self._find_dn(principal, 'user')
        self.connection.modify(dn, {'userPassword': [(MODIFY_REPLACE, [password])]})

    def _update_account_control(self, principal: PrincipalId, set_bits: int = 0, clear_bits: int = 0):
        dn = self._find_dn(principal, 'user')
        attrs = self._read_entry(dn, ['userAccountControl'])
        current = _int(attrs, 'userAccountControl', UAC_NORMAL_ACCOUNT)
        updated = (current | set_bits) & ~clear_bits
        if updated != current:
            self.connection.modify(dn, {'userAccountControl': [(MODIFY_REPLACE, [str(updated)])]})

    def unlock_user(self, principal: PrincipalId) -> None:
        self._update_account_control(principal, clear_bits=UAC_LOCKOUT)

    def set_user_enabled(self, principal: PrincipalId, enabled: bool) -> None:
        if enabled:
            self._update_account_control(principal, clear_bits=UAC_ACCOUNT_DISABLED)
        else:
            self._update_account_control(principal, set_bits=UAC_ACCOUNT_DISABLED)

    # Groups

    def _to_group(self, entry: Dict[str, Any], domain: str) -> Group:
        attrs = entry['attributes']
        return Group(
            name=_first(attrs, 'cn') or _first(attrs, 'sAMAccountName'),
            domain=domain,
            description=_first(attrs, 'description'),
        )

    def list_groups(self, domain: str) -> List[Group]:
        entries = self._search(self._local_domain_dn(domain), '(objectClass=group)', GROUP_ATTRIBUTES)
        return [self._to_group(entry, domain) for entry in entries]

    def create_group(self, group: Group) -> Group:
        dn = f"cn={escape_rdn(group.name)},cn=Users,{domain_to_dn(group.domain)}"
        attributes = {
            'objectClass': ['top', 'group'],
            'cn': group.name,
            'sAMAccountName': group.name,
        }
        if group.description:
            attributes['description'] = group.description
        self.connection.add(dn, attributes=attributes)
        logger.info(f"Created group {group} at {dn}")
        return Group(group.name, group.domain, group.description)

    def update_group(self, group: Group) -> Group:
        dn = self._find_dn(group.principal_id, 'group')
        if group.description is not None:
            self.connection.modify(dn, {'description': [(MODIFY_REPLACE, [group.description])]})
        return self._to_group({'attributes': self._read_entry(dn, GROUP_ATTRIBUTES)}, group.domain)

    def delete_group(self, principal: PrincipalId) -> None:
        self.connection.delete(self._find_dn(principal, 'group'))

    def list_group_members(self, group: PrincipalId) -> List[PrincipalId]:
        dn = self._find_dn(group, 'group')
        attrs = self._read_entry(dn, ['member'])
        return [dn_to_principal(member) for member in _values(attrs, 'member')]

    def add_group_member(self, group: PrincipalId, member: PrincipalId, member_is_group: bool) -> None:
        group_dn = self._find_dn(group, 'group')
        member_dn = self._find_dn(member, 'group' if member_is_group else 'user')
        try:
            self.connection.modify(group_dn, {'member': [(MODIFY_ADD, [member_dn])]})
        except LDAPAttributeOrValueExistsResult:
            logger.debug(f"{member} is already a member of {group}")

    def remove_group_member(self, group: PrincipalId, member: PrincipalId, member_is_group: bool) -> None:
        group_dn = self._find_dn(group, 'group')
        member_dn = self._find_dn(member, 'group' if member_is_group else 'user')
        try:
            self.connection.modify(group_dn, {'member': [(MODIFY_DELETE, [member_dn])]})
        except LDAPNoSuchAttributeResult:
            logger.debug(f"{member} is not a member of {group}")

    # Policies

    def _read_policy(self, dn: str, mapping: Dict[str, str], policy_cls, scale: int = 1):
        attrs = self._read_entry(dn, list(mapping.values()))
        defaults = policy_cls()
        values = {}
        for field_name, attr in mapping.items():
            if field_name == 'description':
                values[field_name] = _first(attrs, attr, defaults.description)
            else:
                values[field_name] = _int(attrs, attr, getattr(defaults, field_name) * scale) // scale
        return policy_cls(**values)

    def _write_policy(self, dn: str, mapping: Dict[str, str], policy, scale: int = 1):
        changes = {}
        for field_name, attr in mapping.items():
            value = getattr(policy, field_name)
            if field_name == 'description':
                changes[attr] = [(MODIFY_REPLACE, [value] if value else [])]
            else:
                changes[attr] = [(MODIFY_REPLACE, [str(value * scale)])]
        self.connection.modify(dn, changes)

    def get_password_policy(self) -> PasswordPolicy:
        return self._read_policy(self.policy_dn, PASSWORD_POLICY_ATTRIBUTES, PasswordPolicy)

    def set_password_policy(self, policy: PasswordPolicy) -> None:
        self._write_policy(self.policy_dn, PASSWORD_POLICY_ATTRIBUTES, policy)

    def get_lockout_policy(self) -> LockoutPolicy:
        return self._read_policy(self.policy_dn, LOCKOUT_POLICY_ATTRIBUTES, LockoutPolicy)

    def set_lockout_policy(self, policy: LockoutPolicy) -> None:
        self._write_policy(self.policy_dn, LOCKOUT_POLICY_ATTRIBUTES, policy)

    def get_token_lifetime(self) -> TokenLifetime:
        return self._read_policy(self.tenant_dn, TOKEN_LIFETIME_ATTRIBUTES, TokenLifetime, scale=1000)

    def set_token_lifetime(self, policy: TokenLifetime) -> None:
        self._write_policy(self.tenant_dn, TOKEN_LIFETIME_ATTRIBUTES, policy, scale=1000)

    # Identity sources

    def _to_identity_source(self, entry: Dict[str, Any]):
        attrs = entry['attributes']
        provider = _first(attrs, 'vmwSTSProviderType')
        name = _first(attrs, 'cn')
        domain_name = _first(attrs, 'vmwSTSDomainName') or name

        if provider == PROVIDER_LOCAL_OS:
            return LocalOSIdentitySource(name=name, domain_name=domain_name)
        if provider == PROVIDER_SYSTEM:
            return SystemIdentitySource(name=name, domain_name=domain_name,
                                        alias=_first(attrs, 'vmwSTSAlias'))

        server_type = next((st for st, p in SERVER_TYPE_PROVIDERS.items() if p == provider), 'OpenLdap')
        urls = _values(attrs, 'vmwSTSConnectionStrings')
        return ExternalIdentitySource(
            name=name,
            domain_name=domain_name,
            alias=_first(attrs, 'vmwSTSAlias'),
            server_type=server_type,
            primary_url=urls[0] if urls else None,
            secondary_url=urls[1] if len(urls) > 1 else None,
            base_dn_users=_first(attrs, 'vmwSTSUserBaseDN'),
            base_dn_groups=_first(attrs, 'vmwSTSGroupBaseDN'),
            username=_first(attrs, 'vmwSTSUserName'),
            authentication_type=_first(attrs, 'vmwSTSAuthenticationType', 'password'),
            certificates=[der_to_pem(der) for der in _values(attrs, 'userCertificate')],
        )

    def list_identity_sources(self) -> list:
        entries = self._search(self.identity_providers_dn, '(objectClass=vmwSTSIdentityStore)',
                               IDENTITY_SOURCE_ATTRIBUTES, scope=LEVEL)
        return [self._to_identity_source(entry) for entry in entries]

    def _identity_source_dn(self, name: str) -> str:
        return f"cn={escape_rdn(name)},{self.identity_providers_dn}"

    def _identity_source_attributes(self, source: ExternalIdentitySource) -> Dict[str, Any]:
        attributes = {
            'vmwSTSDomainName': source.domain_name,
            'vmwSTSProviderType': SERVER_TYPE_PROVIDERS[source.server_type],
            'vmwSTSConnectionStrings': source.urls,
            'vmwSTSUserBaseDN': source.base_dn_users,
            'vmwSTSGroupBaseDN': source.base_dn_groups,
            'vmwSTSUserName': source.username,
            'vmwSTSAuthenticationType': source.authentication_type,
            'userCertificate': [pem_to_der(pem) for pem in source.certificates],
        }
        if source.alias:
            attributes['vmwSTSAlias'] = source.alias
        return attributes

    def add_identity_source(self, source: ExternalIdentitySource, password: str) -> None:
        attributes = self._identity_source_attributes(source)
        attributes = {k: v for k, v in attributes.items() if v not in (None, [])}
        attributes.update({
            'objectClass': ['top', 'vmwSTSIdentityStore'],
            'cn': source.name,
            'vmwSTSPassword': password,
        })
        dn = self._identity_source_dn(source.name)
        self.connection.add(dn, attributes=attributes)
        logger.info(f"Added identity source {source.name} at {dn}")

    def update_identity_source(self, source: ExternalIdentitySource, password: Optional[str] = None) -> None:
        changes = {}
        for attr, value in self._identity_source_attributes(source).items():
            if value is None:
                continue
            changes[attr] = [(MODIFY_REPLACE, value if isinstance(value, list) else [value])]
        if password:
            changes['vmwSTSPassword'] = [(MODIFY_REPLACE, [password])]
        self.connection.modify(self._identity_source_dn(source.name), changes)

    def delete_identity_source(self, name: str) -> None:
        self.connection.delete(self._identity_source_dn(name))
