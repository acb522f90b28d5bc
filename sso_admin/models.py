"""
Value objects returned by SSO admin session clients.

Principals, policies and identity sources are plain dataclasses. Each value
remembers the connection that issued it through a weak reference, so a
value never keeps a torn-down connection alive and operations can check
that the issuing connection is still live before dispatching.
"""

import weakref
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sso_admin.errors import ValidationError


class ServerBound:
    """Mixin for values issued by a server connection (non-owning link)."""

    _server_ref = None

    def bind_server(self, server):
        """Attach the issuing connection and return self."""
        self._server_ref = weakref.ref(server) if server is not None else None
        return self

    @property
    def server(self):
        """Issuing connection, or None if it has been garbage collected."""
        return self._server_ref() if self._server_ref is not None else None


@dataclass(frozen=True)
class PrincipalId:
    name: str
    domain: str

    def __str__(self):
        return f"{self.name}@{self.domain}"

    @classmethod
    def parse(cls, value: str, default_domain: str = '') -> 'PrincipalId':
        """Parse 'name@domain' (or bare 'name') into a PrincipalId."""
        if '@' in value:
            name, domain = value.rsplit('@', 1)
            return cls(name, domain)
        return cls(value, default_domain)


@dataclass
class PersonUser(ServerBound):
    name: str
    domain: str
    description: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    locked: bool = False
    disabled: bool = False

    @property
    def principal_id(self) -> PrincipalId:
        return PrincipalId(self.name, self.domain)

    def __str__(self):
        return str(self.principal_id)


@dataclass
class Group(ServerBound):
    name: str
    domain: str
    description: Optional[str] = None

    @property
    def principal_id(self) -> PrincipalId:
        return PrincipalId(self.name, self.domain)

    def __str__(self):
        return str(self.principal_id)


@dataclass
class PasswordPolicy(ServerBound):
    description: str = ''
    prohibited_previous_passwords_count: int = 5
    min_length: int = 8
    max_length: int = 20
    max_identical_adjacent_characters: int = 3
    min_numeric_count: int = 1
    min_special_char_count: int = 1
    min_alphabetic_count: int = 2
    min_uppercase_count: int = 1
    min_lowercase_count: int = 1
    password_lifetime_days: int = 90

    def validate(self):
        _check_non_negative(self)
        if self.min_length > self.max_length:
            raise ValidationError(
                f"min_length ({self.min_length}) exceeds max_length ({self.max_length})"
            )


@dataclass
class LockoutPolicy(ServerBound):
    description: str = ''
    auto_unlock_interval_sec: int = 300
    failed_attempt_interval_sec: int = 180
    max_failed_attempts: int = 5

    def validate(self):
        _check_non_negative(self)


@dataclass
class TokenLifetime(ServerBound):
    """Maximum lifetimes (seconds) for Holder-of-Key and Bearer tokens."""

    max_hok_token_lifetime: int = 2592000
    max_bearer_token_lifetime: int = 300

    def validate(self):
        _check_non_negative(self)


class IdentitySourceKind(Enum):
    LOCAL_OS = 'localos'
    SYSTEM = 'system'
    EXTERNAL = 'external'


@dataclass
class LocalOSIdentitySource(ServerBound):
    name: str
    domain_name: str
    kind: IdentitySourceKind = field(default=IdentitySourceKind.LOCAL_OS, init=False)


@dataclass
class SystemIdentitySource(ServerBound):
    name: str
    domain_name: str
    alias: Optional[str] = None
    kind: IdentitySourceKind = field(default=IdentitySourceKind.SYSTEM, init=False)


@dataclass
class ExternalIdentitySource(ServerBound):
    """External LDAP / Active Directory identity source."""

    name: str
    domain_name: str
    alias: Optional[str] = None
    server_type: str = 'ActiveDirectory'
    primary_url: Optional[str] = None
    secondary_url: Optional[str] = None
    base_dn_users: Optional[str] = None
    base_dn_groups: Optional[str] = None
    username: Optional[str] = None
    authentication_type: str = 'password'
    certificates: List[str] = field(default_factory=list)
    kind: IdentitySourceKind = field(default=IdentitySourceKind.EXTERNAL, init=False)

    @property
    def urls(self) -> List[str]:
        return [url for url in (self.primary_url, self.secondary_url) if url]


def _check_non_negative(value):
    for f in dataclasses.fields(value):
        current = getattr(value, f.name)
        if isinstance(current, int) and not isinstance(current, bool) and current < 0:
            raise ValidationError(f"{f.name} must be non-negative, got {current}")


def merge(base, **overrides):
    """
    Build a copy of ``base`` where every override that is not None replaces
    the base value. Unknown field names raise ValidationError.

    The server link of ``base`` is carried over to the result.

    Args:
        base: Dataclass instance to merge onto
        **overrides: Field overrides; None means "keep previous value"

    Returns:
        New dataclass instance of the same type
    """
    init_fields = {f.name for f in dataclasses.fields(base) if f.init}
    unknown = sorted(set(overrides) - init_fields)
    if unknown:
        raise ValidationError(
            f"Unknown field(s) for {type(base).__name__}: {', '.join(unknown)}"
        )

    changes: Dict[str, Any] = {k: v for k, v in overrides.items() if v is not None}
    merged = dataclasses.replace(base, **changes)
    merged._server_ref = base._server_ref
    return merged
