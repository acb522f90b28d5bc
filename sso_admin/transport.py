"""
Transport interface consumed by the session core.

The session client only depends on the call/response contract defined by
AdminTransport; how calls reach the server (LDAP, SOAP, ...) is left to the
concrete transport. Credentials and TlsPolicy describe how a transport
authenticates and validates the server.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from sso_admin.certificates import (
    AcceptAllCertificateValidator,
    CertificateValidator,
    ChainCertificateValidator,
)
from sso_admin.models import (
    ExternalIdentitySource,
    Group,
    LockoutPolicy,
    PasswordPolicy,
    PersonUser,
    PrincipalId,
    TokenLifetime,
)


@dataclass
class Credentials:
    user: str
    password: str

    def __repr__(self):
        return f"Credentials(user={self.user!r}, password='****')"


@dataclass
class TlsPolicy:
    """
    How the channel to the server is secured.

    Attributes:
        use_ssl: Connect with implicit TLS (LDAPS)
        start_tls: Upgrade a plain connection with StartTLS
        skip_certificate_check: Accept any server certificate
        ca_cert_file: CA bundle used to validate the server chain
        port: Explicit port; transport default when None
    """

    use_ssl: bool = True
    start_tls: bool = False
    skip_certificate_check: bool = False
    ca_cert_file: Optional[str] = None
    port: Optional[int] = None

    @property
    def secured(self) -> bool:
        return self.use_ssl or self.start_tls

    def validator(self) -> CertificateValidator:
        if self.skip_certificate_check:
            return AcceptAllCertificateValidator()
        return ChainCertificateValidator(self.ca_cert_file)


class AdminTransport(ABC):
    """
    Abstract transport to an SSO administration service.

    Implementations raise their native exceptions; the session client
    translates them into the sso_admin error taxonomy.
    """

    #: Tenant (system) domain served by the connected server
    system_domain: str = ''

    @abstractmethod
    def authenticate(self) -> None:
        """Open the channel and authenticate. Raises on failure."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Must be safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the channel is authenticated and usable."""

    # Person users
    @abstractmethod
    def list_users(self, domain: str) -> List[PersonUser]:
        pass

    @abstractmethod
    def create_user(self, user: PersonUser, password: str) -> PersonUser:
        pass

    @abstractmethod
    def update_user(self, user: PersonUser) -> PersonUser:
        pass

    @abstractmethod
    def delete_user(self, principal: PrincipalId) -> None:
        pass

    @abstractmethod
    def reset_user_password(self, principal: PrincipalId, password: str) -> None:
        pass

    @abstractmethod
    def unlock_user(self, principal: PrincipalId) -> None:
        pass

    @abstractmethod
    def set_user_enabled(self, principal: PrincipalId, enabled: bool) -> None:
        pass

    # Groups
    @abstractmethod
    def list_groups(self, domain: str) -> List[Group]:
        pass

    @abstractmethod
    def create_group(self, group: Group) -> Group:
        pass

    @abstractmethod
    def update_group(self, group: Group) -> Group:
        pass

    @abstractmethod
    def delete_group(self, principal: PrincipalId) -> None:
        pass

    @abstractmethod
    def list_group_members(self, group: PrincipalId) -> List[PrincipalId]:
        pass

    @abstractmethod
    def add_group_member(self, group: PrincipalId, member: PrincipalId, member_is_group: bool) -> None:
        pass

    @abstractmethod
    def remove_group_member(self, group: PrincipalId, member: PrincipalId, member_is_group: bool) -> None:
        pass

    # Policies
    @abstractmethod
    def get_password_policy(self) -> PasswordPolicy:
        pass

    @abstractmethod
    def set_password_policy(self, policy: PasswordPolicy) -> None:
        pass

    @abstractmethod
    def get_lockout_policy(self) -> LockoutPolicy:
        pass

    @abstractmethod
    def set_lockout_policy(self, policy: LockoutPolicy) -> None:
        pass

    @abstractmethod
    def get_token_lifetime(self) -> TokenLifetime:
        pass

    @abstractmethod
    def set_token_lifetime(self, policy: TokenLifetime) -> None:
        pass

    # Identity sources
    @abstractmethod
    def list_identity_sources(self) -> list:
        """All identity sources (LocalOS, System and External variants)."""

    @abstractmethod
    def add_identity_source(self, source: ExternalIdentitySource, password: str) -> None:
        pass

    @abstractmethod
    def update_identity_source(self, source: ExternalIdentitySource, password: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def delete_identity_source(self, name: str) -> None:
        pass
