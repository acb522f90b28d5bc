#!/usr/bin/env python3
"""
Unit tests for identity source listing and management.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fake_transport import FakeTransportFactory, external_source
from test_certificates import make_pem

from sso_admin.certificates import thumbprint
from sso_admin.errors import NotFoundError, RemoteOperationError, ValidationError
from sso_admin.models import ExternalIdentitySource, IdentitySourceKind
from sso_admin.registry import SessionRegistry
from sso_admin.transport import Credentials

AD_SOURCE = dict(
    name='corp.example.com',
    domain_name='corp.example.com',
    primary_url='ldap://dc1.corp.example.com:389',
    base_dn_users='ou=Users,dc=corp,dc=example,dc=com',
    base_dn_groups='ou=Groups,dc=corp,dc=example,dc=com',
    username='cn=bind,dc=corp,dc=example,dc=com',
    password='BindPassw0rd',
)


class IdentitySourceTestCase(unittest.TestCase):

    def setUp(self):
        self.factory = FakeTransportFactory()
        self.registry = SessionRegistry(self.factory)
        self.connection = self.registry.connect('vc1', Credentials('administrator@vsphere.local', 'secret'))
        self.client = self.connection.client
        self.transport = self.factory.created[0]

    def tearDown(self):
        self.registry.disconnect_all()


class TestListIdentitySources(IdentitySourceTestCase):

    def test_list_all(self):
        self.transport.identity_sources.append(external_source())

        sources = self.client.get_identity_sources()

        self.assertEqual([s.kind for s in sources],
                         [IdentitySourceKind.LOCAL_OS, IdentitySourceKind.SYSTEM, IdentitySourceKind.EXTERNAL])
        self.assertTrue(all(s.server is self.connection for s in sources))

    def test_filter_by_kind(self):
        self.transport.identity_sources.append(external_source())

        sources = self.client.get_identity_sources(kinds=[IdentitySourceKind.EXTERNAL])

        self.assertEqual([s.name for s in sources], ['corp.example.com'])

    def test_get_identity_source(self):
        source = self.client.get_identity_source('localos')
        self.assertIs(source.kind, IdentitySourceKind.LOCAL_OS)

    def test_get_missing_identity_source(self):
        with self.assertRaises(NotFoundError):
            self.client.get_identity_source('missing.example.com')


class TestAddIdentitySource(IdentitySourceTestCase):

    def test_add_active_directory_over_ldap(self):
        source = self.client.add_active_directory_identity_source(domain_alias='CORP', **AD_SOURCE)

        self.assertIsInstance(source, ExternalIdentitySource)
        self.assertEqual(source.alias, 'CORP')
        self.assertIs(source.server, self.connection)
        self.assertIn(('add_identity_source', 'corp.example.com', 'BindPassw0rd'), self.transport.calls)
        self.assertEqual(len(self.client.get_identity_sources(kinds=[IdentitySourceKind.EXTERNAL])), 1)

    def test_ldaps_requires_certificate(self):
        values = dict(AD_SOURCE, primary_url='ldaps://dc1.corp.example.com:636')
        with self.assertRaises(ValidationError):
            self.client.add_active_directory_identity_source(**values)

    def test_ldaps_with_certificate(self):
        values = dict(AD_SOURCE, primary_url='ldaps://dc1.corp.example.com:636')
        pem = make_pem()
        with self.assertLogs('sso_admin.session', level='INFO') as logs:
            source = self.client.add_active_directory_identity_source(certificates=[pem], **values)

        self.assertEqual(len(source.certificates), 1)
        self.assertIn(f'trusts certificate {thumbprint(pem)}', '\n'.join(logs.output))

    def test_invalid_certificate_rejected(self):
        with self.assertRaises(ValidationError):
            self.client.add_active_directory_identity_source(certificates=['not a certificate'], **AD_SOURCE)

    def test_invalid_url_rejected(self):
        values = dict(AD_SOURCE, primary_url='http://dc1.corp.example.com')
        with self.assertRaises(ValidationError):
            self.client.add_active_directory_identity_source(**values)

    def test_missing_required_field_rejected(self):
        values = dict(AD_SOURCE, base_dn_users='')
        with self.assertRaises(ValidationError) as ctx:
            self.client.add_active_directory_identity_source(**values)
        self.assertIn('base_dn_users', str(ctx.exception))

    def test_unsupported_server_type_rejected(self):
        with self.assertRaises(ValidationError):
            self.client.add_active_directory_identity_source(server_type='NIS', **AD_SOURCE)

    def test_missing_password_rejected(self):
        values = dict(AD_SOURCE, password='')
        with self.assertRaises(ValidationError):
            self.client.add_active_directory_identity_source(**values)
        self.assertNotIn('add_identity_source', [c[0] for c in self.transport.calls])

    def test_duplicate_name_is_remote_error(self):
        self.client.add_active_directory_identity_source(**AD_SOURCE)
        with self.assertRaises(RemoteOperationError):
            self.client.add_active_directory_identity_source(**AD_SOURCE)


class TestModifyIdentitySource(IdentitySourceTestCase):

    def setUp(self):
        super().setUp()
        self.source = self.client.add_active_directory_identity_source(domain_alias='CORP', **AD_SOURCE)

    def test_update_merges_fields(self):
        updated = self.client.update_identity_source(self.source,
                                                     secondary_url='ldap://dc2.corp.example.com:389')

        self.assertEqual(updated.primary_url, 'ldap://dc1.corp.example.com:389')
        self.assertEqual(updated.secondary_url, 'ldap://dc2.corp.example.com:389')
        self.assertEqual(updated.alias, 'CORP')
        stored = self.client.get_identity_source('corp.example.com')
        self.assertEqual(stored.urls, ['ldap://dc1.corp.example.com:389', 'ldap://dc2.corp.example.com:389'])

    def test_update_passes_new_password(self):
        self.client.update_identity_source(self.source, password='Rotated1!')
        self.assertEqual(self.transport.calls[-1], ('update_identity_source', 'corp.example.com', 'Rotated1!'))

    def test_rename_rejected(self):
        with self.assertRaises(ValidationError):
            self.client.update_identity_source(self.source, name='renamed.example.com')

    def test_system_source_cannot_be_modified(self):
        system = self.client.get_identity_source('vsphere.local')
        with self.assertRaises(ValidationError):
            self.client.remove_identity_source(system)

    def test_remove_identity_source(self):
        self.client.remove_identity_source(self.source)
        with self.assertRaises(NotFoundError):
            self.client.get_identity_source('corp.example.com')

    def test_caller_built_source_resolved_by_name(self):
        self.client.remove_identity_source(external_source())
        self.assertNotIn('corp.example.com', [s.name for s in self.transport.identity_sources])

    def test_caller_built_source_keeps_kind_check(self):
        with self.assertRaises(ValidationError):
            self.client.remove_identity_source(external_source('vsphere.local'))


if __name__ == '__main__':
    unittest.main()
