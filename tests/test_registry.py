#!/usr/bin/env python3
"""
Unit tests for the session registry: deduplication, reference counting
and teardown.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fake_transport import FakeTransport, FakeTransportFactory

from sso_admin.errors import (
    AuthenticationError,
    ConnectivityError,
    NotConnectedError,
    ValidationError,
)
from sso_admin.registry import ServerConnection, SessionRegistry, identity_key
from sso_admin.transport import Credentials, TlsPolicy


class TestIdentityKey(unittest.TestCase):

    def test_normalizes_case_and_whitespace(self):
        self.assertEqual(identity_key(' VC1.Example.com ', 'Administrator@VSPHERE.local'),
                         ('vc1.example.com', 'administrator@vsphere.local'))


class TestSessionRegistryConnect(unittest.TestCase):
    """Test cases for connecting and deduplicating connections."""

    def setUp(self):
        self.factory = FakeTransportFactory(password='secret', unreachable={'down.example.com'})
        self.registry = SessionRegistry(self.factory)
        self.credentials = Credentials('administrator@vsphere.local', 'secret')

    def tearDown(self):
        self.registry.disconnect_all()

    def test_connect_returns_live_connection(self):
        connection = self.registry.connect('vc1', self.credentials)

        self.assertIsInstance(connection, ServerConnection)
        self.assertTrue(connection.is_connected)
        self.assertEqual(connection.ref_count, 1)
        self.assertEqual(str(connection), 'administrator@vsphere.local@vc1')
        self.assertEqual(self.registry.list_active(), {connection})
        self.assertTrue(self.factory.created[0].is_open)

    def test_default_tls_policy_validates_chain(self):
        self.registry.connect('vc1', self.credentials)
        tls_policy = self.factory.created[0].tls_policy
        self.assertEqual(tls_policy, TlsPolicy())
        self.assertFalse(tls_policy.skip_certificate_check)

    def test_same_identity_is_deduplicated(self):
        first = self.registry.connect('vc1', self.credentials)
        second = self.registry.connect('VC1', Credentials('Administrator@vsphere.local', 'secret'))

        self.assertIs(first, second)
        self.assertEqual(first.ref_count, 2)
        self.assertEqual(len(self.factory.created), 1)
        self.assertEqual(len(self.registry), 1)

    def test_different_user_gets_own_connection(self):
        first = self.registry.connect('vc1', self.credentials)
        second = self.registry.connect('vc1', Credentials('operator@vsphere.local', 'secret'))

        self.assertIsNot(first, second)
        self.assertEqual(self.registry.list_active(), {first, second})

    def test_different_password_for_live_identity_rejected(self):
        first = self.registry.connect('vc1', self.credentials)

        with self.assertRaises(AuthenticationError):
            self.registry.connect('vc1', Credentials('administrator@vsphere.local', 'other'))

        self.assertEqual(first.ref_count, 1)
        self.assertEqual(len(self.factory.created), 1)

    def test_wrong_password_raises_authentication_error(self):
        with self.assertRaises(AuthenticationError) as ctx:
            self.registry.connect('vc1', Credentials('administrator@vsphere.local', 'wrong'))

        self.assertIn('Connect to vc1 failed', str(ctx.exception))
        self.assertEqual(len(self.registry), 0)

    def test_unreachable_host_raises_connectivity_error(self):
        with self.assertRaises(ConnectivityError):
            self.registry.connect('down.example.com', self.credentials)
        self.assertEqual(self.registry.list_active(), set())

    def test_empty_host_or_user_rejected(self):
        with self.assertRaises(ValidationError):
            self.registry.connect('', self.credentials)
        with self.assertRaises(ValidationError):
            self.registry.connect('vc1', Credentials('', 'secret'))
        self.assertEqual(self.factory.created, [])

    def test_failed_connect_then_retry_succeeds(self):
        with self.assertRaises(AuthenticationError):
            self.registry.connect('vc1', Credentials('administrator@vsphere.local', 'wrong'))

        connection = self.registry.connect('vc1', self.credentials)
        self.assertTrue(connection.is_connected)

    def test_get_returns_registered_connection(self):
        connection = self.registry.connect('vc1', self.credentials)
        self.assertIs(self.registry.get('VC1', 'administrator@VSPHERE.local'), connection)
        self.assertIsNone(self.registry.get('vc2', 'administrator@vsphere.local'))


class TestSessionRegistryDisconnect(unittest.TestCase):
    """Test cases for reference-counted teardown."""

    def setUp(self):
        self.factory = FakeTransportFactory()
        self.registry = SessionRegistry(self.factory)
        self.credentials = Credentials('administrator@vsphere.local', 'secret')

    def test_teardown_only_when_last_holder_disconnects(self):
        first = self.registry.connect('vc1', self.credentials)
        second = self.registry.connect('vc1', self.credentials)
        transport = self.factory.created[0]

        self.registry.disconnect(first)
        self.assertTrue(second.is_connected)
        self.assertEqual(second.ref_count, 1)
        self.assertEqual(transport.close_calls, 0)
        self.assertEqual(second.client.get_users(), [])

        self.registry.disconnect(second)
        self.assertFalse(second.is_connected)
        self.assertEqual(second.ref_count, 0)
        self.assertEqual(transport.close_calls, 1)
        self.assertEqual(self.registry.list_active(), set())

    def test_client_rejects_calls_after_teardown(self):
        connection = self.registry.connect('vc1', self.credentials)
        transport = self.factory.created[0]
        self.registry.disconnect(connection)
        transport.calls.clear()

        with self.assertRaises(NotConnectedError):
            connection.client.get_users()
        self.assertEqual(transport.calls, [])

    def test_disconnect_twice_is_noop(self):
        connection = self.registry.connect('vc1', self.credentials)
        self.registry.disconnect(connection)
        self.registry.disconnect(connection)

        self.assertEqual(self.factory.created[0].close_calls, 1)
        self.assertEqual(connection.ref_count, 0)

    def test_stale_handle_does_not_affect_new_connection(self):
        old = self.registry.connect('vc1', self.credentials)
        self.registry.disconnect(old)
        new = self.registry.connect('vc1', self.credentials)

        self.registry.disconnect(old)
        self.assertIsNot(old, new)
        self.assertTrue(new.is_connected)
        self.assertEqual(new.ref_count, 1)

    def test_connection_disconnect_and_context_manager(self):
        with self.registry.connect('vc1', self.credentials) as connection:
            self.assertTrue(connection.is_connected)
        self.assertFalse(connection.is_connected)
        self.assertEqual(len(self.registry), 0)

    def test_close_error_is_logged_not_raised(self):
        connection = self.registry.connect('vc1', self.credentials)
        self.factory.created[0].close = Mock(side_effect=OSError('connection reset'))

        with self.assertLogs('sso_admin.registry', level='WARNING') as logs:
            self.registry.disconnect(connection)

        self.assertFalse(connection.is_connected)
        self.assertIn('connection reset', '\n'.join(logs.output))

    def test_slow_close_does_not_block_other_identities(self):
        self.addCleanup(self.registry.disconnect_all)
        connection = self.registry.connect('vc1', self.credentials)
        transport = self.factory.created[0]
        close = transport.close
        connected = []

        def slow_close():
            worker = threading.Thread(
                target=lambda: connected.append(self.registry.connect('vc2', self.credentials)))
            worker.start()
            worker.join(timeout=5)
            close()

        transport.close = slow_close
        self.registry.disconnect(connection)

        self.assertEqual(len(connected), 1)
        self.assertTrue(connected[0].is_connected)
        self.assertEqual(transport.close_calls, 1)

    def test_disconnect_all_ignores_ref_counts(self):
        first = self.registry.connect('vc1', self.credentials)
        self.registry.connect('vc1', self.credentials)
        other = self.registry.connect('vc2', self.credentials)

        self.registry.disconnect_all()

        self.assertFalse(first.is_connected)
        self.assertFalse(other.is_connected)
        self.assertTrue(all(t.close_calls == 1 for t in self.factory.created))
        self.assertEqual(len(self.registry), 0)

    def test_registry_context_manager(self):
        with SessionRegistry(self.factory) as registry:
            connection = registry.connect('vc1', self.credentials)
        self.assertFalse(connection.is_connected)


class TestSessionRegistryConcurrency(unittest.TestCase):
    """Test cases for concurrent connect/disconnect on one identity."""

    def test_concurrent_connects_share_one_connection(self):
        factory = FakeTransportFactory()
        registry = SessionRegistry(factory)
        credentials = Credentials('administrator@vsphere.local', 'secret')
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(registry.connect('vc1', credentials))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len({id(c) for c in results}), 1)
        connection = results[0]
        self.assertEqual(connection.ref_count, 8)
        # Transports created by losing racers are closed immediately
        open_transports = [t for t in factory.created if t.is_open]
        self.assertEqual(len(open_transports), 1)

        threads = [threading.Thread(target=registry.disconnect, args=(connection,)) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertFalse(connection.is_connected)
        self.assertEqual(len(registry), 0)
        self.assertFalse(any(t.is_open for t in factory.created))


class TestServerConnectionWithoutRegistry(unittest.TestCase):

    def test_standalone_disconnect_tears_down(self):
        transport = FakeTransport()
        connection = ServerConnection('vc1', 'administrator@vsphere.local', transport, 'digest')
        connection.disconnect()
        self.assertFalse(connection.is_connected)
        self.assertEqual(transport.close_calls, 1)


if __name__ == '__main__':
    unittest.main()
