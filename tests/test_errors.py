#!/usr/bin/env python3
"""
Unit tests for error translation.
"""

import os
import ssl
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPInsufficientAccessRightsResult,
    LDAPInvalidCredentialsResult,
    LDAPNoSuchObjectResult,
    LDAPSocketOpenError,
    LDAPStartTLSError,
)

from sso_admin.errors import (
    AuthenticationError,
    ConnectivityError,
    NotFoundError,
    RemoteOperationError,
    SsoAdminError,
    ValidationError,
    root_cause,
    translate,
)


class TestRootCause(unittest.TestCase):
    """Test cases for exception chain unwrapping."""

    def test_returns_exception_without_chain(self):
        error = ValueError('plain')
        self.assertIs(root_cause(error), error)

    def test_follows_explicit_cause(self):
        inner = ConnectionRefusedError('refused')
        try:
            try:
                raise inner
            except ConnectionRefusedError as e:
                raise RuntimeError('wrapper') from e
        except RuntimeError as outer:
            self.assertIs(root_cause(outer), inner)

    def test_follows_implicit_context(self):
        try:
            try:
                raise KeyError('inner')
            except KeyError:
                raise RuntimeError('while handling')
        except RuntimeError as outer:
            self.assertIsInstance(root_cause(outer), KeyError)

    def test_cycle_does_not_loop(self):
        first = RuntimeError('first')
        second = RuntimeError('second')
        first.__cause__ = second
        second.__cause__ = first
        self.assertIn(root_cause(first), (first, second))


class TestTranslate(unittest.TestCase):
    """Test cases for mapping transport errors onto the taxonomy."""

    def test_taxonomy_errors_pass_through(self):
        error = NotFoundError('missing')
        self.assertIs(translate(error, 'lookup'), error)

    def test_invalid_credentials(self):
        error = translate(LDAPInvalidCredentialsResult(result=49, description='invalidCredentials',
                                                       message='bad password'), 'Connect to vc1')
        self.assertIsInstance(error, AuthenticationError)
        self.assertTrue(str(error).startswith('Connect to vc1 failed: '))

    def test_bind_error(self):
        self.assertIsInstance(translate(LDAPBindError('automatic bind not successful')), AuthenticationError)

    def test_other_result_codes_are_remote(self):
        error = translate(LDAPInsufficientAccessRightsResult(result=50, description='insufficientAccessRights'))
        self.assertIsInstance(error, RemoteOperationError)
        self.assertEqual(error.result_code, 50)
        self.assertEqual(error.description, 'insufficientAccessRights')

    def test_no_such_object(self):
        error = translate(LDAPNoSuchObjectResult(result=32, description='noSuchObject', message='gone'))
        self.assertIsInstance(error, NotFoundError)

    def test_connectivity_errors(self):
        for exc in (LDAPSocketOpenError('socket connection error'),
                    LDAPStartTLSError('start_tls failed'),
                    ssl.SSLError('certificate verify failed'),
                    ConnectionRefusedError('refused'),
                    TimeoutError('timed out')):
            with self.subTest(exc=type(exc).__name__):
                self.assertIsInstance(translate(exc), ConnectivityError)

    def test_wrapped_connectivity_error_is_unwrapped(self):
        try:
            try:
                raise ssl.SSLError('certificate verify failed')
            except ssl.SSLError as e:
                raise RuntimeError('remote call failed') from e
        except RuntimeError as outer:
            error = translate(outer, 'list users')
        self.assertIsInstance(error, ConnectivityError)
        self.assertIn('certificate verify failed', str(error))

    def test_value_error_is_validation(self):
        self.assertIsInstance(translate(ValueError('bad input')), ValidationError)

    def test_unknown_error_is_remote(self):
        error = translate(RuntimeError('server fault'), 'set policy')
        self.assertIsInstance(error, RemoteOperationError)
        self.assertEqual(str(error), 'set policy failed: server fault')

    def test_original_exception_is_chained(self):
        original = RuntimeError('boom')
        self.assertIs(translate(original).__cause__, original)

    def test_empty_message_uses_type_name(self):
        error = translate(RuntimeError())
        self.assertEqual(str(error), 'RuntimeError')

    def test_every_result_is_taxonomy_error(self):
        for exc in (KeyError('k'), AttributeError('a'), LDAPBindError('b')):
            with self.subTest(exc=type(exc).__name__):
                self.assertIsInstance(translate(exc), SsoAdminError)


if __name__ == '__main__':
    unittest.main()
