#!/usr/bin/env python3
"""
Unit tests for principal name filtering.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sso_admin.filters import filter_by_name, has_wildcard, name_matches
from sso_admin.models import PersonUser


class TestNameMatching(unittest.TestCase):
    """Test cases for exact and wildcard matching."""

    def test_empty_pattern_matches_everything(self):
        self.assertTrue(name_matches('anything', None))
        self.assertTrue(name_matches('anything', ''))

    def test_exact_match(self):
        self.assertTrue(name_matches('admin', 'admin'))
        self.assertFalse(name_matches('admin2', 'admin'))
        self.assertFalse(name_matches('Admin', 'admin'))

    def test_star_wildcard(self):
        self.assertTrue(name_matches('admin', 'adm*'))
        self.assertTrue(name_matches('administrator', 'adm*'))
        self.assertFalse(name_matches('guest', 'adm*'))

    def test_question_mark_wildcard(self):
        self.assertTrue(name_matches('user1', 'user?'))
        self.assertFalse(name_matches('user10', 'user?'))

    def test_has_wildcard(self):
        self.assertTrue(has_wildcard('a*'))
        self.assertTrue(has_wildcard('a?'))
        self.assertFalse(has_wildcard('admin'))
        self.assertFalse(has_wildcard(''))
        self.assertFalse(has_wildcard(None))

    def test_brackets_are_literal_without_wildcard(self):
        self.assertTrue(name_matches('svc[1]', 'svc[1]'))
        self.assertFalse(name_matches('svc1', 'svc[1]'))


class TestFilterByName(unittest.TestCase):
    """Test cases for filtering listings."""

    def setUp(self):
        self.users = [PersonUser(name, 'vsphere.local') for name in ('admin', 'administrator', 'guest')]

    def test_wildcard_listing(self):
        result = filter_by_name(self.users, 'adm*')
        self.assertEqual([u.name for u in result], ['admin', 'administrator'])

    def test_exact_listing(self):
        result = filter_by_name(self.users, 'admin')
        self.assertEqual([u.name for u in result], ['admin'])

    def test_no_pattern_keeps_order(self):
        self.assertEqual(filter_by_name(self.users, None), self.users)

    def test_custom_key(self):
        result = filter_by_name([{'cn': 'a1'}, {'cn': 'b1'}], 'a*', key=lambda item: item['cn'])
        self.assertEqual(result, [{'cn': 'a1'}])


if __name__ == '__main__':
    unittest.main()
