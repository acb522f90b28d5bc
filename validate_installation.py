#!/usr/bin/env python3
"""
Installation check for the SSO admin client.

Verifies that the third-party dependencies import, that every package
module loads, and that the core registry/session wiring works against an
in-process transport.
"""

import sys
import importlib


def check_import(label, import_name):
    """Return (ok, message) for importing ``import_name``."""
    try:
        importlib.import_module(import_name)
        return True, f"✓ {label} available"
    except ImportError as e:
        return False, f"✗ {label} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]
    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for label, import_name in dependencies:
        ok, message = check_import(label, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok

    print("\n  Test dependencies:")
    for label, import_name in test_dependencies:
        ok, message = check_import(label, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "sso_admin.errors",
        "sso_admin.models",
        "sso_admin.filters",
        "sso_admin.certificates",
        "sso_admin.transport",
        "sso_admin.ldap_transport",
        "sso_admin.session",
        "sso_admin.registry",
        "sso_admin.fanout",
        "sso_admin.config",
        "sso_admin.logging_setup",
        "sso_admin.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_import(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_functionality():
    print("\n=== Functionality Validation ===")

    try:
        from sso_admin.filters import filter_by_name
        from sso_admin.models import LockoutPolicy, merge

        names = filter_by_name(["admin", "administrator", "guest"], "adm*", key=lambda n: n)
        assert names == ["admin", "administrator"], names
        print("  ✓ Wildcard name matching")

        merged = merge(LockoutPolicy(max_failed_attempts=5), auto_unlock_interval_sec=60)
        assert merged.max_failed_attempts == 5 and merged.auto_unlock_interval_sec == 60
        print("  ✓ Policy merge semantics")

        from sso_admin.registry import SessionRegistry
        SessionRegistry()
        print("  ✓ Session registry construction")
        return True

    except Exception as e:
        print(f"  ✗ Functionality check failed: {e}")
        return False


def main():
    print("SSO Admin - Installation Validation")
    print("=" * 50)

    results = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
    ]

    print("\n=== Summary ===")
    if all(results):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and describe your servers")
        print("  2. Check connectivity with: sso-admin-health --config config.yaml")
        return 0

    print("✗ Some validations failed!")
    return 1


if __name__ == "__main__":
    sys.exit(main())
