"""
SSO Admin - Session registry and typed administration client for SSO servers.

This package manages authenticated connections to single-sign-on
administration servers and exposes user, group, policy and identity-source
operations over them.
"""

__version__ = "1.0.0"
__author__ = "SSO Admin Team"
