"""
Health-check entry point for the SSO admin client.

Connects to every configured SSO server, reads identity sources and the
password policy from each, prints a JSON report and disconnects. A failure on
one server is reported and the remaining servers are still checked.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Any, Dict, List, Optional

from sso_admin.config import ConfigurationError, load_config, server_settings, transport_options
from sso_admin.fanout import fan_out
from sso_admin.ldap_transport import LdapAdminTransport
from sso_admin.logging_setup import setup_logging
from sso_admin.registry import SessionRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SERVER_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2


class HealthChecker:
    """
    Runs the connectivity and read-only checks for configured servers.
    """

    def __init__(self, config_path: Optional[str] = None, registry: Optional[SessionRegistry] = None):
        """
        Args:
            config_path: Path to configuration file
            registry: Registry to connect through; built from config when None
        """
        self.config_path = config_path
        self.config = None
        self.registry = registry

    def _transport_factory(self):
        options_by_host = {
            server['host'].strip().lower(): transport_options(server)
            for server in self.config['servers']
        }

        def factory(host, credentials, tls_policy):
            return LdapAdminTransport(host, credentials, tls_policy,
                                      **options_by_host.get(host.lower(), {}))
        return factory

    def load(self):
        self.config = load_config(self.config_path)
        setup_logging(self.config.get('logging', {}))
        if self.registry is None:
            self.registry = SessionRegistry(self._transport_factory())

    def _connect(self, server_config: Dict[str, Any]):
        host, credentials, tls_policy = server_settings(server_config)
        return self.registry.connect(host, credentials, tls_policy)

    @staticmethod
    def _inspect(connection) -> Dict[str, Any]:
        client = connection.client
        sources = client.get_identity_sources()
        policy = client.get_password_policy()
        return {
            'system_domain': client.system_domain,
            'identity_sources': [
                {'name': source.name, 'kind': source.kind.value, 'domain': source.domain_name}
                for source in sources
            ],
            'password_lifetime_days': policy.password_lifetime_days,
        }

    def run(self) -> Dict[str, Any]:
        """
        Check every configured server.

        Returns:
            Report dictionary with overall status and per-server details
        """
        report = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'servers': {},
        }
        servers: Dict[str, Dict[str, Any]] = {server['name']: server for server in self.config['servers']}

        try:
            # Fan out over names so server entries (which hold passwords) never reach the log
            connected = fan_out(list(servers), lambda name: self._connect(servers[name]),
                                description='connect')
            for result in connected.failures:
                report['servers'][result.connection] = {
                    'status': 'fail',
                    'error': type(result.error).__name__,
                    'message': str(result.error),
                }

            names = [result.connection for result in connected.successes]
            inspected = fan_out(connected.values(), self._inspect, description='inspect')
            for name, result in zip(names, inspected):
                if result.ok:
                    report['servers'][name] = {'status': 'pass', **result.value}
                else:
                    report['servers'][name] = {
                        'status': 'fail',
                        'error': type(result.error).__name__,
                        'message': str(result.error),
                    }
        finally:
            self.registry.disconnect_all()

        if any(entry['status'] != 'pass' for entry in report['servers'].values()):
            report['status'] = 'unhealthy'
        logger.info(f"Health check finished: {report['status']} ({len(report['servers'])} server(s))")
        return report


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the health check."""
    parser = argparse.ArgumentParser(description='SSO admin server health check')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    args = parser.parse_args(argv)

    checker = HealthChecker(config_path=args.config)
    try:
        checker.load()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR

    report = checker.run()
    print(json.dumps(report, indent=2))
    return EXIT_OK if report['status'] == 'healthy' else EXIT_SERVER_FAILURE


if __name__ == "__main__":
    sys.exit(main())
