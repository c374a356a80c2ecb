# sqlscout/configuration.py

"""
Configuration loader for sqlscout.

Handles loading settings from config.yaml. If the file doesn't exist,
it creates one with default values.
"""

import sys
import yaml
from typing import Dict, Any, Optional

# This dictionary holds the default structure and values for our config.
# It will be used to generate the initial config.yaml.
DEFAULT_CONFIG: Dict[str, Any] = {
    'tcp_ports': [1433],
    'port_check_timeout_seconds': 1.0,
    'ping_timeout_seconds': 1.0,
    'browser_timeout_seconds': 2.0,
    'service_query_timeout_seconds': 20.0,
    'sql_connect_timeout_seconds': 5,
    'odbc_driver': 'ODBC Driver 18 for SQL Server',
    'max_workers': 8,
    # Options: Default, All, Browser, SqlService, SPN, TCPPort, DNSResolve, SqlConnect, Ping
    'scan_types': ['Default'],
    # Options: IPRange, DomainSPN, DomainServer, DataSourceEnumeration, All
    'discovery_types': [],
    # Options: None, Low, Medium, High
    'min_confidence': 'Low',
    'domain_controller': None,
    # Options: table, json, yaml
    'output_format': 'table',
}

_HEADER = (
    "# sqlscout Configuration File\n"
    "# You can edit these settings. Command-line options override them.\n\n"
)


def get_config_path() -> str:
    """Returns the default path to the config file."""
    return "config.yaml"


def save_config(config: Dict[str, Any], config_path: Optional[str] = None):
    """Saves the provided configuration dictionary to config.yaml."""
    config_path = config_path or get_config_path()
    try:
        with open(config_path, 'w') as f:
            f.write(_HEADER)
            yaml.dump(config, f, sort_keys=False, default_flow_style=False, indent=2)
    except IOError as e:
        print(f"ERROR: Could not write config file to '{config_path}': {e}", file=sys.stderr)


def load_or_create_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads configuration from config.yaml.

    If the file doesn't exist, it creates it with default values.
    If the file is invalid, it reports the error and exits.
    """
    config_path = config_path or get_config_path()
    try:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f)

        # Merge user config with defaults to ensure all keys are present
        config = DEFAULT_CONFIG.copy()
        if isinstance(user_config, dict):
            config.update(user_config)
        return config

    except FileNotFoundError:
        print(f"Configuration file not found. Creating '{config_path}' with default settings.", file=sys.stderr)
        try:
            with open(config_path, 'w') as f:
                f.write(_HEADER)
                yaml.dump(DEFAULT_CONFIG, f, sort_keys=False, default_flow_style=False, indent=2)
        except IOError as e:
            # Not fatal: the defaults still work for this run.
            print(f"WARNING: Could not write default config file to '{config_path}': {e}", file=sys.stderr)
        return DEFAULT_CONFIG.copy()

    except yaml.YAMLError as e:
        print(f"FATAL: Error parsing '{config_path}': {e}", file=sys.stderr)
        sys.exit(1)


def get_max_workers(config: Dict[str, Any]) -> int:
    """Number of hosts scanned in parallel, clamped to at least 1."""
    value = config.get('max_workers', 1)
    if isinstance(value, bool) or not isinstance(value, int):
        return 1
    return max(1, value)
