"""
Configuration loader for the DisperSync device link
Loads and validates configuration from YAML files
"""

import yaml
import logging
from typing import Dict, Any
from pathlib import Path
from datetime import datetime
import pytz

from link_errors import ConfigError

logger = logging.getLogger(__name__)

def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file with validation
    """
    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.error(f"Configuration file not found: {config_path}")
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}

        # Validate required sections
        _validate_config(config)

        # Apply defaults
        config = _apply_defaults(config)

        logger.info(f"Configuration loaded from {config_path}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

def _validate_config(config: Dict) -> None:
    """Validate that required configuration sections exist"""
    if not isinstance(config, dict):
        raise ConfigError("Configuration root must be a mapping")

    required_sections = ['discovery', 'polling']

    for section in required_sections:
        if section not in config:
            raise ConfigError(f"Missing required configuration section: {section}")
        if not isinstance(config[section], dict):
            raise ConfigError(f"Configuration section '{section}' must be a mapping")

    # Validate discovery section
    discovery = config['discovery']
    targets = discovery.get('broadcast_addresses')
    if targets is not None and (not isinstance(targets, list) or not targets):
        raise ConfigError("discovery.broadcast_addresses must be a non-empty list when set")

    port = discovery.get('port')
    if port is not None and not (isinstance(port, int) and 0 < port < 65536):
        raise ConfigError(f"discovery.port must be a valid UDP port, got {port!r}")

    # Validate polling section
    polling = config['polling']
    for field in ('interval_ms', 'request_timeout_ms', 'dedupe_window_ms'):
        value = polling.get(field)
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            raise ConfigError(f"polling.{field} must be a positive number, got {value!r}")

    path = polling.get('path')
    if path is not None and not isinstance(path, str):
        raise ConfigError("polling.path must be a string")

def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Discovery defaults
    discovery_defaults = {
        'port': 40000,
        'message': 'DISPERSYNC_DISCOVER',
        'default_device_port': 80,
        'broadcast_addresses': [
            '255.255.255.255',
            '192.168.43.255',   # Android hotspot
            '172.20.10.15',     # iOS personal hotspot (/28)
            '192.168.137.255',  # Windows mobile hotspot
            '192.168.0.255',
            '192.168.1.255',
            '10.0.0.255'
        ],
        'timeout_ms': 8000,
        'attempts': 4,
        'interval_ms': 1500,
        'retry_seconds': 30
    }
    for key, default_value in discovery_defaults.items():
        if key not in config['discovery']:
            config['discovery'][key] = default_value

    # Subnet scan fallback defaults
    scan = config['discovery'].setdefault('subnet_scan', {})
    scan_defaults = {
        'enabled': False,
        'ping_path': '/ping',
        'port': 80,
        'timeout_per_host_ms': 700,
        'max_concurrent': 16
    }
    for key, default_value in scan_defaults.items():
        if key not in scan:
            scan[key] = default_value

    # Polling defaults
    polling_defaults = {
        'path': '/getData',
        'interval_ms': 200,
        'request_timeout_ms': 2000,
        'dedupe_window_ms': 1500,
        'jitter_ms': 40
    }
    for key, default_value in polling_defaults.items():
        if key not in config['polling']:
            config['polling'][key] = default_value

    # Session defaults
    if 'session' not in config:
        config['session'] = {}
    session_defaults = {
        'state_file': 'state/device_state.json',
        'storage_key': '@ds:lastBaseUrl',
        'autostart_polling': True
    }
    for key, default_value in session_defaults.items():
        if key not in config['session']:
            config['session'][key] = default_value

    # API defaults
    if 'api' not in config:
        config['api'] = {}
    api_defaults = {
        'enabled': True,
        'host': '0.0.0.0',
        'port': 8000
    }
    for key, default_value in api_defaults.items():
        if key not in config['api']:
            config['api'][key] = default_value

    # Logging defaults
    if 'logging' not in config:
        config['logging'] = {}
    logging_defaults = {
        'level': 'INFO',
        'file': 'logs/device_link.log',
        'console_output': True,
        'timezone': 'UTC'
    }
    for key, default_value in logging_defaults.items():
        if key not in config['logging']:
            config['logging'][key] = default_value

    # Monitoring defaults
    if 'monitoring' not in config:
        config['monitoring'] = {}
    monitoring_defaults = {
        'health_check_interval_minutes': 5,
        'reading_stale_seconds': 60
    }
    for key, default_value in monitoring_defaults.items():
        if key not in config['monitoring']:
            config['monitoring'][key] = default_value

    return config


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in a configured timezone"""

    def __init__(self, fmt=None, tz_name: str = 'UTC'):
        super().__init__(fmt)
        try:
            self.tz = pytz.timezone(tz_name)
        except pytz.UnknownTimeZoneError:
            self.tz = pytz.utc

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS TZ
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')

def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with timezone-aware timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')
    tz_name = log_config.get('timezone', 'UTC')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = TimezoneFormatter(log_format, tz_name)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[]
    )
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    # Console handler
    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    # File handler
    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.info(f"Logging configured: level={level}, tz={tz_name}, console={log_config.get('console_output', True)}, file={log_file}")

def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "discovery": {
            "port": 40000,
            "message": "DISPERSYNC_DISCOVER",
            "default_device_port": 80,
            "broadcast_addresses": ["255.255.255.255", "192.168.43.255", "172.20.10.15"],
            "timeout_ms": 8000,
            "attempts": 4,
            "interval_ms": 1500,
            "retry_seconds": 30,
            "subnet_scan": {
                "enabled": True,
                "ping_path": "/ping",
                "port": 80,
                "timeout_per_host_ms": 700,
                "max_concurrent": 16
            }
        },
        "polling": {
            "path": "/getData",
            "interval_ms": 200,
            "request_timeout_ms": 2000,
            "dedupe_window_ms": 1500,
            "jitter_ms": 40
        },
        "session": {
            "state_file": "state/device_state.json",
            "storage_key": "@ds:lastBaseUrl",
            "autostart_polling": True
        },
        "api": {
            "enabled": True,
            "host": "0.0.0.0",
            "port": 8000
        },
        "logging": {
            "level": "INFO",
            "file": "logs/device_link.log",
            "console_output": True,
            "timezone": "Asia/Manila"
        },
        "monitoring": {
            "health_check_interval_minutes": 5,
            "reading_stale_seconds": 60
        }
    }
