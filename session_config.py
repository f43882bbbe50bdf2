"""
Configuration for EduSec Labs session service
Values come from environment variables (a .env file is loaded first)
"""

import os
import logging
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Runtime settings for the session service"""

    # Container runtime
    CONTAINER_DRIVER = 'cli'          # 'cli' (docker binary) or 'sdk' (docker SDK)
    DOCKER_BIN: Optional[str] = None  # resolved lazily when unset
    DOCKER_HOST: Optional[str] = None
    CONTAINER_PREFIX = 'edusec'

    # Host port ranges [base, base + span)
    LAB_PORT_BASE = 8082
    LAB_PORT_SPAN = 1000
    WORKSTATION_PORT_BASE = 22220
    WORKSTATION_PORT_SPAN = 1000
    PROBE_HOST_PORTS = False

    # Access details
    PUBLIC_HOST = 'localhost'
    DEFAULT_INTERNAL_PORT = 80

    # Attacker workstation
    WORKSTATION_IMAGE = 'alpine:3.19'
    WORKSTATION_INTERNAL_PORT = 22

    LAB_CATALOG_PATH: Optional[str] = None

    # Inactivity reaper
    IDLE_TIMEOUT_MINUTES = 30
    REAPER_INTERVAL_SECONDS = 300
    REAPER_ENABLED = True

    STARTUP_GRACE_SECONDS = 2

    # Driver timeouts (seconds)
    PULL_TIMEOUT = 300
    RUN_TIMEOUT = 8
    INSPECT_TIMEOUT = 5
    REMOVE_TIMEOUT = 5
    EXEC_TIMEOUT = 30
    LOGS_TIMEOUT = 10
    EXEC_MAX_OUTPUT = 10 * 1024 * 1024

    # X-Admin-Key secret; admin endpoints are closed while unset
    ADMIN_KEY: Optional[str] = None

    CORS_ORIGINS = 'http://localhost:3000'
    LOG_LEVEL = 'INFO'

    def __init__(self, **overrides: Any):
        for key, value in overrides.items():
            if not hasattr(Config, key):
                raise KeyError(f"Unknown config key: {key}")
            setattr(self, key, value)

    @classmethod
    def from_env(cls, **overrides: Any) -> 'Config':
        """Build a Config from the current environment, then apply overrides"""
        values: Dict[str, Any] = {
            'CONTAINER_DRIVER': os.environ.get('CONTAINER_DRIVER', cls.CONTAINER_DRIVER).lower(),
            'DOCKER_BIN': os.environ.get('DOCKER_BIN') or cls.DOCKER_BIN,
            'DOCKER_HOST': os.environ.get('DOCKER_HOST') or cls.DOCKER_HOST,
            'CONTAINER_PREFIX': os.environ.get('CONTAINER_PREFIX', cls.CONTAINER_PREFIX),
            'LAB_PORT_BASE': _env_int('LAB_PORT_BASE', cls.LAB_PORT_BASE),
            'LAB_PORT_SPAN': _env_int('LAB_PORT_SPAN', cls.LAB_PORT_SPAN),
            'WORKSTATION_PORT_BASE': _env_int('WORKSTATION_PORT_BASE', cls.WORKSTATION_PORT_BASE),
            'WORKSTATION_PORT_SPAN': _env_int('WORKSTATION_PORT_SPAN', cls.WORKSTATION_PORT_SPAN),
            'PROBE_HOST_PORTS': _env_bool('PROBE_HOST_PORTS', cls.PROBE_HOST_PORTS),
            'PUBLIC_HOST': os.environ.get('PUBLIC_HOST', cls.PUBLIC_HOST),
            'DEFAULT_INTERNAL_PORT': _env_int('DEFAULT_INTERNAL_PORT', cls.DEFAULT_INTERNAL_PORT),
            'WORKSTATION_IMAGE': os.environ.get('WORKSTATION_IMAGE', cls.WORKSTATION_IMAGE),
            'WORKSTATION_INTERNAL_PORT': _env_int('WORKSTATION_INTERNAL_PORT', cls.WORKSTATION_INTERNAL_PORT),
            'LAB_CATALOG_PATH': os.environ.get('LAB_CATALOG_PATH') or cls.LAB_CATALOG_PATH,
            'IDLE_TIMEOUT_MINUTES': _env_int('IDLE_TIMEOUT_MINUTES', cls.IDLE_TIMEOUT_MINUTES),
            'REAPER_INTERVAL_SECONDS': _env_int('REAPER_INTERVAL_SECONDS', cls.REAPER_INTERVAL_SECONDS),
            'REAPER_ENABLED': _env_bool('REAPER_ENABLED', cls.REAPER_ENABLED),
            'STARTUP_GRACE_SECONDS': _env_int('STARTUP_GRACE_SECONDS', cls.STARTUP_GRACE_SECONDS),
            'PULL_TIMEOUT': _env_int('PULL_TIMEOUT', cls.PULL_TIMEOUT),
            'RUN_TIMEOUT': _env_int('RUN_TIMEOUT', cls.RUN_TIMEOUT),
            'INSPECT_TIMEOUT': _env_int('INSPECT_TIMEOUT', cls.INSPECT_TIMEOUT),
            'REMOVE_TIMEOUT': _env_int('REMOVE_TIMEOUT', cls.REMOVE_TIMEOUT),
            'EXEC_TIMEOUT': _env_int('EXEC_TIMEOUT', cls.EXEC_TIMEOUT),
            'LOGS_TIMEOUT': _env_int('LOGS_TIMEOUT', cls.LOGS_TIMEOUT),
            'EXEC_MAX_OUTPUT': _env_int('EXEC_MAX_OUTPUT', cls.EXEC_MAX_OUTPUT),
            'ADMIN_KEY': os.environ.get('ADMIN_KEY') or cls.ADMIN_KEY,
            'CORS_ORIGINS': os.environ.get('CORS_ORIGINS', cls.CORS_ORIGINS),
            'LOG_LEVEL': os.environ.get('LOG_LEVEL', cls.LOG_LEVEL).upper(),
        }
        values.update(overrides)
        return cls(**values)

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(',') if origin.strip()]

    @property
    def timeouts(self) -> Dict[str, int]:
        """Per-operation driver timeouts keyed by operation name"""
        return {
            'pull': self.PULL_TIMEOUT,
            'run': self.RUN_TIMEOUT,
            'inspect': self.INSPECT_TIMEOUT,
            'remove': self.REMOVE_TIMEOUT,
            'exec': self.EXEC_TIMEOUT,
            'logs': self.LOGS_TIMEOUT,
        }


def configure_logging(level: str = 'INFO') -> None:
    """Configure root logging once for the whole service"""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
