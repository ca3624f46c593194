"""
Configuration loading and logging setup.

Settings come from a YAML file merged over built-in defaults, then a handful
of environment variables override the merged result (handy for Docker).
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_PATH = Path.cwd() / "config.yaml"
LOG_PATH = Path.cwd() / "server.log"

DEFAULT_CONFIG: Dict[str, Any] = {
    'server': {
        'host': '0.0.0.0',
        'port': 3000,
        'domain': 'localhost',
        'trust_proxy': True,
        'secure_cookies': False,
    },
    'auth': {
        # none, token or password
        'method': 'password',
        'username': 'admin',
        'password': '',
        'token': '',
        'session_hours': 24,
    },
    'claude': {
        'command': 'claude',
        'opts': ['--settings', '{"theme":"dark"}'],
        'workspace': '/workspace',
        'env': {'TERM': 'xterm-256color'},
    },
    'terminal': {
        'cols': 120,
        'rows': 40,
        'buffer_bytes': 100 * 1024,
        'kill_grace_seconds': 5,
    },
    'detection': {
        'max_lines': 50,
        'max_input_chars': 100000,
    },
    'websocket': {
        'max_message_bytes': 65536,
        'connections_per_window': 10,
        'connection_window_seconds': 60,
        'message_rate_limit': 30,
        'message_window_seconds': 1,
        'max_violations': 5,
        'ban_seconds': 300,
        'sweep_interval_seconds': 60,
        'send_queue_size': 256,
    },
    'notifications': {
        'debounce_seconds': 30,
        'click_url': '',
        'notify_on_exit': True,
        'ntfy': {
            'enabled': False,
            'server': 'https://ntfy.sh',
            'topic': '',
            'token': '',
            'priority': 'high',
        },
        'pushover': {
            'enabled': False,
            'user_key': '',
            'api_token': '',
        },
    },
    'mock': {
        'enabled': False,
        'speed': 1.0,
    },
    'logging': {
        'level': 'INFO',
        'file_enabled': False,
        'file': str(LOG_PATH),
    },
}


def _merge(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def apply_env_overrides(config: Dict[str, Any], environ=None) -> Dict[str, Any]:
    """Apply environment variable overrides in place and return the config."""
    env = os.environ if environ is None else environ

    if env.get('PORT'):
        config['server']['port'] = int(env['PORT'])
    if env.get('DOMAIN'):
        config['server']['domain'] = env['DOMAIN']

    ntfy = config['notifications']['ntfy']
    if env.get('NTFY_SERVER'):
        ntfy['server'] = env['NTFY_SERVER']
    if env.get('NTFY_TOPIC'):
        ntfy['topic'] = env['NTFY_TOPIC']
        ntfy['enabled'] = True
    if env.get('NTFY_TOKEN'):
        ntfy['token'] = env['NTFY_TOKEN']
    if env.get('DEBOUNCE_SECONDS'):
        try:
            config['notifications']['debounce_seconds'] = int(env['DEBOUNCE_SECONDS'])
        except ValueError:
            pass

    if env.get('MOCK_MODE'):
        config['mock']['enabled'] = _env_flag(env['MOCK_MODE'])
    if env.get('CLAUDE_OPTS'):
        config['claude']['opts'] = env['CLAUDE_OPTS'].split()
    if env.get('WORKSPACE'):
        config['claude']['workspace'] = env['WORKSPACE']

    if env.get('AUTH_TOKEN'):
        config['auth']['token'] = env['AUTH_TOKEN']
    if env.get('AUTH_PASSWORD'):
        config['auth']['password'] = env['AUTH_PASSWORD']

    return config


def load_config(path: Optional[Path] = None, environ=None) -> Dict[str, Any]:
    """Load config.yaml (if present) over the defaults."""
    if path is None:
        path = Path(os.environ.get('REMOTE_CONTROL_CONFIG', CONFIG_PATH))
    path = Path(path)

    overrides = {}
    if path.exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}

    config = _merge(DEFAULT_CONFIG, overrides)
    return apply_env_overrides(config, environ)


def setup_logging(config):
    """Setup logging to both console and file."""
    log_cfg = config.get('logging', {})
    log_to_file = log_cfg.get('file_enabled', False)
    log_level = getattr(logging, log_cfg.get('level', 'INFO').upper(), logging.INFO)

    logger = logging.getLogger('claude_remote')
    logger.setLevel(log_level)
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter('[%(name)s] %(message)s'))
    logger.addHandler(console_handler)

    if log_to_file:
        log_path = log_cfg.get('file') or LOG_PATH
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s'))
        logger.addHandler(file_handler)
        logger.info(f"[logging] Writing to {log_path}")

    return logger
