"""
Transaction Flow Configuration

Loads transaction_config.yaml and merges it over built-in defaults.

Sections:
- fees: platform / network / provider / exchange / protocol rate tables
- settlement_chain: chain used for fiat, peer and strategy operations
- asset_chains: chain each tradeable asset settles on
- minimum_amounts: per-type minimum transaction amounts
- flow: submission timeout and fee cache TTL
- history: SQLite database path
"""

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger


DEFAULT_CONFIG: Dict[str, Any] = {
    'fees': {
        'platform': {
            'add': 0.0009,
            'withdraw': 0.009,
            'send': 0.0009,
            'transfer': 0.0009,
            'buy': 0.0009,
            'sell': 0.0009,
            'start_strategy': 0.0009,
            'stop_strategy': 0.0009,
        },
        'network': {
            'BTC': 0.09,
            'ETH': 0.005,
            'SOL': 0.00001,
            'SUI': 0.00003,
        },
        'provider': {
            'onramp': {
                'apple_pay': 0.005,
                'google_pay': 0.005,
                'credit_debit_card': 0.01,
                'bank_account': 0.01,
                'paypal': 0.03,
            },
            'offramp': {
                'apple_pay': 0.03,
                'google_pay': 0.03,
                'credit_debit_card': 0.02,
                'bank_account': 0.02,
                'paypal': 0.04,
            },
        },
        'exchange': {
            'send': 0.0,
            'transfer': 0.008,
            'buy': 0.01,
            'sell': 0.01,
            'start_strategy': 0.0,
            'stop_strategy': 0.0,
        },
        'protocol': {
            'start_strategy': 0.007,
            'stop_strategy': 0.007,
        },
        'minimums': {
            'platform': 0.01,
        },
    },
    'settlement_chain': 'SOL',
    'asset_chains': {
        'BTC': 'BTC',
        'ETH': 'ETH',
        'SOL': 'SOL',
        'SUI': 'SUI',
        'PAXG': 'ETH',
        'XAUT': 'ETH',
        'MAG7': 'SOL',
        'SPX': 'SOL',
        'REIT': 'SOL',
        'USDC': 'SOL',
    },
    'minimum_amounts': {
        'add': 10.0,
        'withdraw': 5.0,
        'send': 5.0,
        'transfer': 5.0,
        'buy': 10.0,
        'sell': 5.0,
        'start_strategy': 10.0,
        'stop_strategy': 5.0,
    },
    'flow': {
        'submission_timeout_seconds': 30.0,
        'fee_cache_ttl_seconds': 30.0,
    },
    'history': {
        'db_path': 'transaction_history.db',
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = "transaction_config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML, falling back to defaults

    Args:
        config_path: Path to config file (None for defaults only)

    Returns:
        Complete configuration dict
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.warning(f"Config file {config_path} not found, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

        with open(config_file, 'r', encoding='utf-8') as f:
            custom = yaml.safe_load(f) or {}

        if not isinstance(custom, dict):
            logger.warning(f"Config file {config_path} is not a mapping, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

        logger.info(f"Loaded configuration from {config_path}")
        return _merge(DEFAULT_CONFIG, custom)

    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Failed to load {config_path}: {e}, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)
