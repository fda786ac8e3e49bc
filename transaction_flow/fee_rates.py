"""
Fee Rate Tables

Static rate configuration keyed by transaction type, chain and payment
method/direction. A missing key resolves to rate 0 and logs a warning:
unknown configuration under-prices a transaction, it never blocks one.
"""

import threading
from typing import Callable, Dict, List, Optional

from loguru import logger

from .config import load_config


class FeeRateTables:
    """
    Fee rate lookups with reload support

    Features:
    - platform / network / provider / exchange / protocol rate tables
    - Asset -> settlement chain mapping
    - Fail-open lookups (missing key -> 0.0 + warning)
    - Version counter and reload listeners for cache invalidation
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize rate tables

        Args:
            config: Complete configuration dict (defaults when omitted)
        """
        self._lock = threading.Lock()
        self._listeners: List[Callable[[int], None]] = []
        self.version = 0
        self._apply(config if config is not None else load_config(None))

        logger.info(f"Fee rate tables initialized ({len(self.platform_rates)} transaction types, "
                    f"{len(self.network_rates)} chains)")

    @classmethod
    def from_yaml(cls, config_path: str) -> 'FeeRateTables':
        return cls(load_config(config_path))

    def _apply(self, config: Dict):
        fees = config.get('fees', {})
        provider = fees.get('provider', {})

        self.platform_rates: Dict[str, float] = dict(fees.get('platform', {}))
        self.network_rates: Dict[str, float] = {k.upper(): v for k, v in fees.get('network', {}).items()}
        self.provider_rates: Dict[str, Dict[str, float]] = {
            direction: dict(rates) for direction, rates in provider.items()
        }
        self.exchange_rates: Dict[str, float] = dict(fees.get('exchange', {}))
        self.protocol_rates: Dict[str, float] = dict(fees.get('protocol', {}))
        self.min_platform_fee: float = float(fees.get('minimums', {}).get('platform', 0.0))
        self.settlement_chain: Optional[str] = config.get('settlement_chain')
        self.asset_chains: Dict[str, str] = {
            k.upper(): v.upper() for k, v in config.get('asset_chains', {}).items()
        }

    def reload(self, config: Dict):
        """
        Replace all rate tables and notify listeners

        Args:
            config: Complete configuration dict
        """
        with self._lock:
            self._apply(config)
            self.version += 1
            version = self.version
            listeners = list(self._listeners)

        logger.info(f"Fee rate tables reloaded (version {version})")
        for listener in listeners:
            listener(version)

    def reload_from_yaml(self, config_path: str):
        self.reload(load_config(config_path))

    def add_reload_listener(self, listener: Callable[[int], None]):
        with self._lock:
            self._listeners.append(listener)

    def _lookup(self, table: Dict[str, float], key, table_name: str) -> float:
        if key is None:
            logger.warning(f"No key given for {table_name} rate, using 0")
            return 0.0

        key = getattr(key, 'value', key)
        rate = table.get(key)
        if rate is None:
            logger.warning(f"Missing {table_name} rate for '{key}', using 0")
            return 0.0
        return float(rate)

    def platform_rate(self, tx_type) -> float:
        return self._lookup(self.platform_rates, tx_type, 'platform')

    def network_rate(self, chain: Optional[str]) -> float:
        return self._lookup(self.network_rates, chain.upper() if chain else None, 'network')

    def provider_rate(self, direction, payment_method) -> float:
        direction = getattr(direction, 'value', direction)
        table = self.provider_rates.get(direction)
        if table is None:
            logger.warning(f"Missing provider rate table for direction '{direction}', using 0")
            return 0.0
        return self._lookup(table, payment_method, f'{direction} provider')

    def exchange_rate(self, tx_type) -> float:
        return self._lookup(self.exchange_rates, tx_type, 'exchange')

    def protocol_rate(self, tx_type) -> float:
        # Only strategy operations carry a protocol fee; absence elsewhere is expected
        key = getattr(tx_type, 'value', tx_type)
        return float(self.protocol_rates.get(key, 0.0))

    def asset_chain(self, asset: Optional[str]) -> Optional[str]:
        if not asset:
            return None
        return self.asset_chains.get(asset.upper())
