"""
Fee Calculator

Maps a transaction descriptor (plus optional routing plan) to a fee breakdown:

    platform  = max(amount * platform_rate[type], min_platform_fee)
    network   = amount * network_rate[resolved_chain]
    provider  = amount * provider_rate[direction][payment_method]   (external funding)
    exchange  = amount * exchange_rate[type]                        (platform balance)
    protocol  = amount * protocol_rate[type]
    total     = platform + network + (provider | exchange) + protocol

For asset purchases and sales the resolved chain is the chain the traded
asset settles on, regardless of the funding chain or routing plan.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .errors import FeeCalculationFailed
from .fee_rates import FeeRateTables
from .models import (
    FeeBreakdown,
    FeeRates,
    FeeSource,
    RoutingPlan,
    TransactionDescriptor,
    TransactionType,
    parse_amount,
)


TRADE_TYPES = {TransactionType.BUY, TransactionType.SELL}


class FeeCalculator:
    """
    Pure fee calculator with short-lived memoization

    Features:
    - Five fee components with per-component rates
    - Asset settlement chain resolution for trades
    - Routing plan target chain override for other types
    - Thread-safe TTL cache, cleared on rate table reload
    - Fee option comparison across routing plans
    """

    def __init__(
        self,
        rate_tables: FeeRateTables,
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize fee calculator

        Args:
            rate_tables: Fee rate tables
            cache_ttl_seconds: Memoization TTL (0 disables caching)
            clock: Monotonic clock used for cache expiry
        """
        self.rate_tables = rate_tables
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: Dict[Tuple, Tuple[float, FeeBreakdown]] = {}
        self._cache_lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0

        rate_tables.add_reload_listener(self._on_rates_reloaded)

        logger.info(f"Fee calculator initialized (cache TTL: {cache_ttl_seconds}s)")

    def _on_rates_reloaded(self, version: int):
        self.clear_cache()
        logger.info(f"Fee cache cleared after rate reload (version {version})")

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()

    def resolve_chain(
        self,
        descriptor: TransactionDescriptor,
        routing_plan: Optional[RoutingPlan] = None
    ) -> Optional[str]:
        """
        Resolve the chain whose network rate applies

        Args:
            descriptor: Transaction descriptor
            routing_plan: Optional cross-chain routing plan

        Returns:
            Chain code, or None when it cannot be resolved
        """
        chain = descriptor.settlement_chain(
            self.rate_tables.asset_chains,
            self.rate_tables.settlement_chain
        )

        if descriptor.type in TRADE_TYPES:
            if routing_plan and routing_plan.target_chain and routing_plan.target_chain != chain:
                logger.debug(f"Ignoring routing target {routing_plan.target_chain} for "
                             f"{descriptor.type.value} of {descriptor.asset} (settles on {chain})")
            return chain

        if routing_plan and routing_plan.target_chain:
            return routing_plan.target_chain.upper()

        return chain

    def _cache_key(self, descriptor: TransactionDescriptor, amount: float,
                   routing_plan: Optional[RoutingPlan]) -> Tuple:
        method = descriptor.payment_method
        return (
            descriptor.type.value,
            amount,
            (descriptor.asset or '').upper(),
            (descriptor.chain or '').upper(),
            method.value if method else None,
            routing_plan.cache_key() if routing_plan else None,
            self.rate_tables.version,
        )

    def calculate_fees(
        self,
        descriptor: TransactionDescriptor,
        routing_plan: Optional[RoutingPlan] = None
    ) -> FeeBreakdown:
        """
        Calculate the fee breakdown for a transaction

        Args:
            descriptor: Transaction descriptor
            routing_plan: Optional cross-chain routing plan

        Returns:
            FeeBreakdown

        Raises:
            InvalidAmount: amount is non-numeric or not positive
            FeeCalculationFailed: platform fee did not come out positive
        """
        amount = parse_amount(descriptor.amount)
        key = self._cache_key(descriptor, amount, routing_plan)

        if self.cache_ttl_seconds > 0:
            now = self._clock()
            with self._cache_lock:
                cached = self._cache.get(key)
                if cached and now - cached[0] < self.cache_ttl_seconds:
                    self.cache_hits += 1
                    logger.debug(f"Fee cache hit: {descriptor.type.value} ${amount}")
                    return cached[1]

        breakdown = self._compute(descriptor, amount, routing_plan)

        if self.cache_ttl_seconds > 0:
            with self._cache_lock:
                self.cache_misses += 1
                self._cache[key] = (self._clock(), breakdown)

        return breakdown

    def _compute(
        self,
        descriptor: TransactionDescriptor,
        amount: float,
        routing_plan: Optional[RoutingPlan]
    ) -> FeeBreakdown:
        rates = self.rate_tables
        tx_type = descriptor.type

        platform_rate = rates.platform_rate(tx_type)
        platform_fee = max(amount * platform_rate, rates.min_platform_fee)
        if platform_fee <= 0:
            raise FeeCalculationFailed(
                f"Platform fee for {tx_type.value} is not positive (rate {platform_rate}, "
                f"minimum {rates.min_platform_fee})"
            )

        chain = self.resolve_chain(descriptor, routing_plan)
        if chain is None:
            logger.warning(f"Unresolved settlement chain for {tx_type.value} "
                           f"(asset={descriptor.asset}), network fee set to 0")
            network_rate = 0.0
        else:
            network_rate = rates.network_rate(chain)
        network_fee = amount * network_rate

        provider_rate = 0.0
        exchange_rate = 0.0
        if descriptor.externally_funded:
            fee_source = FeeSource.PROVIDER
            provider_rate = rates.provider_rate(descriptor.fee_direction, descriptor.payment_method)
        else:
            fee_source = FeeSource.EXCHANGE
            exchange_rate = rates.exchange_rate(tx_type)
        provider_fee = amount * provider_rate
        exchange_fee = amount * exchange_rate

        protocol_rate = rates.protocol_rate(tx_type)
        protocol_fee = amount * protocol_rate

        total = platform_fee + network_fee + provider_fee + exchange_fee + protocol_fee

        return FeeBreakdown(
            amount=amount,
            platform_fee=platform_fee,
            network_fee=network_fee,
            provider_fee=provider_fee,
            exchange_fee=exchange_fee,
            protocol_fee=protocol_fee,
            total=total,
            rates=FeeRates(
                platform=platform_rate,
                network=network_rate,
                provider=provider_rate,
                exchange=exchange_rate,
                protocol=protocol_rate,
            ),
            fee_source=fee_source,
            chain=chain,
        )

    def compare_fee_options(
        self,
        descriptor: TransactionDescriptor,
        routing_plans: List[RoutingPlan]
    ) -> List[Dict]:
        """
        Rank routing plans by total cost (amount + fees), cheapest first

        Args:
            descriptor: Transaction descriptor
            routing_plans: Candidate routing plans

        Returns:
            List of {'routing_plan', 'fees', 'total_cost', 'effective_rate'}
        """
        comparisons = []
        for plan in routing_plans:
            fees = self.calculate_fees(descriptor, plan)
            comparisons.append({
                'routing_plan': plan,
                'fees': fees,
                'total_cost': fees.amount + fees.total,
                'effective_rate': fees.effective_rate,
            })

        comparisons.sort(key=lambda c: c['total_cost'])
        return comparisons
