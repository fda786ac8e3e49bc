"""
Execution Collaborators

The flow submits a confirmed transaction to an execution adapter and gets
back success/failure plus an opaque provider transaction id.

Adapters:
- ScriptedExecutionAdapter: deterministic double with scripted outcomes
- CcxtExecutionAdapter: exchange-backed adapter (market orders, withdrawals)
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Union

import ccxt.async_support as ccxt
from loguru import logger

from .models import ConfirmationSnapshot, TransactionType


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome reported by an execution adapter"""
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class ExecutionAdapter(Protocol):
    async def submit(self, snapshot: ConfirmationSnapshot) -> SubmissionResult:
        ...


class ScriptedExecutionAdapter:
    """
    Deterministic execution adapter

    Every submission succeeds with a sequential provider id unless an
    outcome (a SubmissionResult, or an exception to raise) was scripted for
    its transaction id.
    """

    def __init__(self, delay_seconds: float = 0.0, id_prefix: str = "exec"):
        self.delay_seconds = delay_seconds
        self.id_prefix = id_prefix
        self.submissions: List[ConfirmationSnapshot] = []
        self._outcomes: Dict[str, Union[SubmissionResult, Exception]] = {}
        self._counter = itertools.count(1)

    def script(self, transaction_id: str, outcome: Union[SubmissionResult, Exception]):
        self._outcomes[transaction_id] = outcome

    def fail(self, transaction_id: str, error: str):
        self.script(transaction_id, SubmissionResult(success=False, error=error))

    async def submit(self, snapshot: ConfirmationSnapshot) -> SubmissionResult:
        self.submissions.append(snapshot)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        outcome = self._outcomes.get(snapshot.transaction_id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome

        return SubmissionResult(success=True, transaction_id=f"{self.id_prefix}-{next(self._counter):06d}")


class CcxtExecutionAdapter:
    """
    Execution adapter backed by a ccxt exchange

    Supported:
    - buy / sell: market order on {asset}/{quote}, sized from the last price
    - transfer: withdrawal of the asset to the recipient address on its chain

    Fiat deposits/withdrawals, peer sends and strategy operations go through
    other providers and are reported as unsupported here.
    """

    SUPPORTED_TYPES = {TransactionType.BUY, TransactionType.SELL, TransactionType.TRANSFER}

    def __init__(
        self,
        exchange_name: str = "binance",
        api_credentials: Optional[Dict[str, str]] = None,
        quote_currency: str = "USDC",
        exchange=None
    ):
        """
        Initialize adapter

        Args:
            exchange_name: ccxt exchange id
            api_credentials: apiKey / secret / password
            quote_currency: Quote currency for market orders
            exchange: Pre-built exchange instance (skips initialize)
        """
        self.exchange_name = exchange_name
        self.api_credentials = api_credentials or {}
        self.quote_currency = quote_currency
        self.exchange = exchange

    async def initialize(self):
        """Create the exchange client and load markets"""
        if self.exchange is not None:
            return

        exchange_class = getattr(ccxt, self.exchange_name)
        config = {
            'enableRateLimit': True,
            'apiKey': self.api_credentials.get('apiKey'),
            'secret': self.api_credentials.get('secret'),
            'options': {'defaultType': 'spot'}
        }
        if 'password' in self.api_credentials:
            config['password'] = self.api_credentials['password']

        try:
            exchange = exchange_class(config)
            await exchange.load_markets()
            self.exchange = exchange
            logger.info(f"✓ Initialized {self.exchange_name} execution adapter")
        except Exception as e:
            logger.error(f"✗ Failed to initialize {self.exchange_name}: {e}")
            raise

    async def submit(self, snapshot: ConfirmationSnapshot) -> SubmissionResult:
        descriptor = snapshot.descriptor
        tx_type = descriptor.type

        if tx_type not in self.SUPPORTED_TYPES:
            return SubmissionResult(
                success=False,
                error=f"{tx_type.value} is not supported by the {self.exchange_name} adapter"
            )

        if self.exchange is None:
            await self.initialize()

        try:
            if tx_type is TransactionType.TRANSFER:
                result = await self._withdraw(snapshot)
            else:
                result = await self._market_order(snapshot)

            provider_id = result.get('id') or result.get('txid')
            logger.info(f"✓ {tx_type.value} submitted to {self.exchange_name}: {provider_id}")
            return SubmissionResult(success=True, transaction_id=provider_id)

        except Exception as e:
            error_msg = str(e)
            logger.error(f"✗ {self.exchange_name} {tx_type.value} failed: {error_msg[:300]}")
            return SubmissionResult(success=False, error=f"{self.exchange_name} error: {error_msg[:300]}")

    async def _market_order(self, snapshot: ConfirmationSnapshot) -> Dict:
        descriptor = snapshot.descriptor
        symbol = f"{descriptor.asset.upper()}/{self.quote_currency}"
        side = 'buy' if descriptor.type is TransactionType.BUY else 'sell'

        ticker = await self.exchange.fetch_ticker(symbol)
        price = ticker.get('last') or ticker.get('close')
        if not price:
            raise ValueError(f"No price available for {symbol}")

        base_amount = snapshot.amount / price
        logger.debug(f"Market {side} {base_amount} {symbol} at ~{price}")
        return await self.exchange.create_order(symbol, 'market', side, base_amount)

    async def _withdraw(self, snapshot: ConfirmationSnapshot) -> Dict:
        descriptor = snapshot.descriptor
        params = {}
        if snapshot.fees.chain:
            params['network'] = snapshot.fees.chain

        return await self.exchange.withdraw(
            code=(descriptor.asset or self.quote_currency).upper(),
            amount=snapshot.amount,
            address=descriptor.recipient,
            tag=None,
            params=params
        )

    async def close(self):
        if self.exchange is not None:
            await self.exchange.close()
            logger.info(f"{self.exchange_name} execution adapter closed")
