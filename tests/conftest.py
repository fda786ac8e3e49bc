"""Shared fixtures for the transaction flow tests."""

import pytest

from transaction_flow.balance import Balance, InMemoryBalanceSource, StrategyBalance
from transaction_flow.config import load_config
from transaction_flow.events import EventBus
from transaction_flow.execution import ScriptedExecutionAdapter
from transaction_flow.fee_calculator import FeeCalculator
from transaction_flow.fee_rates import FeeRateTables
from transaction_flow.service import TransactionService
from transaction_flow.transaction_history import TransactionHistoryDB


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def config():
    return load_config(None)


@pytest.fixture
def rate_tables(config):
    return FeeRateTables(config)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def calculator(rate_tables, clock):
    return FeeCalculator(rate_tables, cache_ttl_seconds=30.0, clock=clock)


@pytest.fixture
def balance_source():
    return InMemoryBalanceSource({
        'alice': Balance(
            available_for_spending=2000.0,
            invested_amount=500.0,
            strategies={'yield-1': StrategyBalance(200.0), 'yield-2': StrategyBalance(50.0)},
        ),
        'bob': Balance(available_for_spending=50.0),
    })


@pytest.fixture
def history(tmp_path):
    db = TransactionHistoryDB(str(tmp_path / "history.db"))
    yield db
    db.close()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorded_events(events):
    received = []
    events.subscribe_all(received.append)
    return received


@pytest.fixture
def executor():
    return ScriptedExecutionAdapter()


@pytest.fixture
def service(config, balance_source, executor, history, events):
    return TransactionService(
        config=config,
        balance_source=balance_source,
        executor=executor,
        history=history,
        events=events,
    )
