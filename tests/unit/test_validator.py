"""
Tests for TransactionValidator and address validation
"""

import pytest

from transaction_flow.address_validation import detect_chain, validate_address, validate_username
from transaction_flow.models import (
    BuyTransaction,
    DepositTransaction,
    SellTransaction,
    SendTransaction,
    StartStrategyTransaction,
    TransferTransaction,
    WithdrawTransaction,
)
from transaction_flow.validator import TransactionValidator


SOL_ADDRESS = "So" + "1" * 40 + "2"
ETH_ADDRESS = "0x" + "a1" * 20
SUI_ADDRESS = "0x" + "b2" * 32
BTC_LEGACY = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
BTC_SEGWIT = "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy"
BTC_BECH32 = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


@pytest.fixture
def validator(config):
    return TransactionValidator(config['minimum_amounts'], asset_chains=config['asset_chains'])


# =============================================================================
# Address and username formats
# =============================================================================


class TestAddressFormats:
    """Per-chain recipient format checks."""

    @pytest.mark.parametrize("address,chain", [
        (BTC_LEGACY, 'BTC'),
        (BTC_SEGWIT, 'BTC'),
        (BTC_BECH32, 'BTC'),
        (ETH_ADDRESS, 'ETH'),
        (SOL_ADDRESS, 'SOL'),
        (SUI_ADDRESS, 'SUI'),
    ])
    def test_valid_addresses(self, address, chain):
        assert validate_address(address, chain) == (True, None)
        assert detect_chain(address) == chain

    def test_wrong_chain_rejected(self):
        is_valid, error = validate_address(ETH_ADDRESS, 'SOL')

        assert is_valid is False
        assert 'Solana' in error

    def test_evm_zero_address_rejected(self):
        is_valid, error = validate_address('0x' + '0' * 40, 'ETH')

        assert is_valid is False
        assert 'zero address' in error

    def test_short_evm_address(self):
        assert validate_address('0x1234', 'ETH') == (False, "EVM address must be 42 characters")

    def test_empty_address(self):
        assert validate_address('', 'ETH') == (False, "Address is empty")
        assert validate_address(None) == (False, "Address is empty")

    def test_unrecognized_without_chain(self):
        assert validate_address('not-an-address') == (False, "Address format not recognized")

    def test_unsupported_chain(self):
        is_valid, error = validate_address(ETH_ADDRESS, 'DOGE')

        assert is_valid is False
        assert 'not supported' in error

    @pytest.mark.parametrize("username,expected", [
        ('@alice', True),
        ('@bob_1', True),
        ('alice', False),
        ('@al', False),
        ('@1alice', False),
        ('@' + 'a' * 21, False),
        ('', False),
    ])
    def test_usernames(self, username, expected):
        is_valid, _ = validate_username(username)

        assert is_valid is expected


# =============================================================================
# Validator
# =============================================================================


class TestTransactionValidator:
    """Field-keyed error maps."""

    def test_valid_send(self, validator):
        result = validator.validate(SendTransaction('alice', 25, recipient='@bob_1'))

        assert result.is_valid is True
        assert result.errors == {}

    def test_minimum_amount(self, validator):
        result = validator.validate(DepositTransaction('alice', 9.99, payment_method='paypal'))

        assert result.is_valid is False
        assert result.errors['amount'] == "Minimum amount for add is $10.00"

    def test_invalid_amount(self, validator):
        result = validator.validate(SendTransaction('alice', 'ten', recipient='@bob_1'))

        assert result.errors['amount'] == "Valid amount is required"

    def test_deposit_requires_external_method(self, validator):
        missing = validator.validate(DepositTransaction('alice', 100))
        internal = validator.validate(WithdrawTransaction('alice', 100, payment_method='platform_balance'))

        assert missing.errors['payment_method'] == "Payment method is required"
        assert 'external payment method' in internal.errors['payment_method']

    def test_send_requires_username(self, validator):
        result = validator.validate(SendTransaction('alice', 25, recipient=ETH_ADDRESS))

        assert 'recipient' in result.errors

    def test_transfer_validated_against_asset_chain(self, validator):
        on_sol = validator.validate(TransferTransaction('alice', 25, recipient=SOL_ADDRESS, asset='USDC'))
        eth_to_sol = validator.validate(TransferTransaction('alice', 25, recipient=ETH_ADDRESS, asset='USDC'))
        explicit = validator.validate(TransferTransaction('alice', 25, recipient=ETH_ADDRESS, chain='ETH'))

        assert on_sol.is_valid is True
        assert 'recipient' in eth_to_sol.errors
        assert explicit.is_valid is True

    def test_trades_require_supported_asset(self, validator):
        missing = validator.validate(BuyTransaction('alice', 50))
        unsupported = validator.validate(SellTransaction('alice', 50, asset='DOGE'))
        supported = validator.validate(BuyTransaction('alice', 50, asset='paxg'))

        assert missing.errors['asset'] == "Asset is required"
        assert unsupported.errors['asset'] == "Asset DOGE is not supported"
        assert supported.is_valid is True

    def test_multiple_errors_collected(self, validator):
        result = validator.validate(SendTransaction('alice', 1, recipient='bob'))

        assert set(result.errors) == {'amount', 'recipient'}

    def test_strategy_without_extra_fields(self, validator):
        assert validator.validate(StartStrategyTransaction('alice', 10, strategy_id='s1')).is_valid is True

    def test_non_descriptor_is_programming_error(self, validator):
        with pytest.raises(TypeError):
            validator.validate({'type': 'send', 'amount': 10})
