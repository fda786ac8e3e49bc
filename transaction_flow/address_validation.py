"""
Address Validation

Recipient format checks:
- Platform usernames (@username)
- Bitcoin legacy (1...), P2SH segwit (3...) and bech32 (bc1...)
- EVM hex addresses (0x + 40 hex)
- Solana base58 addresses (32-44 chars)
- Sui hex addresses (0x + 64 hex)
"""

import re
from typing import Optional, Tuple


USERNAME_PATTERN = re.compile(r'^@[A-Za-z][A-Za-z0-9_]{2,19}$')

BTC_LEGACY_PATTERN = re.compile(r'^1[a-km-zA-HJ-NP-Z1-9]{25,34}$')
BTC_SEGWIT_PATTERN = re.compile(r'^3[a-km-zA-HJ-NP-Z1-9]{25,34}$')
BTC_BECH32_PATTERN = re.compile(r'^bc1[a-z0-9]{39,59}$', re.IGNORECASE)
EVM_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')
SOLANA_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')
SUI_PATTERN = re.compile(r'^0x[a-fA-F0-9]{64}$')

EVM_ZERO_ADDRESS = '0x' + '0' * 40

# Chains whose addresses use the EVM format
EVM_CHAINS = {'ETH', 'ARB', 'OP', 'POLYGON', 'BNB', 'AVAXC'}


def validate_username(username: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Validate a platform username

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not username:
        return False, "Username is required"

    if not username.startswith('@'):
        return False, "Username must start with @ (e.g., @john123)"

    if not USERNAME_PATTERN.match(username):
        return False, "Username must be 3-20 letters, numbers or underscores after @, starting with a letter"

    return True, None


def detect_chain(address: str) -> Optional[str]:
    """Guess the chain of an external address from its format"""
    if BTC_LEGACY_PATTERN.match(address) or BTC_SEGWIT_PATTERN.match(address) or BTC_BECH32_PATTERN.match(address):
        return 'BTC'
    if SUI_PATTERN.match(address):
        return 'SUI'
    if EVM_PATTERN.match(address):
        return 'ETH'
    if SOLANA_PATTERN.match(address):
        return 'SOL'
    return None


def validate_address(address: Optional[str], chain: Optional[str] = None) -> Tuple[bool, Optional[str]]:
    """
    Validate an external wallet address

    Args:
        address: Address to validate
        chain: Chain code (BTC, ETH, SOL, SUI or an EVM chain); detected when omitted

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not address:
        return False, "Address is empty"

    address = address.strip()

    if chain is None:
        chain = detect_chain(address)
        if chain is None:
            return False, "Address format not recognized"

    chain = chain.upper()

    if chain == 'BTC':
        if address.startswith('1'):
            if not BTC_LEGACY_PATTERN.match(address):
                return False, "Invalid Bitcoin legacy address"
        elif address.startswith('3'):
            if not BTC_SEGWIT_PATTERN.match(address):
                return False, "Invalid Bitcoin SegWit address"
        elif address.lower().startswith('bc1'):
            if not BTC_BECH32_PATTERN.match(address):
                return False, "Invalid Bitcoin bech32 address"
        else:
            return False, "Bitcoin address must start with 1, 3 or bc1"

    elif chain in EVM_CHAINS:
        if not address.startswith('0x'):
            return False, "EVM address must start with 0x"
        if len(address) != 42:
            return False, "EVM address must be 42 characters"
        if not EVM_PATTERN.match(address):
            return False, "EVM address must be hexadecimal"
        if address.lower() == EVM_ZERO_ADDRESS:
            return False, "Cannot send to the zero address"

    elif chain == 'SOL':
        if len(address) < 32 or len(address) > 44:
            return False, "Invalid Solana address length"
        if not SOLANA_PATTERN.match(address):
            return False, "Solana address must be base58"

    elif chain == 'SUI':
        if not address.startswith('0x'):
            return False, "Sui address must start with 0x"
        if not SUI_PATTERN.match(address):
            return False, "Sui address must be 0x followed by 64 hex characters"

    else:
        return False, f"Chain {chain} is not supported"

    return True, None
