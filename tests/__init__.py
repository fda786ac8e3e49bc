"""
Test suite for the transaction flow core

Contains:
- tests/unit/          : Unit tests for individual modules and the flow
"""
