"""
Tests Module: Unit Tests for kvlink

Test Coverage:
    - KeySpace and storage (in-memory store, transactions, codec, Redis mapping)
    - Index engine in both forward modes
    - Principal cascade with hook
    - Expiry sweeper and repair passes
    - Retry, configuration, logging
"""
