"""
Tests package for the Advanced Order Execution Engine

This package contains all test files organized by component.
"""

# Test organization:
# - test_validator.py: Parameter and envelope validation tables
# - test_config.py: Environment-driven configuration
# - test_strategies.py: Strategy decisions driven with hand-built state
# - test_record_store.py: Order rows and the execution log
# - test_engine.py: Order loops against the paper exchange
# - test_manager.py: Per-user engine registry
# - test_api.py: REST endpoints
