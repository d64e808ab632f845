"""Core models, configuration, contracts and the trading orchestrator."""
