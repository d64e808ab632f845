"""Persistence for TradeDesk."""
