"""Utility helpers for TradeDesk."""
