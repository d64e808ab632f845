"""Predictive signal service clients."""

from tradedesk.oracles.predictor import PredictorClient

__all__ = ["PredictorClient"]
