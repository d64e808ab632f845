"""HTTP client for the predictive trend/recommendation service."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog

from tradedesk.core.config import PredictorConfig
from tradedesk.core.exceptions import SourceUnavailableError
from tradedesk.core.interfaces import SignalSource
from tradedesk.core.models import (
    Prediction, PredictionHorizon, Recommendation, TokenCategory, TrendMap,
    TrendSignal, TrendStatus, TrendTimeframe, token_category,
)
from tradedesk.exchange.retry import retry_call

logger = structlog.get_logger(__name__)

SOURCE = "predictor"


def parse_trends(payload: Dict[str, Any]) -> TrendMap:
    """Build a TrendMap from a /trends response.

    Unknown timeframes and entries with an unknown status are skipped.
    """
    trends: TrendMap = {}
    for key, raw in (payload.get("trends") or {}).items():
        try:
            timeframe = TrendTimeframe(key)
            status = TrendStatus(raw.get("trend"))
        except (ValueError, AttributeError):
            logger.debug("predictor.trend_skipped", timeframe=key)
            continue
        trends[timeframe] = TrendSignal(
            status=status,
            change_pct=raw.get("change_pct"),
            price=Decimal(str(raw["price"])) if raw.get("price") is not None else None,
            ma=Decimal(str(raw["ma"])) if raw.get("ma") is not None else None,
        )
    return trends


def parse_prediction(instrument: str, payload: Dict[str, Any]) -> Prediction:
    """Build a Prediction from a /predict response."""
    timestamp = payload.get("timestamp")
    category = payload.get("category")
    return Prediction(
        instrument=instrument,
        recommendation=Recommendation(payload["recommendation"]),
        confidence=float(payload["confidence"]),
        percentage_change=float(payload.get("percentage_change") or 0.0),
        horizon=PredictionHorizon(payload.get("prediction_horizon", PredictionHorizon.ONE_HOUR.value)),
        category=TokenCategory(category) if category in TokenCategory.__members__ else None,
        model_version=payload.get("model_version"),
        **({"timestamp": datetime.fromisoformat(timestamp.replace("Z", "+00:00"))} if timestamp else {}),
    )


class PredictorClient(SignalSource):
    """aiohttp implementation of SignalSource.

    Each request gets its own timeout and up to `retry_attempts` tries
    with a fixed delay in between. Exhaustion raises
    SourceUnavailableError.
    """

    def __init__(self, config: Optional[PredictorConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or PredictorConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, name: str, method: str, path: str, **kwargs) -> Any:
        session = self._get_session()
        url = f"{self.base_url}{path}"

        async def call():
            async with session.request(method, url, **kwargs) as response:
                response.raise_for_status()
                return await response.json()

        try:
            return await retry_call(
                call,
                name=f"predictor.{name}",
                max_retries=self.config.retry_attempts - 1,
                base_delay=self.config.retry_delay_seconds,
                max_delay=self.config.retry_delay_seconds,
                exponential_base=1.0,
                timeout=self.config.request_timeout_seconds,
            )
        except Exception as e:
            logger.error("predictor.request_failed", endpoint=path, error=str(e) or type(e).__name__)
            raise SourceUnavailableError(SOURCE, f"{path} failed: {e}") from e

    async def get_recommendation(
        self,
        instrument: str,
        horizon: PredictionHorizon = PredictionHorizon.ONE_HOUR,
    ) -> Optional[Prediction]:
        payload = await self._request(
            "predict",
            "POST",
            "/predict",
            json={
                "token_address": instrument,
                "category": token_category(instrument).value,
                "prediction_horizon": horizon.value,
                "include_reasoning": True,
            },
        )
        if not payload or "recommendation" not in payload:
            return None
        try:
            prediction = parse_prediction(instrument, {"prediction_horizon": horizon.value, **payload})
        except (KeyError, ValueError, TypeError) as e:
            raise SourceUnavailableError(SOURCE, f"malformed prediction for {instrument}: {e}") from e

        logger.debug(
            "predictor.prediction",
            instrument=instrument,
            recommendation=prediction.recommendation.value,
            confidence=prediction.confidence,
            percentage_change=prediction.percentage_change,
        )
        return prediction

    async def get_trends(self, instrument: str) -> TrendMap:
        payload = await self._request("trends", "GET", "/trends", params={"token": instrument})
        return parse_trends(payload or {})
