# market_price/demand.py
"""Clients for the external demand-hotspot and seasonal-trend estimators.

Both are best-effort collaborators: callers treat any failure as "no signal".
"""
import os
from typing import Any, Dict, Optional, Protocol
import httpx
from dotenv import load_dotenv

load_dotenv()

DEMAND_ESTIMATOR_URL = os.getenv("DEMAND_ESTIMATOR_URL")
DEMAND_TIMEOUT_SECONDS = float(os.getenv("DEMAND_TIMEOUT_SECONDS", "2.0"))


class DemandEstimator(Protocol):
    async def get_demand_hotspots(self, lat: float, lng: float, radius_km: float = 10,
                                  hours: int = 24) -> Dict[str, Any]:
        """Return {"success": bool, "data": {"hotspots": [{"top_categories": [...], "demand_score": float}]}}."""


class SeasonalTrendEstimator(Protocol):
    async def get_seasonal_trends(self, lat: Optional[float], lng: Optional[float],
                                  radius_km: float = 10) -> Dict[str, Any]:
        """Return {"success": bool, "data": {...}}."""


class HttpDemandEstimator:
    """Talks to the geo service over HTTP."""

    def __init__(self, base_url: str, timeout: float = DEMAND_TIMEOUT_SECONDS, client: httpx.AsyncClient = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def get_demand_hotspots(self, lat, lng, radius_km=10, hours=24):
        resp = await self._client.get(
            f"{self.base_url}/demand-hotspots",
            params={"lat": lat, "lng": lng, "radius_km": radius_km, "hours": hours},
        )
        resp.raise_for_status()
        return resp.json()

    async def get_seasonal_trends(self, lat, lng, radius_km=10):
        params = {"radius_km": radius_km}
        if lat is not None and lng is not None:
            params.update(lat=lat, lng=lng)
        resp = await self._client.get(f"{self.base_url}/seasonal-trends", params=params)
        resp.raise_for_status()
        return resp.json()

    async def aclose(self):
        await self._client.aclose()


def estimator_from_env() -> Optional[HttpDemandEstimator]:
    if not DEMAND_ESTIMATOR_URL:
        return None
    return HttpDemandEstimator(DEMAND_ESTIMATOR_URL)
