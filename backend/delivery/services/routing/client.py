"""
Route polyline lookup against an OSRM-compatible routing service.

The live map must degrade gracefully: any failure of the routing call
(network error, timeout, bad status, unexpected payload) produces a
straight-line route between the two points instead of an error.
"""

from dataclasses import dataclass, field
from typing import Literal, Optional

import httpx

from delivery.core.config import get_settings
from delivery.core.logging import get_logger

logger = get_logger(__name__)

Coordinate = tuple[float, float]


@dataclass(frozen=True)
class Route:
    """
    Route polyline as (latitude, longitude) points.

    Attributes:
        points: Polyline from start to end
        source: osrm when computed by the service, straight_line on fallback
        distance_meters: Route length reported by the service
        duration_seconds: Travel time reported by the service
    """

    points: list[Coordinate] = field(default_factory=list)
    source: Literal["osrm", "straight_line"] = "straight_line"
    distance_meters: Optional[float] = None
    duration_seconds: Optional[float] = None


def straight_line_route(start: Coordinate, end: Coordinate) -> Route:
    return Route(points=[start, end], source="straight_line")


class RoutingClient:
    """
    Async client for the routing service.

    Args:
        base_url: Routing endpoint up to and including the profile
        timeout: Request timeout in seconds
        client: Optional shared httpx client
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.routing_base_url).rstrip("/")
        self.timeout = timeout or settings.routing_timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def route(self, start: Coordinate, end: Coordinate) -> Route:
        """
        Route from start to end, falling back to a straight line.

        Args:
            start: (latitude, longitude) of the courier
            end: (latitude, longitude) of the customer

        Returns:
            Route computed by the service, or the straight-line fallback
        """
        # OSRM takes lng,lat pairs
        coords = f"{start[1]},{start[0]};{end[1]},{end[0]}"
        url = f"{self.base_url}/{coords}"
        params = {"overview": "full", "geometries": "geojson"}

        try:
            response = await self._get_client().get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Routing failed, using straight line",
                error=str(e),
                error_type=type(e).__name__,
            )
            return straight_line_route(start, end)

        if not isinstance(data, dict):
            data = {}
        routes = data.get("routes")
        if data.get("code") != "Ok" or not routes:
            logger.warning(
                "Routing returned no route, using straight line",
                code=data.get("code"),
            )
            return straight_line_route(start, end)

        try:
            geometry = routes[0]["geometry"]["coordinates"]
            points = [(float(lat), float(lng)) for lng, lat in geometry]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Routing payload malformed, using straight line", error=str(e))
            return straight_line_route(start, end)

        if len(points) < 2:
            return straight_line_route(start, end)

        return Route(
            points=points,
            source="osrm",
            distance_meters=routes[0].get("distance"),
            duration_seconds=routes[0].get("duration"),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
