"""
National Weather Service API calls.

The NWS API is public (no token), but it requires a User-Agent and only covers
US locations. Responses are GeoJSON:

    /alerts?area=CA         -> {"features": [{"properties": {...}}, ...]}
    /points/{lat},{lon}     -> {"properties": {"forecast": "<url>"}}
    <forecast url>          -> {"properties": {"periods": [...]}}
"""

from descope_mcp.outbound import (
    HttpClientFactory,
    UnexpectedFormat,
    default_http_client,
    expect_list,
    expect_object,
    read_json,
    send,
)

SERVICE = "NWS"


def format_alert(feature: dict) -> str:
    """Format an alert feature into a readable block."""
    props = feature.get("properties") or {}
    return "\n".join(
        [
            f"Event: {props.get('event') or 'Unknown'}",
            f"Area: {props.get('areaDesc') or 'Unknown'}",
            f"Severity: {props.get('severity') or 'Unknown'}",
            f"Status: {props.get('status') or 'Unknown'}",
            f"Headline: {props.get('headline') or 'No headline'}",
            "---",
        ]
    )


def format_period(period: dict) -> str:
    """Format a forecast period into a readable block."""
    temperature = period.get("temperature")
    return "\n".join(
        [
            f"{period.get('name') or 'Unknown'}:",
            f"Temperature: {temperature if temperature is not None else 'Unknown'}°{period.get('temperatureUnit') or 'F'}",
            f"Wind: {period.get('windSpeed') or 'Unknown'} {period.get('windDirection') or ''}".rstrip(),
            f"{period.get('shortForecast') or 'No forecast available'}",
            "---",
        ]
    )


class WeatherClient:
    def __init__(self, api_base: str, user_agent: str, http_client_factory: HttpClientFactory = default_http_client):
        self.api_base = api_base.rstrip("/")
        self.user_agent = user_agent
        self.http_client_factory = http_client_factory

    async def _get(self, url: str, params: dict | None = None):
        headers = {"User-Agent": self.user_agent, "Accept": "application/geo+json"}
        response = await send(self.http_client_factory, SERVICE, "GET", url, params=params, headers=headers)
        return read_json(response, SERVICE)

    async def get_alerts(self, state: str) -> list[dict]:
        data = expect_object(await self._get(f"{self.api_base}/alerts", {"area": state}), "alerts response")
        features = expect_list(data.get("features", []), "alert features")
        return [expect_object(feature, "alert feature") for feature in features]

    async def get_forecast(self, latitude: float, longitude: float) -> list[dict]:
        points = expect_object(
            await self._get(f"{self.api_base}/points/{latitude:.4f},{longitude:.4f}"),
            "grid point response",
        )
        forecast_url = (points.get("properties") or {}).get("forecast")
        if not isinstance(forecast_url, str) or not forecast_url:
            raise UnexpectedFormat("Grid point data has no forecast URL")

        forecast = expect_object(await self._get(forecast_url), "forecast response")
        periods = expect_list((forecast.get("properties") or {}).get("periods", []), "forecast periods")
        return [expect_object(period, "forecast period") for period in periods]
