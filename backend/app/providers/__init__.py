from app.providers.ai_planner import ChatCompletionsPlanner, PlannerReply, parse_planner_response
from app.providers.errors import (
    MalformedProviderResponse,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
)
from app.providers.open_meteo import OpenMeteoWeatherProvider, get_weather_provider
from app.providers.tomtom import TomTomTrafficProvider, get_traffic_provider

__all__ = [
    "ChatCompletionsPlanner",
    "MalformedProviderResponse",
    "OpenMeteoWeatherProvider",
    "PlannerReply",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "TomTomTrafficProvider",
    "get_traffic_provider",
    "get_weather_provider",
    "parse_planner_response",
]
