"""
Home Bridge - Tools
Data-source adapters the model can call, plus their function-calling schema.

Each adapter is a single HTTP request followed by a parse step. The parse
steps are plain functions so they can be tested without the network.
"""

import html
import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Dict, List, Optional

import aiohttp

import logger as log
from errors import BackendUnavailable, InvalidArgument

OPENWEATHERMAP_URL = "https://api.openweathermap.org/data/2.5"
HEADLINE_FEEDS = {
    "heise": "https://www.heise.de/rss/heise-atom.xml",
    "postillon": "https://follow.it/der-postillon-abo/rss",
}
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"
MAX_LOCATION_LENGTH = 100
MAX_QUERY_LENGTH = 200
MAX_HEADLINES = 20

# Recurring Postillon columns that are not headlines
POSTILLON_BLACKLIST = ["Newsticker", "des Tages", "der Woche", "Sonntagsfrage"]

ATOM_NS = "{http://www.w3.org/2005/Atom}"


TOOL_CATALOG = [
    {
        "type": "function",
        "function": {
            "name": "get_current_weather",
            "description": "Get the current weather for a location.",
            "parameters": {
                "type": "object",
                "properties": {
                    "location": {"type": "string", "description": "City name, optionally with country code, e.g. 'Berlin,DE'"},
                },
                "required": ["location"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_weather_forecast",
            "description": "Get the weather forecast for the next days for a location.",
            "parameters": {
                "type": "object",
                "properties": {
                    "location": {"type": "string", "description": "City name, optionally with country code"},
                },
                "required": ["location"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_headlines",
            "description": "Get the latest news headlines. 'heise' is tech news, 'postillon' is satire.",
            "parameters": {
                "type": "object",
                "properties": {
                    "source": {"type": "string", "enum": sorted(HEADLINE_FEEDS)},
                    "count": {"type": "integer", "description": "Number of headlines", "minimum": 1, "maximum": MAX_HEADLINES},
                },
                "required": ["source"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_vehicle_status",
            "description": "Get battery, range and charging status of the household's car.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "web_search",
            "description": "Look up a short factual answer on the web.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search terms"},
                },
                "required": ["query"],
            },
        },
    },
]

TOOL_NAMES = frozenset(t["function"]["name"] for t in TOOL_CATALOG)


# --- Parsers ---

def _require_text(value, what: str, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{what} must be a non-empty string")
    if len(value) > max_length:
        raise InvalidArgument(f"{what} must not exceed {max_length} characters")
    return value.strip()


def _local_time(unix_seconds: int, offset_seconds: int = 0) -> datetime:
    return datetime.fromtimestamp(unix_seconds + offset_seconds, tz=timezone.utc)


def weather_api_error(payload) -> BackendUnavailable:
    if isinstance(payload, dict):
        code = payload.get("cod", "unknown")
        message = payload.get("message", "No message")
        return BackendUnavailable(f"Weather API error {code}: {message}")
    return BackendUnavailable("Unknown error from weather API")


def format_current_weather(data: dict) -> str:
    try:
        offset = data.get("timezone", 0)
        description = (data.get("weather") or [{}])[0].get("description", "")
        main = data["main"]
        sys = data["sys"]
        sunrise = _local_time(sys["sunrise"], offset)
        sunset = _local_time(sys["sunset"], offset)
        return (
            f"Current weather in {data['name']}, {sys.get('country', '')}: {description}, "
            f"{main['temp']}°C (feels like {main['feels_like']}°C), humidity {main['humidity']}%, "
            f"wind {data['wind']['speed']} m/s, sunrise {sunrise:%H:%M}, sunset {sunset:%H:%M}"
        )
    except (KeyError, TypeError, IndexError):
        raise weather_api_error(data)


def format_forecast(data: dict) -> str:
    """First, last and every third 3-hour slot of the forecast."""
    try:
        offset = data.get("city", {}).get("timezone", 0)
        slots = data["list"]
        lines = []
        for i, slot in enumerate(slots):
            if i == 0 or i == len(slots) - 1 or i % 3 == 0:
                when = _local_time(slot["dt"], offset)
                description = (slot.get("weather") or [{}])[0].get("description", "")
                lines.append(f"{when:%A %d.%m.%Y %H:%M}: {description}, {slot['main']['temp']}°C")
        return "\n".join(lines)
    except (KeyError, TypeError):
        raise weather_api_error(data)


def parse_atom_summaries(xml_text: str, count: int) -> List[str]:
    root = ET.fromstring(xml_text)
    summaries = []
    for entry in root.iter(f"{ATOM_NS}entry"):
        node = entry.find(f"{ATOM_NS}summary")
        if node is None:
            node = entry.find(f"{ATOM_NS}title")
        text = "".join(node.itertext()).strip() if node is not None else ""
        if text:
            summaries.append(text)
        if len(summaries) >= count:
            break
    return summaries


def postillon_filter(title: str) -> bool:
    """False for recurring columns like the news ticker."""
    lowered = title.lower()
    return not any(word.lower() in lowered for word in POSTILLON_BLACKLIST)


def parse_rss_titles(xml_text: str, count: int) -> List[str]:
    root = ET.fromstring(xml_text)
    titles = []
    for item in root.iter("item"):
        node = item.find("title")
        if node is None or not node.text:
            continue
        title = html.unescape(node.text.strip())
        if postillon_filter(title):
            titles.append(title)
        if len(titles) >= count:
            break
    return titles


def format_vehicle_status(states: Dict[str, dict]) -> str:
    """One line per Home Assistant entity: friendly name, state and unit."""
    if not states:
        return "No vehicle data available."
    lines = []
    for entity_id, state in states.items():
        attributes = state.get("attributes", {})
        name = attributes.get("friendly_name", entity_id)
        unit = attributes.get("unit_of_measurement", "")
        value = state.get("state", "unknown")
        lines.append(f"{name}: {value}{(' ' + unit) if unit else ''}")
    return "\n".join(lines)


def format_search_results(data: dict, max_topics: int = 3) -> str:
    parts = []
    if data.get("Answer"):
        parts.append(str(data["Answer"]))
    if data.get("AbstractText"):
        source = data.get("AbstractSource")
        parts.append(f"{data['AbstractText']} ({source})" if source else data["AbstractText"])
    topics = []
    for topic in data.get("RelatedTopics", []):
        # Grouped topics nest their entries one level deeper
        for entry in topic.get("Topics", [topic]):
            if entry.get("Text"):
                topics.append(entry["Text"])
    parts.extend(topics[:max_topics])
    return "\n".join(parts) if parts else "No results found."


# --- Service ---

class ToolService:
    """Runs the model's tool calls against the configured data sources."""

    def __init__(self, openweathermap_api_key: str = None, weather_language: str = "en",
                 ha_url: str = None, ha_token: str = None, vehicle_entities: List[str] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.openweathermap_api_key = openweathermap_api_key
        self.weather_language = weather_language
        self.ha_url = ha_url.rstrip('/') if ha_url else None
        self.ha_token = ha_token
        self.vehicle_entities = vehicle_entities or []
        self._session = session
        self._handlers = {
            "get_current_weather": self.get_current_weather,
            "get_weather_forecast": self.get_weather_forecast,
            "get_headlines": self.get_headlines,
            "get_vehicle_status": self.get_vehicle_status,
            "web_search": self.web_search,
        }

    async def get_http_session(self) -> aiohttp.ClientSession:
        """Get or create the reusable HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str, params: dict = None, headers: dict = None):
        session = await self.get_http_session()
        try:
            async with session.get(url, params=params, headers=headers) as response:
                payload = await response.json(content_type=None)
                if response.status != 200:
                    if "openweathermap" in url:
                        raise weather_api_error(payload)
                    raise BackendUnavailable(f"{url} answered {response.status}")
                return payload
        except aiohttp.ClientError as e:
            raise BackendUnavailable(f"{url} unreachable: {e}") from e

    async def _get_text(self, url: str) -> str:
        session = await self.get_http_session()
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise BackendUnavailable(f"{url} answered {response.status}")
                return await response.text()
        except aiohttp.ClientError as e:
            raise BackendUnavailable(f"{url} unreachable: {e}") from e

    # --- Adapters ---

    async def get_current_weather(self, location: str) -> str:
        location = _require_text(location, "location", MAX_LOCATION_LENGTH)
        if not self.openweathermap_api_key:
            raise BackendUnavailable("no OpenWeatherMap API key configured")
        log.debug(f"Fetching current weather for {location}")
        data = await self._get_json(f"{OPENWEATHERMAP_URL}/weather", params={
            "q": location, "appid": self.openweathermap_api_key, "units": "metric", "lang": self.weather_language,
        })
        return format_current_weather(data)

    async def get_weather_forecast(self, location: str) -> str:
        location = _require_text(location, "location", MAX_LOCATION_LENGTH)
        if not self.openweathermap_api_key:
            raise BackendUnavailable("no OpenWeatherMap API key configured")
        log.debug(f"Fetching weather forecast for {location}")
        data = await self._get_json(f"{OPENWEATHERMAP_URL}/forecast", params={
            "q": location, "appid": self.openweathermap_api_key, "units": "metric", "lang": self.weather_language,
        })
        return format_forecast(data)

    async def get_headlines(self, source: str, count: int = 5) -> str:
        if source not in HEADLINE_FEEDS:
            raise InvalidArgument(f"unknown headline source {source!r}")
        if not isinstance(count, int) or isinstance(count, bool) or not 1 <= count <= MAX_HEADLINES:
            raise InvalidArgument(f"count must be between 1 and {MAX_HEADLINES}")
        log.debug(f"Fetching {count} {source} headlines")
        xml_text = await self._get_text(HEADLINE_FEEDS[source])
        try:
            if source == "heise":
                items = parse_atom_summaries(xml_text, count)
            else:
                items = parse_rss_titles(xml_text, count)
        except ET.ParseError as e:
            raise BackendUnavailable(f"{source} feed is not valid XML: {e}") from e
        return "\n".join(items) if items else "No headlines available."

    async def get_vehicle_status(self) -> str:
        if not self.ha_url or not self.ha_token:
            raise BackendUnavailable("Home Assistant is not configured")
        headers = {"Authorization": f"Bearer {self.ha_token}", "Content-Type": "application/json"}
        states = {}
        for entity_id in self.vehicle_entities:
            states[entity_id] = await self._get_json(f"{self.ha_url}/api/states/{entity_id}", headers=headers)
        return format_vehicle_status(states)

    async def web_search(self, query: str) -> str:
        query = _require_text(query, "query", MAX_QUERY_LENGTH)
        log.debug(f"Web search: {query}")
        data = await self._get_json(DUCKDUCKGO_URL, params={
            "q": query, "format": "json", "no_html": "1", "skip_disambig": "1",
        })
        return format_search_results(data)

    # --- Dispatch ---

    def has_tool(self, name: str) -> bool:
        return name in self._handlers

    async def dispatch(self, name: str, arguments: str) -> str:
        """Run one tool call; `arguments` is the model's JSON argument string.

        Raises:
            KeyError: unknown tool
            InvalidArgument: arguments are not a JSON object or fail validation
            BackendUnavailable: the data source failed
        """
        handler = self._handlers[name]
        try:
            args = json.loads(arguments) if arguments else {}
        except json.JSONDecodeError as e:
            raise InvalidArgument(f"arguments are not valid JSON: {e}") from e
        if not isinstance(args, dict):
            raise InvalidArgument("arguments must be a JSON object")
        try:
            return await handler(**args)
        except TypeError as e:
            raise InvalidArgument(f"bad arguments for {name}: {e}") from e
