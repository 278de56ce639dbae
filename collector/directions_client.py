"""
Google Directions Client

Fetches traffic-aware travel times for one origin/destination pair:

  GET https://maps.googleapis.com/maps/api/directions/json
      ?origin=..&destination=..&mode=..&departure_time=now
      &language=..&region=..&key=..[&alternatives=true]

Two failure kinds are kept apart:
  - transport failure (DNS, timeout, connection reset, unparseable body):
    raised as DirectionsTransportError, nothing to persist
  - application failure (status != "OK"): returned normally so the
    measurement can still be recorded

The response is also normalized into PathCandidate / RouteStep records.
Road names are pulled from the step instructions with a best-effort regex;
they are convenience metadata and may be wrong or empty.
"""

import html
import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"

FETCH_TIMEOUT = 30

_BLOCK_TAG = re.compile(r"<\s*(div|br|p)\b[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_INLINE_TAG = re.compile(r"<\s*/?\s*(b|i|wbr)\s*/?\s*>", re.IGNORECASE)
_ROAD_NAME = re.compile(r"\b(?:onto|via|on)\s+([^,<]+)", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


class DirectionsTransportError(Exception):
    """The provider could not be reached or returned an unreadable body."""


@dataclass
class RouteStep:
    step_index: int
    instruction: str
    road_name: str
    distance_meters: Optional[int]
    duration_seconds: Optional[int]
    travel_mode: str = "DRIVING"
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    end_lat: Optional[float] = None
    end_lng: Optional[float] = None


@dataclass
class PathCandidate:
    """One route alternative; index 0 is the provider's primary route."""
    route_index: int
    summary: str
    distance_meters: int
    distance_text: str
    duration_seconds: int
    duration_text: str
    duration_in_traffic_seconds: Optional[int]
    duration_in_traffic_text: Optional[str]
    start_address: str
    end_address: str
    warnings: List[str] = field(default_factory=list)
    steps: List[RouteStep] = field(default_factory=list)

    @property
    def effective_duration(self) -> int:
        """Duration in traffic when known, otherwise free-flow duration."""
        if self.duration_in_traffic_seconds is not None:
            return self.duration_in_traffic_seconds
        return self.duration_seconds


@dataclass
class DirectionsResult:
    status: str
    raw_response: str
    data: dict
    candidates: List[PathCandidate] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    @property
    def error_message(self) -> Optional[str]:
        return self.data.get("error_message")

    @property
    def primary(self) -> Optional[PathCandidate]:
        return self.candidates[0] if self.candidates else None

    def best_alternative(self) -> Optional[PathCandidate]:
        """Non-primary candidate with the lowest effective duration."""
        best = None
        for alt in self.candidates[1:]:
            if best is None or alt.effective_duration < best.effective_duration:
                best = alt
        return best


# ---------------------------------------------------------------------------
# Instruction parsing
# ---------------------------------------------------------------------------

def strip_html(instruction: str) -> str:
    """Plain-text form of an html_instructions string."""
    text = _BLOCK_TAG.sub(" ", instruction or "")
    text = _ANY_TAG.sub("", text)
    return _WHITESPACE.sub(" ", html.unescape(text)).strip()


def extract_road_name(instruction: str) -> str:
    """
    First "onto X" / "via X" / "on X" in the instruction, up to a comma or
    the next block of markup. Empty string when nothing matches.
    """
    text = _INLINE_TAG.sub("", instruction or "")
    match = _ROAD_NAME.search(text)
    if not match:
        return ""
    return _WHITESPACE.sub(" ", html.unescape(match.group(1))).strip()


def _value(obj: Optional[dict], key: str = "value"):
    return obj.get(key) if isinstance(obj, dict) else None


def parse_step(index: int, step: dict) -> RouteStep:
    raw_instruction = step.get("html_instructions", "")
    start = step.get("start_location") or {}
    end = step.get("end_location") or {}
    return RouteStep(
        step_index=index,
        instruction=strip_html(raw_instruction),
        road_name=extract_road_name(raw_instruction),
        distance_meters=_value(step.get("distance")),
        duration_seconds=_value(step.get("duration")),
        travel_mode=step.get("travel_mode") or "DRIVING",
        start_lat=start.get("lat"),
        start_lng=start.get("lng"),
        end_lat=end.get("lat"),
        end_lng=end.get("lng"),
    )


def parse_candidates(data: dict) -> List[PathCandidate]:
    """Normalize `routes[]` in provider order. Only the first leg is used."""
    candidates = []
    for index, api_route in enumerate(data.get("routes") or []):
        legs = api_route.get("legs") or [{}]
        leg = legs[0] or {}
        traffic = leg.get("duration_in_traffic")
        candidates.append(PathCandidate(
            route_index=index,
            summary=api_route.get("summary") or "",
            distance_meters=_value(leg.get("distance")) or 0,
            distance_text=_value(leg.get("distance"), "text") or "",
            duration_seconds=_value(leg.get("duration")) or 0,
            duration_text=_value(leg.get("duration"), "text") or "",
            duration_in_traffic_seconds=_value(traffic),
            duration_in_traffic_text=_value(traffic, "text"),
            start_address=leg.get("start_address") or "",
            end_address=leg.get("end_address") or "",
            warnings=list(api_route.get("warnings") or []),
            steps=[parse_step(i, s) for i, s in enumerate(leg.get("steps") or [])],
        ))
    return candidates


def parse_response(raw_response: str) -> DirectionsResult:
    try:
        data = json.loads(raw_response)
    except ValueError as e:
        raise DirectionsTransportError(f"Unreadable directions response: {e}") from e
    if not isinstance(data, dict):
        raise DirectionsTransportError("Unexpected directions response shape")

    status = str(data.get("status") or "UNKNOWN")
    candidates = parse_candidates(data) if status == "OK" else []
    return DirectionsResult(
        status=status,
        raw_response=raw_response,
        data=data,
        candidates=candidates,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class DirectionsClient:
    """Synchronous Directions API client with a bounded timeout."""

    def __init__(self, api_key: str, language: str = "el", region: str = "gr",
                 alternatives: bool = True, timeout: int = FETCH_TIMEOUT,
                 url: str = DIRECTIONS_URL):
        self.api_key = api_key
        self.language = language
        self.region = region
        self.alternatives = alternatives
        self.timeout = timeout
        self.url = url

    @classmethod
    def from_config(cls, config) -> "DirectionsClient":
        return cls(
            api_key=config.api_key,
            language=config.language,
            region=config.region,
            alternatives=config.request_alternatives,
        )

    def build_params(self, origin: str, destination: str, mode: str = "driving") -> dict:
        params = {
            "origin": origin,
            "destination": destination,
            "mode": mode,
            "departure_time": "now",
            "language": self.language,
            "region": self.region,
            "key": self.api_key,
        }
        if self.alternatives:
            params["alternatives"] = "true"
        return params

    def fetch(self, origin: str, destination: str, mode: str = "driving") -> DirectionsResult:
        """
        Call the provider once. Raises DirectionsTransportError when there
        is no usable response; a non-OK status is returned, not raised.
        """
        params = self.build_params(origin, destination, mode)
        try:
            response = requests.get(self.url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Directions request failed: {e}")
            raise DirectionsTransportError(str(e)) from e

        if not response.text:
            raise DirectionsTransportError(f"Empty directions response (HTTP {response.status_code})")

        result = parse_response(response.text)
        logger.debug(
            f"Directions {origin!r} -> {destination!r}: status={result.status}, "
            f"{len(result.candidates)} candidates"
        )
        return result
