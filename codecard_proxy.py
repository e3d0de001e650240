#!/usr/bin/env python3
# PATH realtime -> CodeCard proxy for the 14th Street display.

import datetime
from dataclasses import dataclass, field
import logging
import os
from typing import Any, Dict, List, Optional, Tuple, TypedDict, cast

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("codecard_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# https://www.reddit.com/r/jerseycity/comments/bb4041/programmatic_realtime_path_data/
DEFAULT_PATH_API_URL = "https://path.api.razza.dev/v1/stations/fourteenth_street/realtime"

PATH_API_URL = os.getenv("PATH_API_URL", DEFAULT_PATH_API_URL)
PATH_API_TIMEOUT_SEC = env_float("PATH_API_TIMEOUT_SEC", 10.0)

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("PORT", 8080)

STATUS_ON_TIME = "ON_TIME"

CARD_TEMPLATE = "template1"
CARD_SUBTITLE = "from 14th Street"
CARD_BACKGROUND = "white"
ICON_CLEAR = "01d"
ICON_DELAYED = "11d"

# any method gets the card
CARD_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]

# path suffix -> (direction code, card title)
DIRECTIONS: Dict[str, Tuple[str, str]] = {
    "/TO_NJ": ("TO_NJ", "PATH to NJ"),
    "/TO_NY": ("TO_NY", "PATH to 33rd"),
}

# {"lineName":"33rd Street via Hoboken","lineColors":["#4D92FB","#FF9900"],
#  "projectedArrival":"2019-09-22T02:51:11Z","lastUpdated":"2019-09-22T02:46:51Z",
#  "status":"ON_TIME","headsign":"33rd Street via Hoboken",
#  "route":"JSQ_33_HOB","routeDisplayName":"Journal Square - 33rd Street (via Hoboken)",
#  "direction":"TO_NY"}
class RawUpcomingTrain(TypedDict, total=False):
    lineName: str
    lineColors: List[str]
    projectedArrival: str
    lastUpdated: str
    status: str
    route: str
    routeDisplayName: str
    headsign: str
    direction: str


class RawRealtimeResponse(TypedDict, total=False):
    upcomingTrains: List[RawUpcomingTrain]


@dataclass(frozen=True)
class UpcomingTrain:
    projected_arrival: datetime.datetime
    direction: str
    headsign: str = ""
    status: str = ""
    line_name: str = ""
    line_colors: List[str] = field(default_factory=list)
    last_updated: Optional[datetime.datetime] = None
    route: str = ""
    route_display_name: str = ""

    @property
    def delayed(self) -> bool:
        return self.status != STATUS_ON_TIME


# https://github.com/cameronsenese/codecard/blob/master/arduino/codecard/dataParser.h
@dataclass(frozen=True)
class DisplayCard:
    title: str
    bodytext: str
    icon: str
    template: str = CARD_TEMPLATE
    subtitle: str = CARD_SUBTITLE
    background_color: str = CARD_BACKGROUND

    def to_json(self) -> Dict[str, str]:
        return {
            "template": self.template,
            "title": self.title,
            "subtitle": self.subtitle,
            "bodytext": self.bodytext,
            "icon": self.icon,
            "backgroundColor": self.background_color,
        }


class UpstreamFetchError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamDecodeError(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class SerializationError(Exception):
    def __init__(self, message: str):
        super().__init__(message)


@dataclass(frozen=True)
class FeedConfig:
    url: str = DEFAULT_PATH_API_URL
    timeout_sec: float = 10.0


FEED_CONFIG = FeedConfig(url=PATH_API_URL, timeout_sec=PATH_API_TIMEOUT_SEC)

app = Flask(__name__)


def fetch_feed_json(config: FeedConfig) -> Any:
    try:
        resp = requests.get(
            config.url,
            timeout=config.timeout_sec,
            headers={"Accept": "application/json"},
        )
    except requests.RequestException as exc:
        raise UpstreamFetchError(f"PATH request failed: {exc}") from exc

    if resp.status_code >= 400:
        raise UpstreamFetchError(
            f"PATH upstream error: status {resp.status_code}", status=resp.status_code
        )

    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamDecodeError("PATH invalid JSON") from exc


def parse_timestamp(value: Any, name: str) -> datetime.datetime:
    if not isinstance(value, str) or not value:
        raise UpstreamDecodeError(f"missing {name}")
    try:
        parsed = datetime.datetime.fromisoformat(value.upper().replace("Z", "+00:00"))
    except ValueError as exc:
        raise UpstreamDecodeError(f"invalid {name}: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def _str_field(raw: RawUpcomingTrain, key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise UpstreamDecodeError(f"{key} must be a string")
    return value


def decode_upcoming_train(raw: Any) -> UpcomingTrain:
    if not isinstance(raw, dict):
        raise UpstreamDecodeError("upcoming train must be an object")

    colors = raw.get("lineColors") or []
    if not isinstance(colors, list):
        raise UpstreamDecodeError("lineColors must be a list")

    last_updated = raw.get("lastUpdated")
    return UpcomingTrain(
        projected_arrival=parse_timestamp(raw.get("projectedArrival"), "projectedArrival"),
        direction=_str_field(raw, "direction"),
        headsign=_str_field(raw, "headsign"),
        status=_str_field(raw, "status"),
        line_name=_str_field(raw, "lineName"),
        line_colors=[str(c) for c in colors],
        last_updated=parse_timestamp(last_updated, "lastUpdated") if last_updated else None,
        route=_str_field(raw, "route"),
        route_display_name=_str_field(raw, "routeDisplayName"),
    )


def decode_upcoming_trains(payload: Any) -> List[UpcomingTrain]:
    if not isinstance(payload, dict):
        raise UpstreamDecodeError("PATH response must be a JSON object")
    raw_trains = cast(RawRealtimeResponse, payload).get("upcomingTrains")
    if raw_trains is None:
        return []
    if not isinstance(raw_trains, list):
        raise UpstreamDecodeError("upcomingTrains must be a list")
    return [decode_upcoming_train(raw) for raw in raw_trains]


def fetch_upcoming_trains(config: FeedConfig) -> List[UpcomingTrain]:
    trains = decode_upcoming_trains(fetch_feed_json(config))
    log.debug("PATH feed returned %d upcoming trains", len(trains))
    return trains


def direction_for_path(path: str) -> Tuple[str, str]:
    for suffix, selected in DIRECTIONS.items():
        if path.endswith(suffix):
            return selected
    return "", ""


def rounded_minutes(delta: datetime.timedelta) -> int:
    """Round to the nearest minute, halves away from zero. Not clamped."""
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    minutes = (abs(micros) + 30_000_000) // 60_000_000
    return -minutes if micros < 0 else minutes


def build_display_card(
    trains: List[UpcomingTrain],
    direction: str,
    header: str,
    now: Optional[datetime.datetime] = None,
) -> DisplayCard:
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)

    lines: List[str] = []
    delayed = False
    for train in trains:
        if not direction or train.direction != direction:
            continue
        minutes = rounded_minutes(train.projected_arrival - now)
        lines.append(f"{train.headsign}\n  in {minutes} minutes ({train.status})\n")
        if train.delayed:
            delayed = True

    return DisplayCard(
        title=header,
        bodytext="".join(lines),
        icon=ICON_DELAYED if delayed else ICON_CLEAR,
    )


def serialize_card(card: DisplayCard) -> Response:
    try:
        return jsonify(card.to_json())
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"could not encode card: {exc}") from exc


def text_error(status: int, message: str) -> Response:
    resp = make_response(message + "\n", status)
    resp.content_type = "text/plain; charset=utf-8"
    return resp


@app.before_request
def log_request() -> None:
    log.info("Received a request.")
    if log.isEnabledFor(logging.DEBUG):
        protocol = request.environ.get("SERVER_PROTOCOL", "")
        dump = [f"{request.method} {request.full_path.rstrip('?')} {protocol}"]
        dump.append(f"Host: {request.host}")
        for name, value in request.headers.items():
            dump.append(f"{name.lower()}: {value}")
        log.debug("\n".join(dump))


@app.after_request
def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.route("/", defaults={"path": ""}, methods=CARD_METHODS)
@app.route("/<path:path>", methods=CARD_METHODS)
def code_card(path: str) -> Response:
    direction, header = direction_for_path("/" + path)

    try:
        trains = fetch_upcoming_trains(FEED_CONFIG)
    except (UpstreamFetchError, UpstreamDecodeError) as exc:
        log.warning("PATH fetch failed: %s", exc)
        return text_error(500, str(exc))

    card = build_display_card(trains, direction, header)
    try:
        return serialize_card(card)
    except SerializationError as exc:
        log.exception("Card serialization failed")
        return text_error(500, str(exc))


if __name__ == "__main__":
    log.info("CodeCard proxy started on %s:%d", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)
