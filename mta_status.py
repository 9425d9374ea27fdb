#!/usr/bin/env python3
# MTA service-status proxy: scrape, cache on disk, filter.

from collections import deque
from dataclasses import asdict, dataclass
import json
import logging
import os
from pathlib import Path
import re
import tempfile
import threading
import time
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from bs4 import BeautifulSoup
from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("mta_status")
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


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


MTA_STATUS_URL = os.getenv("MTA_STATUS_URL", "http://service.mta.info/ServiceStatus/status.html")
MTA_CONNECT_TIMEOUT_SEC = env_float("MTA_CONNECT_TIMEOUT_SEC", 3.0)
MTA_READ_TIMEOUT_SEC = env_float("MTA_READ_TIMEOUT_SEC", 10.0)

STATUS_CACHE_PATH = Path(
    os.getenv("STATUS_CACHE_PATH", str(Path(__file__).resolve().parent / ".cache" / "status.json"))
)
STATUS_CACHE_TTL_SEC = env_int("STATUS_CACHE_TTL_SEC", 300)

CORS_ALLOWED_ORIGINS = set(
    env_csv(
        "CORS_ALLOWED_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:8000,http://localhost:8000",
    )
)
if env_bool("CORS_ALLOW_NULL_ORIGIN", False):
    CORS_ALLOWED_ORIGINS.add("null")

TRUST_PROXY_HEADERS = env_bool("TRUST_PROXY_HEADERS", False)

RATE_LIMIT_WINDOW_SEC = env_int("RATE_LIMIT_WINDOW_SEC", 60)
API_RATE_LIMIT_PER_MIN = env_int("API_RATE_LIMIT_PER_MIN", 60)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 3000)

SUBWAY = "subway"


@dataclass(frozen=True)
class LineStatusRecord:
    name: str
    status: str


ServiceSnapshot = Dict[str, List[LineStatusRecord]]
FilterResult = Union[ServiceSnapshot, List[LineStatusRecord], LineStatusRecord]


@dataclass(frozen=True)
class QueryOptions:
    service: Optional[str] = None
    line: Optional[str] = None


class StatusError(Exception):
    pass


class CacheError(StatusError):
    pass


class CacheUnavailable(CacheError):
    """The cache holds nothing usable; the caller should fetch fresh data."""


class CacheMiss(CacheUnavailable):
    pass


class CacheStale(CacheUnavailable):
    def __init__(self, age_sec: float):
        super().__init__(f"cache is {age_sec:.0f}s old")
        self.age_sec = age_sec


class CacheCorrupt(CacheUnavailable):
    pass


class CacheWriteError(CacheError):
    pass


class NetworkError(StatusError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ExtractionError(StatusError):
    pass


class NoDataForOptions(StatusError):
    def __init__(self, options: QueryOptions):
        super().__init__("No data for those options")
        self.options = options


class InvalidOptions(StatusError):
    pass


def snapshot_to_json(snapshot: ServiceSnapshot) -> Dict[str, List[Dict[str, str]]]:
    return {service: [asdict(record) for record in records] for service, records in snapshot.items()}


def snapshot_from_json(payload: Any) -> ServiceSnapshot:
    if not isinstance(payload, dict):
        raise ValueError("snapshot must be an object")
    snapshot: ServiceSnapshot = {}
    for service, records in payload.items():
        if not isinstance(records, list):
            raise ValueError(f"records for {service!r} must be a list")
        snapshot[service] = [LineStatusRecord(name=r["name"], status=r["status"]) for r in records]
    return snapshot


def result_to_json(result: FilterResult) -> Any:
    if isinstance(result, LineStatusRecord):
        return asdict(result)
    if isinstance(result, list):
        return [asdict(record) for record in result]
    return snapshot_to_json(result)


class CacheStore:
    """Snapshot persisted as JSON in a single file.

    Freshness comes from the file's modification time, never from the payload.
    """

    def __init__(self, path: Path, ttl_sec: int, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self.ttl_sec = ttl_sec
        self._clock = clock

    def read(self) -> ServiceSnapshot:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError as exc:
            raise CacheMiss(f"no cache at {self.path}") from exc
        except OSError as exc:
            raise CacheMiss(f"cannot stat {self.path}: {exc}") from exc

        age = self._clock() - mtime
        if age > self.ttl_sec:
            self._discard()
            raise CacheStale(age)

        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise CacheMiss(f"cache at {self.path} vanished") from exc
        except OSError as exc:
            raise CacheCorrupt(f"cannot read {self.path}: {exc}") from exc

        try:
            return snapshot_from_json(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheCorrupt(f"undecodable cache at {self.path}") from exc

    def write(self, snapshot: ServiceSnapshot) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".status-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot_to_json(snapshot), fh)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None:
                self._discard(Path(tmp_name))
            raise CacheWriteError(f"cannot write {self.path}: {exc}") from exc

    def _discard(self, path: Optional[Path] = None) -> None:
        path = path or self.path
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("Could not remove %s: %s", path, exc)


class Fetcher:
    def __init__(
        self,
        url: str,
        *,
        timeout: Tuple[float, float] = (MTA_CONNECT_TIMEOUT_SEC, MTA_READ_TIMEOUT_SEC),
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, url: Optional[str] = None) -> str:
        target = url or self.url
        try:
            resp = self.session.get(target, timeout=self.timeout, headers={"Accept": "text/html"})
        except requests.RequestException as exc:
            raise NetworkError(f"request to {target} failed") from exc
        if resp.status_code >= 400:
            raise NetworkError(f"{target} returned HTTP {resp.status_code}", status=resp.status_code)
        return resp.text


class StatusExtractor:
    """Turns a status page into a snapshot.

    Each subclass handles one version of the page markup, named by `version`.
    """

    version = "abstract"

    def extract(self, raw: str) -> ServiceSnapshot:
        raise NotImplementedError


class SubwayDivExtractor(StatusExtractor):
    version = "subway-div-v1"

    container_id = "subwayDiv"
    name_noise = re.compile(r"subway|\s", re.IGNORECASE)
    status_class = re.compile(r"^subway_")

    def extract(self, raw: str) -> ServiceSnapshot:
        soup = BeautifulSoup(raw, "html.parser")
        container = soup.find(id=self.container_id)
        if container is None:
            raise ExtractionError(f"no #{self.container_id} in status page")

        records: List[LineStatusRecord] = []
        # First row is the table header.
        for index, row in enumerate(container.find_all("tr")[1:], start=1):
            record = self._parse_row(row)
            if record is None:
                log.debug("Skipping malformed status row %d", index)
                continue
            records.append(record)
        return {SUBWAY: records}

    def _parse_row(self, row: Any) -> Optional[LineStatusRecord]:
        img = row.find("img")
        if img is None or not img.get("alt"):
            return None
        name = self.name_noise.sub("", img["alt"])
        if not name:
            return None
        spans = [
            span
            for span in row.find_all("span", class_=self.status_class)
            if span.find_parent("span", class_=self.status_class) is None
        ]
        if not spans:
            return None
        status = " ".join(" ".join(span.get_text() for span in spans).split())
        return LineStatusRecord(name=name, status=status)


def filter_snapshot(snapshot: ServiceSnapshot, options: QueryOptions) -> Optional[FilterResult]:
    if not options.service:
        return snapshot
    records = snapshot.get(options.service)
    if records is None or not options.line:
        return records
    for record in records:
        if record.name == options.line:
            return record
    return None


_cache_locks: Dict[str, threading.Lock] = {}
_cache_locks_guard = threading.Lock()


def lock_for(path: Path) -> threading.Lock:
    key = str(Path(path).resolve())
    with _cache_locks_guard:
        lock = _cache_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _cache_locks[key] = lock
        return lock


class StatusService:
    def __init__(self, cache: CacheStore, fetcher: Fetcher, extractor: StatusExtractor) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.extractor = extractor

    def get(self, options: Optional[QueryOptions] = None) -> FilterResult:
        options = options or QueryOptions()
        if options.line and not options.service:
            raise InvalidOptions("a line filter requires a service")

        snapshot = self.load_snapshot()
        result = filter_snapshot(snapshot, options)
        if not result:
            raise NoDataForOptions(options)
        return result

    def load_snapshot(self) -> ServiceSnapshot:
        with lock_for(self.cache.path):
            try:
                return self.cache.read()
            except CacheUnavailable as exc:
                log.info("Status cache unusable (%s: %s), fetching", type(exc).__name__, exc)

            snapshot = self.extractor.extract(self.fetcher.fetch())
            try:
                self.cache.write(snapshot)
            except CacheWriteError as exc:
                log.warning("Status cache write failed: %s", exc)
            return snapshot


class PerKeyLimiter:
    def __init__(self, limit: int, window_sec: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        idle = [key for key, events in self._events.items() if not events or events[-1] <= now - self.window_sec]
        for key in idle:
            del self._events[key]
        self._last_sweep = now

    def allow(self, key: str) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_sec:
                self._sweep(now)
            events = self._events.setdefault(key, deque())
            while events and events[0] <= now - self.window_sec:
                events.popleft()
            if len(events) >= self.limit:
                retry_after = int(self.window_sec - (now - events[0]))
                return False, max(1, retry_after)
            events.append(now)
            return True, 0


status_service = StatusService(
    cache=CacheStore(STATUS_CACHE_PATH, STATUS_CACHE_TTL_SEC),
    fetcher=Fetcher(MTA_STATUS_URL),
    extractor=SubwayDivExtractor(),
)
api_limiter = PerKeyLimiter(API_RATE_LIMIT_PER_MIN, RATE_LIMIT_WINDOW_SEC)

app = Flask(__name__)


def get_client_ip() -> str:
    if TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "unknown"


def error_response(status: int, code: str, message: str, *, retry_after: Optional[int] = None) -> Response:
    resp = jsonify({"error": {"code": code, "message": message}})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


@app.before_request
def apply_rate_limit() -> Optional[Response]:
    if not request.path.startswith("/status"):
        return None
    if request.method == "OPTIONS":
        return make_response("", 204)
    allowed, retry_after = api_limiter.allow(get_client_ip())
    if not allowed:
        return error_response(429, "rate_limited", "Too many requests", retry_after=retry_after)
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if origin and origin in CORS_ALLOWED_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Expose-Headers"] = "Cache-Control, Retry-After"
        resp.headers["Access-Control-Max-Age"] = "600"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.route("/status", methods=["GET", "OPTIONS"])
@app.route("/status/<service>", methods=["GET", "OPTIONS"])
@app.route("/status/<service>/<line>", methods=["GET", "OPTIONS"])
def status(service: Optional[str] = None, line: Optional[str] = None) -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    try:
        result = status_service.get(QueryOptions(service=service, line=line))
    except InvalidOptions as exc:
        return error_response(400, "invalid_options", str(exc))
    except NoDataForOptions as exc:
        return error_response(404, "no_data", str(exc))
    except NetworkError as exc:
        log.warning("Status fetch failed: %s", exc)
        return error_response(502, "upstream_error", "MTA status page unavailable")
    except ExtractionError as exc:
        log.warning("Status extraction failed: %s", exc)
        return error_response(502, "extraction_error", "MTA status page not understood")
    except Exception:
        log.exception("Unexpected error serving %s", request.path)
        return error_response(500, "internal_error", "Unexpected error")

    resp = jsonify(result_to_json(result))
    resp.headers["Cache-Control"] = f"max-age={status_service.cache.ttl_sec}"
    return resp


def main() -> None:
    app.run(host=APP_HOST, port=APP_PORT)


if __name__ == "__main__":
    main()
