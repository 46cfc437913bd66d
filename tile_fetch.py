"""
tile_fetch.py - Retrieve planned tiles from imagery services

Each tile is fetched independently by a small thread pool. Attempts return a
tagged FetchResult; fetch_with_retry keeps retrying retryable results with
capped exponential backoff and returns anything else straight away.
"""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import requests

from errors import FetchCancelled, TileFetchFailed
from map_utils import esri_wkt
from tile_grid import TileDescriptor, TileGridPlan, TileIndex

USER_AGENT = "Mozilla/5.0 (compatible; scaled-map-builder)"


class FetchOutcome(Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch attempt.

    Attributes:
        outcome: Whether the attempt succeeded, may be retried, or failed for good
        data: Response body on success
        reason: Failure description
    """
    outcome: FetchOutcome
    data: Optional[bytes] = None
    reason: str = ""

    @classmethod
    def ok(cls, data: bytes) -> 'FetchResult':
        return cls(FetchOutcome.SUCCESS, data=data)

    @classmethod
    def retryable(cls, reason: str) -> 'FetchResult':
        return cls(FetchOutcome.RETRYABLE, reason=reason)

    @classmethod
    def fatal(cls, reason: str) -> 'FetchResult':
        return cls(FetchOutcome.FATAL, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.outcome is FetchOutcome.SUCCESS


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a tile is retried.

    Attributes:
        max_attempts: Attempts per tile, including the first
        base_delay: Seconds to wait before the first retry
        max_delay: Cap on the doubling delay
        timeout: Seconds each attempt may take
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 8.0
    timeout: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number attempt (1-based)."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

    def is_retryable(self, error: Exception) -> bool:
        return isinstance(error, (requests.exceptions.Timeout, requests.exceptions.ConnectionError))


def embedded_error(response) -> Optional[str]:
    """Error message a server hid inside a successful response, if any."""
    content_type = response.headers.get("Content-Type", "")
    body = response.content.lstrip()

    if "json" in content_type or body.startswith(b"{"):
        try:
            payload = json.loads(body)
        except ValueError:
            return None
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            return error.get("message", str(error)) if isinstance(error, dict) else str(error)
        return None

    if "xml" in content_type or body.startswith(b"<"):
        if b"<Error" in body or b"ServiceException" in body:
            return body.decode("utf-8", errors="replace").replace("\n", " ")[:200]
    return None


def classify_response(response) -> FetchResult:
    """Tag an HTTP response as a success, a retryable failure or a fatal one."""
    status = response.status_code
    if status == 429 or status >= 500:
        return FetchResult.retryable(f"HTTP {status}")
    if status >= 300:
        return FetchResult.fatal(f"HTTP {status}")
    if not response.content:
        return FetchResult.retryable("no data received")

    error = embedded_error(response)
    if error:
        return FetchResult.fatal(f"server error: {error}")
    return FetchResult.ok(response.content)


def http_attempt(session, url: str, params: Optional[dict], headers: Optional[dict],
                 policy: RetryPolicy) -> Callable[[float], FetchResult]:
    """A single-attempt fetch of url, for use with fetch_with_retry."""
    def attempt(timeout: float) -> FetchResult:
        try:
            response = session.get(url, params=params, headers=headers, timeout=timeout)
        except requests.exceptions.RequestException as e:
            if policy.is_retryable(e):
                return FetchResult.retryable(f"{type(e).__name__}: {e}")
            return FetchResult.fatal(f"{type(e).__name__}: {e}")
        return classify_response(response)
    return attempt


def fetch_with_retry(
    attempt: Callable[[float], FetchResult],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    cancel: Optional[threading.Event] = None,
    report: Optional[Callable[[str], None]] = None,
) -> FetchResult:
    """Run attempt until it succeeds, fails fatally or runs out of attempts.

    Args:
        attempt: Called with the per-attempt timeout
        policy: Attempt budget and backoff
        sleep: Waits between attempts
        cancel: Stops further attempts once set
        report: Receives a line for each retry

    Returns:
        The last FetchResult; retryable if the budget ran out
    """
    result = None
    for number in range(1, policy.max_attempts + 1):
        if cancel is not None and cancel.is_set():
            raise FetchCancelled("tile fetch cancelled")
        result = attempt(policy.timeout)
        if result.outcome is not FetchOutcome.RETRYABLE:
            return result
        if number < policy.max_attempts:
            delay = policy.delay(number)
            if report:
                report(f"{result.reason}, retrying in {delay:g}s... (attempt {number}/{policy.max_attempts})")
            sleep(delay)
    return result


class ArcGISExportSource:
    """Tile requests for an ArcGIS REST MapServer export or ImageServer exportImage.

    Args:
        host: Server host name
        service: Service name
        crs: CRS the tiles are planned in, sent as bboxSR/imageSR
        folder: Optional services folder
        instance: ArcGIS instance path
        image: Use ImageServer exportImage instead of MapServer export
        layers: MapServer layers parameter (e.g. "show:1,2")
        image_format: Requested image format
        dpi: Dots per inch sent with MapServer requests
        headers: Extra HTTP headers
    """

    def __init__(self, host: str, service: str, crs: str, folder: Optional[str] = None,
                 instance: str = "arcgis", image: bool = False, layers: Optional[str] = None,
                 image_format: Optional[str] = None, dpi: Optional[float] = None,
                 headers: Optional[dict] = None, scheme: str = "https"):
        service_type, function = ("ImageServer", "exportImage") if image else ("MapServer", "export")
        path = "/".join(part for part in [instance, "rest", "services", folder, service, service_type, function] if part)
        self.url = f"{scheme}://{host}/{path}"
        self.crs = crs
        self.image = image
        self.layers = layers
        self.image_format = image_format or ("png24" if image else "png32")
        self.dpi = dpi
        self.headers = {"User-Agent": USER_AGENT, **(headers or {})}
        self._srs = json.dumps({"wkt": esri_wkt(crs)})

    def request(self, tile: TileDescriptor) -> Tuple[str, dict]:
        """URL and query parameters for a tile."""
        bounds = tile.geo_bounds
        params = {
            "bbox": ",".join(str(value) for value in bounds.as_tuple()),
            "bboxSR": self._srs,
            "imageSR": self._srs,
            "size": ",".join(str(size) for size in tile.pixel_size),
            "f": "image",
            "format": self.image_format,
        }
        if self.image:
            params["interpolation"] = "RSP_BilinearInterpolation"
        else:
            params["transparent"] = "true"
            if self.layers:
                params["layers"] = self.layers
            if self.dpi:
                params["dpi"] = self.dpi
        return self.url, params


class SlippyTileSource:
    """Tile requests for a z/x/y tile server.

    Args:
        url_template: URL with {z}, {x} and {y} placeholders
        headers: Extra HTTP headers
    """

    def __init__(self, url_template: str, headers: Optional[dict] = None):
        self.url_template = url_template
        self.headers = {"User-Agent": USER_AGENT, "Accept": "image/png,image/*", **(headers or {})}

    def request(self, tile: TileDescriptor) -> Tuple[str, Optional[dict]]:
        if tile.zoom is None:
            raise ValueError(f"tile {tile.index} has no zoom level for a tile server")
        x, y = tile.index
        return self.url_template.format(z=tile.zoom, x=x, y=y), None


@dataclass
class TileRetriever:
    """Fetches every tile of a plan with a bounded worker pool.

    Requests from this retriever's workers are spaced at least interval
    seconds apart. Other retrievers are not affected. Once any tile of a
    plan fails, the plan's remaining tiles stop at their next attempt or
    backoff.

    Attributes:
        source: Builds the URL and parameters for each tile
        policy: Retry policy for each tile
        workers: Maximum concurrent requests
        interval: Minimum seconds between request starts
        session: requests session (or compatible object with get())
        sleep: Waits for backoff and politeness delays; by default waits
            on the plan's stop event so a failure ends the wait early
        cancel: Stops new fetches once set
        verbose: Print progress
    """
    source: object
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    workers: int = 4
    interval: float = 0.0
    session: object = None
    sleep: Optional[Callable[[float], None]] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    verbose: bool = True

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")
        if self.session is None:
            self.session = requests.Session()
        self._lock = threading.Lock()
        self._print_lock = threading.Lock()
        self._next_request = 0.0

    def _print(self, message: str) -> None:
        if self.verbose:
            with self._print_lock:
                print(message)

    def _pause(self, seconds: float, stop: threading.Event) -> None:
        if self.sleep is not None:
            self.sleep(seconds)
        else:
            stop.wait(seconds)

    def _wait_turn(self, stop: threading.Event) -> None:
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_request)
            self._next_request = start + self.interval
        if start > now:
            self._pause(start - now, stop)

    def fetch_tile(self, tile: TileDescriptor, stop: Optional[threading.Event] = None) -> FetchResult:
        """Fetch one tile, retrying per the policy.

        Args:
            tile: Tile to fetch
            stop: Ends retries and backoff waits once set

        Raises:
            FetchCancelled: stop or the cancel event was set
        """
        stop = stop or threading.Event()
        url, params = self.source.request(tile)
        attempt = http_attempt(self.session, url, params, self.source.headers, self.policy)

        def polite_attempt(timeout: float) -> FetchResult:
            self._wait_turn(stop)
            if stop.is_set() or self.cancel.is_set():
                raise FetchCancelled("tile fetch cancelled", {"tile": tile.index})
            return attempt(timeout)

        column, row = tile.index
        result = fetch_with_retry(
            polite_attempt,
            self.policy,
            sleep=lambda delay: self._pause(delay, stop),
            cancel=stop,
            report=lambda message: self._print(f"      Tile {column},{row}: {message}"),
        )
        if not result.succeeded and stop.is_set():
            raise FetchCancelled("tile fetch cancelled", {"tile": tile.index})
        return result

    def retrieve(self, plan: TileGridPlan, layer: str = "") -> Dict[TileIndex, bytes]:
        """Fetch all tiles of a plan.

        Args:
            plan: Tiles to fetch
            layer: Layer name for error reports

        Returns:
            Image bytes keyed by tile index

        Raises:
            TileFetchFailed: A tile failed fatally or exhausted its retries;
                tiles still running stop at their next attempt and tiles
                not yet started are not fetched
            FetchCancelled: The cancel event was set
        """
        total = plan.tile_count
        results = {}
        stop = threading.Event()
        if self.cancel.is_set():
            stop.set()

        with ThreadPoolExecutor(max_workers=min(self.workers, max(1, total))) as executor:
            futures = {executor.submit(self.fetch_tile, tile, stop): tile for tile in plan.tiles}
            try:
                for future in as_completed(futures):
                    tile = futures[future]
                    result = future.result()
                    if not result.succeeded:
                        raise TileFetchFailed(
                            f"tile fetch failed: {result.reason}",
                            layer=layer,
                            tile=tile.index,
                        )
                    results[tile.index] = result.data
            except BaseException as e:
                stop.set()
                if isinstance(e, KeyboardInterrupt):
                    self.cancel.set()
                for future in futures:
                    future.cancel()
                raise

        self._print(f"    Downloaded {len(results)}/{total} tiles")
        return results
