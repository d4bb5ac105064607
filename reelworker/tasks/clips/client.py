"""
Remote Clip Generation Client

Synchronous client for a queue-based image-to-video service (fal.ai queue
REST protocol):

    POST {base}/{model}                  -> {request_id, status_url, response_url}
    GET  {status_url}                    -> {status: IN_QUEUE|IN_PROGRESS|COMPLETED|...}
    GET  {response_url}                  -> model output containing a video URL

The service is treated as unreliable: transient HTTP failures are retried
with backoff, and ``attempt`` reports failures as data instead of raising.
"""

import base64
import logging
import mimetypes
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from ..errors import RenderCancelled
from ..retry import call_with_retry

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_COMPLETED_STATES = {"COMPLETED", "COMPLETED_WITH_WARNINGS", "OK", "SUCCEEDED"}
_FAILED_STATES = {"FAILED", "ERROR", "CANCELLED", "CANCELED"}

DEFAULT_PROMPT = "Cinematic short motion, subtle camera movement, natural parallax."


class RemoteClipError(Exception):
    """A non-retryable failure reported by the remote service."""

    pass


class TransientRemoteError(Exception):
    """A failure worth retrying (rate limit or server error)."""

    pass


@dataclass(frozen=True)
class SubmittedRequest:
    """Handle of a submitted generation request."""

    model: str
    request_id: str
    status_url: str
    response_url: str


@dataclass(frozen=True)
class ClipAttempt:
    """
    Outcome of trying one candidate model for one scene.

    Attributes:
        model: Candidate model id
        ok: Whether a clip was produced and downloaded
        path: Local path of the downloaded clip when ok
        url: Result URL reported by the service
        error: Failure description when not ok
        timed_out: Whether polling exceeded the timeout
        elapsed: Seconds spent on this candidate
    """

    model: str
    ok: bool
    path: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False
    elapsed: float = 0.0


def extract_video_url(payload: Any) -> Optional[str]:
    """
    Pick the video URL out of a model response.

    Supports the response shapes used across models: ``video.url``,
    ``output.url``, ``output[0].url``, ``output_url``, ``result.url``,
    ``data.url``, a top-level ``url``, and any of these nested under ``data``.
    """
    if not isinstance(payload, dict):
        return None

    def url_of(value: Any) -> Optional[str]:
        if isinstance(value, str) and value.startswith(("http://", "https://")):
            return value
        if isinstance(value, dict):
            candidate = value.get("url")
            if isinstance(candidate, str) and candidate:
                return candidate
        if isinstance(value, list) and value:
            return url_of(value[0])
        return None

    for key in ("video", "output", "result", "data"):
        url = url_of(payload.get(key))
        if url:
            return url
    for key in ("output_url", "video_url", "url"):
        url = payload.get(key)
        if isinstance(url, str) and url:
            return url

    nested = payload.get("data")
    if isinstance(nested, dict) and nested is not payload:
        return extract_video_url(nested)
    return None


def image_data_uri(image_path: str) -> str:
    """Encode a local image as a data URI accepted by the service."""
    mime_type = mimetypes.guess_type(image_path)[0] or "image/png"
    with open(image_path, "rb") as f:
        encoded = base64.b64encode(f.read()).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class RemoteClipClient:
    """
    Client for the remote generation queue.

    Usage:
        client = RemoteClipClient(api_key="...", base_url="https://queue.fal.run")
        attempt = client.attempt(
            "fal-ai/ltx-video-13b-distilled/image-to-video",
            image_path="/tmp/scene-0.png",
            duration_seconds=4,
            dest_path="/tmp/clip-0.mp4",
        )
        if attempt.ok:
            ...
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://queue.fal.run",
        poll_interval: float = 3.0,
        timeout: float = 600.0,
        retry_max: int = 3,
        retry_base_delay: float = 1.0,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.retry_max = retry_max
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._clock = clock
        self._http = http_client or httpx.Client(timeout=httpx.Timeout(60.0, connect=10.0))
        self._headers = {"Authorization": f"Key {api_key}"}

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Protocol calls
    # ------------------------------------------------------------------

    def submit(self, model: str, payload: Dict[str, Any]) -> SubmittedRequest:
        """Submit a generation request and return its handle."""
        data = self._request_json("POST", f"{self.base_url}/{model}", json=payload)
        request_id = data.get("request_id") or data.get("requestId")
        if not request_id:
            raise RemoteClipError(f"Missing request id in submit response from {model}")
        base = f"{self.base_url}/{model}/requests/{request_id}"
        return SubmittedRequest(
            model=model,
            request_id=request_id,
            status_url=data.get("status_url") or f"{base}/status",
            response_url=data.get("response_url") or base,
        )

    def status(self, request: SubmittedRequest) -> str:
        """Return pending, completed or failed."""
        data = self._request_json("GET", request.status_url)
        state = str(data.get("status", "")).upper()
        if state in _COMPLETED_STATES:
            return STATUS_COMPLETED
        if state in _FAILED_STATES:
            return STATUS_FAILED
        return STATUS_PENDING

    def result(self, request: SubmittedRequest) -> str:
        """Return the artifact URL of a completed request."""
        data = self._request_json("GET", request.response_url)
        url = extract_video_url(data)
        if not url:
            raise RemoteClipError(f"{request.model} did not return a video URL")
        return url

    def download(self, url: str, dest_path: str) -> str:
        """Stream a result to ``dest_path``."""

        def fetch() -> str:
            with self._http.stream("GET", url, follow_redirects=True) as resp:
                self._raise_for_status(resp)
                with open(dest_path, "wb") as f:
                    for chunk in resp.iter_bytes():
                        if chunk:
                            f.write(chunk)
            return dest_path

        return call_with_retry(
            fetch,
            attempts=self.retry_max,
            base_delay=self.retry_base_delay,
            retry_on=(httpx.TransportError, TransientRemoteError),
            description=f"clip download {url[:60]}",
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Strategy attempt
    # ------------------------------------------------------------------

    def attempt(
        self,
        model: str,
        image_path: str,
        duration_seconds: int,
        dest_path: str,
        prompt: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ClipAttempt:
        """
        Run submit -> poll -> result -> download for one candidate model.

        Failures and timeouts are returned as a failed ClipAttempt.

        Raises:
            RenderCancelled: If cancel_event is set while waiting
        """
        started = self._clock()
        payload = {
            "prompt": prompt or DEFAULT_PROMPT,
            "image_url": image_data_uri(image_path),
            "duration": duration_seconds,
            "seconds": duration_seconds,
            "video_length": duration_seconds,
        }

        try:
            request = self.submit(model, payload)
            logger.info(f"Submitted clip request {request.request_id} to {model}")

            deadline = started + self.timeout
            while True:
                self._check_cancel(cancel_event)
                state = self.status(request)
                if state == STATUS_COMPLETED:
                    break
                if state == STATUS_FAILED:
                    return self._failed(model, started, f"{model} reported failure")
                if self._clock() >= deadline:
                    logger.warning(
                        f"Clip request {request.request_id} on {model} timed out "
                        f"after {self.timeout:.0f}s"
                    )
                    return self._failed(
                        model, started, f"timed out after {self.timeout:.0f}s", timed_out=True
                    )
                self._wait(cancel_event)

            url = self.result(request)
            self._check_cancel(cancel_event)
            self.download(url, dest_path)
        except (RemoteClipError, TransientRemoteError, httpx.HTTPError, ValueError, OSError) as e:
            logger.warning(f"Clip generation with {model} failed: {e}")
            return self._failed(model, started, str(e))

        return ClipAttempt(
            model=model,
            ok=True,
            path=dest_path,
            url=url,
            elapsed=self._clock() - started,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request_json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        def call() -> Dict[str, Any]:
            resp = self._http.request(method, url, headers=self._headers, **kwargs)
            self._raise_for_status(resp)
            data = resp.json()
            if not isinstance(data, dict):
                raise RemoteClipError(f"Unexpected response from {url}")
            return data

        return call_with_retry(
            call,
            attempts=self.retry_max,
            base_delay=self.retry_base_delay,
            retry_on=(httpx.TransportError, TransientRemoteError),
            description=f"{method} {url}",
            sleep=self._sleep,
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientRemoteError(f"HTTP {resp.status_code} from {resp.request.url}")
        if resp.status_code >= 400:
            raise RemoteClipError(f"HTTP {resp.status_code} from {resp.request.url}")

    def _wait(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None:
            if cancel_event.wait(self.poll_interval):
                raise RenderCancelled("Clip acquisition cancelled", stage="clip-acquisition")
        else:
            self._sleep(self.poll_interval)

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RenderCancelled("Clip acquisition cancelled", stage="clip-acquisition")

    def _failed(
        self, model: str, started: float, error: str, timed_out: bool = False
    ) -> ClipAttempt:
        return ClipAttempt(
            model=model,
            ok=False,
            error=error,
            timed_out=timed_out,
            elapsed=self._clock() - started,
        )
