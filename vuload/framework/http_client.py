"""
HTTP client used by virtual users.

Wraps ``httpx.Client`` behind the narrow ``request(method, url, body)``
interface the worker loop consumes. Transport failures never raise: they
come back as a status-0 Response with ``error`` set, so they are recorded as
failed requests instead of aborting the iteration.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

# Statuses outside this range count as failed requests.
EXPECTED_STATUS_MIN = 200
EXPECTED_STATUS_MAX = 399


@dataclass
class Response:
    """
    Outcome of one HTTP request.

    Attributes:
        status: HTTP status code, 0 for transport failures
        duration_ms: Time from send to full body received, in milliseconds
        body: Response body as text
        headers: Response headers
        url: Requested URL
        method: HTTP method
        error: Transport error description, if any
    """

    status: int
    duration_ms: float
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""
    method: str = "GET"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Check if the status is in the expected range."""
        return EXPECTED_STATUS_MIN <= self.status <= EXPECTED_STATUS_MAX

    @property
    def failed(self) -> bool:
        return not self.ok

    def json(self) -> Any:
        """Parsed JSON body, or None if the body is not valid JSON."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None


ResponseRecorder = Callable[[Response, Optional[str]], None]


class HttpClient:
    """
    Synchronous HTTP client for one virtual user.

    Every request is bounded by ``timeout``, both per network operation and
    from send to the last body byte; on expiry the request is recorded as a
    failure rather than left hanging.

    Example usage:
        with HttpClient(timeout=10.0) as http:
            res = http.get("https://dummyjson.com/products/categories")
            if res.ok:
                data = res.json()
    """

    def __init__(
        self,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
        recorder: Optional[ResponseRecorder] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        """
        Initialize the HTTP client.

        Args:
            timeout: Hard request timeout in seconds
            transport: Optional httpx transport (used by tests)
            recorder: Called with every Response and its request name
            headers: Default headers sent with every request
        """
        self.timeout = timeout
        self._transport = transport
        self._recorder = recorder
        self._headers = headers or {"User-Agent": "vuload/0.1.0"}
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        """Get or create the underlying httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                transport=self._transport,
                headers=self._headers,
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _enforce_deadline(self, start: float, request: httpx.Request) -> None:
        if time.perf_counter() - start > self.timeout:
            raise httpx.ReadTimeout(
                f"Response not complete within {self.timeout}s", request=request
            )

    def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> Response:
        """
        Send one request.

        Args:
            method: HTTP method
            url: Absolute URL
            body: dict/list bodies are sent as JSON, str/bytes as-is
            headers: Extra request headers
            name: Request name handed to the recorder

        Returns:
            Response (status 0 on transport failure)
        """
        method = method.upper()
        kwargs: dict[str, Any] = {"headers": headers}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = body

        start = time.perf_counter()
        try:
            with self.client.stream(method, url, **kwargs) as resp:
                # httpx timeouts bound each read, not the whole transfer
                self._enforce_deadline(start, resp.request)
                chunks = []
                for chunk in resp.iter_bytes():
                    chunks.append(chunk)
                    self._enforce_deadline(start, resp.request)
                content = b"".join(chunks)
                response = Response(
                    status=resp.status_code,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    body=content.decode(resp.encoding or "utf-8", errors="replace"),
                    headers=dict(resp.headers),
                    url=url,
                    method=method,
                )
        except httpx.TimeoutException:
            response = Response(
                status=0,
                duration_ms=(time.perf_counter() - start) * 1000,
                url=url,
                method=method,
                error=f"Request timed out after {self.timeout}s",
            )
        except httpx.TransportError as e:
            response = Response(
                status=0,
                duration_ms=(time.perf_counter() - start) * 1000,
                url=url,
                method=method,
                error=f"Connection failed: {str(e)}",
            )

        if response.error:
            logger.debug("%s %s failed: %s", method, url, response.error)
        if self._recorder is not None:
            self._recorder(response, name)
        return response

    def get(self, url: str, **kwargs: Any) -> Response:
        """Send a GET request."""
        return self.request("GET", url, **kwargs)

    def post(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        """Send a POST request."""
        return self.request("POST", url, body=body, **kwargs)
