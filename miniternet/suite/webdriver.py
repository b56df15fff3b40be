"""
miniternet/suite/webdriver.py
Minimal W3C WebDriver client for the browser grid.

Only the handful of endpoints the suite drives are implemented. Every call
goes through _unwrap(), which turns a protocol error body into the matching
WebDriverError subclass.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from miniternet.errors import GridCapacityError, NoSuchElementError, WebDriverError

logger = logging.getLogger(__name__)

# W3C web element identifier
ELEMENT_KEY = "element-6066-11e4-a52e-4f735466cecf"

COVERAGE_SCRIPT = "return window.__coverage__ || null;"


def _unwrap(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        raise WebDriverError(
            f"Grid answered HTTP {response.status_code} without a JSON body",
            status=response.status_code,
        ) from None
    value = body.get("value") if isinstance(body, dict) else None
    if response.status_code >= 400 or (isinstance(value, dict) and "error" in value):
        value = value if isinstance(value, dict) else {}
        error = value.get("error", "unknown error")
        message = value.get("message") or error
        if error == "no such element":
            raise NoSuchElementError(message, error=error, status=response.status_code)
        if error == "session not created":
            raise GridCapacityError(message, error=error, status=response.status_code)
        raise WebDriverError(message, error=error, status=response.status_code)
    return value


class BrowserSession:
    """One WebDriver session. Not safe to share between concurrent cases."""

    def __init__(self, client: httpx.AsyncClient, session_id: str):
        self.client = client
        self.session_id = session_id
        self.closed = False

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"/session/{self.session_id}{path}"
        try:
            response = await self.client.request(method, url, json=payload)
        except httpx.TransportError as e:
            raise WebDriverError(f"Grid unreachable during {method} {path or '/'}: {e}",
                                 error="transport error", status=0) from e
        return _unwrap(response)

    async def get(self, url: str) -> None:
        await self._call("POST", "/url", {"url": url})

    async def current_url(self) -> str:
        return await self._call("GET", "/url")

    async def title(self) -> str:
        return await self._call("GET", "/title")

    async def find(self, css: str) -> str:
        value = await self._call("POST", "/element", {"using": "css selector", "value": css})
        return value[ELEMENT_KEY]

    async def find_all(self, css: str) -> List[str]:
        values = await self._call("POST", "/elements", {"using": "css selector", "value": css})
        return [v[ELEMENT_KEY] for v in values]

    async def text(self, element: str) -> str:
        return await self._call("GET", f"/element/{element}/text")

    async def attribute(self, element: str, name: str) -> Optional[str]:
        return await self._call("GET", f"/element/{element}/attribute/{name}")

    async def click(self, element: str) -> None:
        await self._call("POST", f"/element/{element}/click", {})

    async def find_text(self, css: str) -> str:
        return await self.text(await self.find(css))

    async def execute(self, script: str, *args: Any) -> Any:
        return await self._call("POST", "/execute/sync", {"script": script, "args": list(args)})

    async def set_window_rect(self, width: int, height: int) -> None:
        await self._call("POST", "/window/rect", {"width": width, "height": height})

    async def coverage(self) -> Optional[Dict[str, Dict[str, int]]]:
        """Line hit counts collected by the instrumented application, if any."""
        return await self.execute(COVERAGE_SCRIPT)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._call("DELETE", "")
        except WebDriverError as e:
            logger.warning(f"[WebDriver] Could not delete session {self.session_id}: {e}")
        finally:
            await self.client.aclose()


class GridClient:
    """Creates BrowserSessions against the grid hub."""

    def __init__(
        self,
        grid_url: str,
        browser_name: str = "firefox",
        width: int = 1920,
        height: int = 1080,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.grid_url = grid_url.rstrip("/")
        self.browser_name = browser_name
        self.width = width
        self.height = height
        self.timeout = timeout
        self.transport = transport

    def capabilities(self) -> Dict[str, Any]:
        return {
            "capabilities": {
                "alwaysMatch": {
                    "browserName": self.browser_name,
                    "acceptInsecureCerts": True,
                }
            }
        }

    async def new_session(self) -> BrowserSession:
        """Raises GridCapacityError when the grid has no free node."""
        client = httpx.AsyncClient(base_url=self.grid_url, timeout=self.timeout, transport=self.transport)
        try:
            try:
                response = await client.post("/session", json=self.capabilities())
            except httpx.TransportError as e:
                raise WebDriverError(f"Grid unreachable at {self.grid_url}: {e}",
                                     error="transport error", status=0) from e
            value = _unwrap(response)
            try:
                session_id = value["sessionId"]
            except (KeyError, TypeError):
                raise WebDriverError(
                    f"Grid at {self.grid_url} created no session: {value!r}",
                    error="invalid session response", status=response.status_code,
                ) from None
            session = BrowserSession(client, session_id)
        except BaseException:
            await client.aclose()
            raise
        try:
            await session.set_window_rect(self.width, self.height)
        except BaseException:
            await session.close()
            raise
        logger.debug(f"[WebDriver] Session {session.session_id} ({self.browser_name} {self.width}x{self.height})")
        return session
