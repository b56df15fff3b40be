import json

import httpx
import pytest

from miniternet.errors import CheckFailed, GridCapacityError, NoSuchElementError, WebDriverError
from miniternet.suite.cases import Expectation, OutcomeContract
from miniternet.suite.webdriver import ELEMENT_KEY, GridClient


class FakeGrid:
    """In-memory WebDriver endpoint serving a single page."""

    def __init__(self, page=None, capacity=1):
        self.page = page or {"#title": "Example", "#dnssec": "Secure"}
        self.capacity = capacity
        self.sessions = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))
        assert path.startswith("/wd/hub/")
        parts = path[len("/wd/hub/"):].split("/")

        if parts == ["session"] and request.method == "POST":
            if len(self.sessions) >= self.capacity:
                return self._error(500, "session not created", "no free slots")
            sid = f"s{len(self.sessions) + 1}"
            self.sessions[sid] = {"url": None}
            return httpx.Response(200, json={"value": {"sessionId": sid, "capabilities": {}}})

        sid, rest = parts[1], parts[2:]
        if sid not in self.sessions:
            return self._error(404, "invalid session id", "gone")
        if request.method == "DELETE" and not rest:
            del self.sessions[sid]
            return httpx.Response(200, json={"value": None})
        if rest == ["window", "rect"]:
            return httpx.Response(200, json={"value": body})
        if rest == ["url"]:
            if request.method == "POST":
                self.sessions[sid]["url"] = body["url"]
                return httpx.Response(200, json={"value": None})
            return httpx.Response(200, json={"value": self.sessions[sid]["url"]})
        if rest == ["title"]:
            return httpx.Response(200, json={"value": self.page["#title"]})
        if rest == ["element"]:
            if body["value"] not in self.page:
                return self._error(404, "no such element", f"{body['value']} not found")
            return httpx.Response(200, json={"value": {ELEMENT_KEY: "e-" + body["value"].lstrip("#")}})
        if rest[0] == "element" and rest[-1] == "text":
            return httpx.Response(200, json={"value": self.page["#" + rest[1][2:]]})
        if rest == ["execute", "sync"]:
            return httpx.Response(200, json={"value": {"app.js": {"3": 2}}})
        return self._error(404, "unknown command", path)

    @staticmethod
    def _error(status, error, message):
        return httpx.Response(status, json={"value": {"error": error, "message": message}})


def _client(grid):
    return GridClient("http://grid.test/wd/hub", width=800, height=600,
                      transport=httpx.MockTransport(grid.handler))


@pytest.mark.asyncio
async def test_session_lifecycle():
    grid = FakeGrid()
    session = await _client(grid).new_session()

    assert session.session_id == "s1"
    assert ("POST", "/wd/hub/session/s1/window/rect", {"width": 800, "height": 600}) in grid.requests

    await session.get("http://app.test/")
    assert await session.current_url() == "http://app.test/"
    assert await session.title() == "Example"
    assert await session.find_text("#dnssec") == "Secure"
    assert await session.coverage() == {"app.js": {"3": 2}}

    await session.close()
    await session.close()
    assert grid.sessions == {}
    assert [r for r in grid.requests if r[0] == "DELETE"] == [("DELETE", "/wd/hub/session/s1", None)]


def test_capabilities_accept_insecure_certs():
    caps = GridClient("http://grid.test/wd/hub", browser_name="chrome").capabilities()
    assert caps["capabilities"]["alwaysMatch"] == {"browserName": "chrome", "acceptInsecureCerts": True}


@pytest.mark.asyncio
async def test_protocol_errors_map_to_exceptions():
    grid = FakeGrid(capacity=1)
    client = _client(grid)
    session = await client.new_session()

    with pytest.raises(NoSuchElementError) as excinfo:
        await session.find("#missing")
    assert excinfo.value.status == 404

    with pytest.raises(GridCapacityError):
        await client.new_session()

    await session.close()


@pytest.mark.asyncio
async def test_non_json_and_transport_errors():
    def broken(request):
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(WebDriverError) as excinfo:
        await GridClient("http://grid.test/wd/hub", transport=httpx.MockTransport(broken)).new_session()
    assert excinfo.value.status == 502

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(WebDriverError) as excinfo:
        await GridClient("http://grid.test/wd/hub", transport=httpx.MockTransport(unreachable)).new_session()
    assert excinfo.value.error == "transport error"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"value": {"capabilities": {}}},
    {"status": 0},
])
async def test_new_session_reply_without_session_id(body):
    def handler(request):
        return httpx.Response(200, json=body)

    with pytest.raises(WebDriverError) as excinfo:
        await GridClient("http://grid.test/wd/hub", transport=httpx.MockTransport(handler)).new_session()
    assert excinfo.value.error == "invalid session response"


class ResizeRefusingGrid(FakeGrid):
    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/window/rect"):
            self.requests.append((request.method, request.url.path, None))
            return self._error(500, "unsupported operation", "cannot resize")
        return super().handler(request)


@pytest.mark.asyncio
async def test_failed_resize_deletes_the_new_session():
    grid = ResizeRefusingGrid()

    with pytest.raises(WebDriverError) as excinfo:
        await _client(grid).new_session()

    assert excinfo.value.error == "unsupported operation"
    assert grid.sessions == {}
    assert [r[1] for r in grid.requests if r[0] == "DELETE"] == ["/wd/hub/session/s1"]


@pytest.mark.asyncio
async def test_outcome_contract_against_grid():
    grid = FakeGrid()
    session = await _client(grid).new_session()
    try:
        ok = OutcomeContract(path="/domain/nlnetlabs.tk/",
                             expectations=[Expectation(selector="#dnssec", contains="secure")])
        await ok.verify(session, "http://app.test")
        assert await session.current_url() == "http://app.test/domain/nlnetlabs.tk/"

        bad = OutcomeContract(expectations=[Expectation(selector="#dnssec", equals="Insecure")])
        with pytest.raises(CheckFailed):
            await bad.verify(session, "http://app.test/")
    finally:
        await session.close()
