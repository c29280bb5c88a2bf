"""In-memory stand-ins for the Playwright objects the resolver drives."""

import base64
from dataclasses import dataclass, field

import pytest


class FakeRequest:
    def __init__(self, headers=None, resource_type="xhr"):
        self.headers = headers or {}
        self.resource_type = resource_type


class FakeResponse:
    def __init__(self, url, body=None, status=200, referer=None):
        self.url = url
        self.status = status
        self._body = body
        self.request = FakeRequest({"referer": referer} if referer else {})

    async def text(self):
        if self._body is None:
            raise RuntimeError("Response body is unavailable for redirect responses")
        return self._body


@dataclass
class FakePageSpec:
    responses: list = field(default_factory=list)
    iframes: list = field(default_factory=list)


@dataclass
class FakeSite:
    """What the fake browser sees: pages by URL, in-page fetch results, cookie jar."""
    pages: dict = field(default_factory=dict)
    fetchable: dict = field(default_factory=dict)
    cookies: list = field(default_factory=list)
    visited: list = field(default_factory=list)
    opened: list = field(default_factory=list)
    cookies_error: Exception = None


class FakePage:
    def __init__(self, site: FakeSite):
        self.site = site
        self.handlers = {}
        self.route_handler = None
        self.url = None
        self.closed = False
        site.opened.append(self)

    async def route(self, pattern, handler):
        self.route_handler = handler

    def on(self, event, callback):
        self.handlers[event] = callback

    async def goto(self, url, wait_until=None, timeout=None):
        self.url = url
        self.site.visited.append(url)
        spec = self.site.pages.get(url)
        if spec is None:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        for response in spec.responses:
            self.handlers["response"](response)

    async def eval_on_selector_all(self, selector, script):
        spec = self.site.pages.get(self.url)
        return list(spec.iframes) if spec else []

    async def evaluate(self, script, url):
        status, body, content_type = self.site.fetchable.get(url, (404, b"", None))
        return {
            "status": status,
            "contentType": content_type,
            "body": base64.b64encode(body).decode("ascii"),
        }

    async def close(self):
        self.closed = True


class FakeHandle:
    def __init__(self, site: FakeSite):
        self.site = site
        self.closed = False

    async def new_page(self):
        return FakePage(self.site)

    async def cookies(self):
        if self.site.cookies_error is not None:
            raise self.site.cookies_error
        return list(self.site.cookies)

    async def close(self):
        self.closed = True


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def handle(site):
    return FakeHandle(site)


@pytest.fixture
def launcher(handle):
    async def launch():
        return handle
    return launch
