"""Pytest fixtures: a fake requests session, the API client and the Flask app."""

import pytest

from app import create_app
from digiseller import API_BASE, CART_BASE, DigisellerClient, ExpiringCache


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=""):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; answers from a (method, url) table."""

    def __init__(self):
        self.headers = {}
        self.calls = []
        self.routes = {}

    def on(self, method, url, reply):
        self.routes[(method, url)] = reply

    def _respond(self, method, url, **kwargs):
        call = dict(kwargs, method=method, url=url)
        self.calls.append(call)
        reply = self.routes.get((method, url))
        if callable(reply):
            reply = reply(call)
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, FakeResponse):
            return reply
        if reply is None:
            return FakeResponse(status_code=404, text="not found")
        return FakeResponse(reply)

    def get(self, url, params=None, timeout=None):
        return self._respond("GET", url, params=params, timeout=timeout)

    def post(self, url, params=None, json=None, data=None, timeout=None):
        return self._respond("POST", url, params=params, json=json, data=data, timeout=timeout)

    def calls_to(self, url):
        return [c for c in self.calls if c["url"] == url]


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


LOGIN_URL = f"{API_BASE}/apilogin"
PRODUCTS_URL = f"{API_BASE}/shop/products"
GOODS_URL = f"{API_BASE}/seller-goods"
SEARCH_URL = f"{API_BASE}/products/search2"
CART_ADD_URL = f"{CART_BASE}/shop_cart_add.asp"
CART_LIST_URL = f"{CART_BASE}/shop_cart_lst.asp"
SELLER_ID = 123456


def categories_url(root=0):
    return f"{API_BASE}/dictionary/categories/{SELLER_ID}/{root}"


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def client(http, clock):
    return DigisellerClient(
        seller_id=SELLER_ID,
        api_key="test-api-key",
        lang="en-US",
        currency="USD",
        timeout=5,
        cache=ExpiringCache(clock=clock),
        session=http,
    )


@pytest.fixture
def app(client):
    app = create_app(
        config={
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SELLER_ID": SELLER_ID,
            "WEBHOOK_SECRET": "hook-secret",
            "SHOP_CURRENCY": "USD",
        },
        client=client,
    )
    return app


@pytest.fixture
def web(app):
    return app.test_client()
