from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests


logger = logging.getLogger(__name__)

API_BASE = "https://api.digiseller.com/api"
CART_BASE = "https://shop.digiseller.ru/xml"
PAY_URL = "https://oplata.info/asp2/pay.asp"

TOKEN_TTL_SECONDS = 110 * 60  # tokens are ~120min
TOKEN_MARGIN_SECONDS = 60
CATEGORIES_TTL_SECONDS = 300

CALLBACK_FIELDS = ("amount", "currency", "invoice_id", "seller_id")


# -------------------------
# Cache
# -------------------------
class ExpiringCache:
    """Small in-process key/value store with per-entry expiry.

    The clock is injectable so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._items: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if not item:
            return None
        expires, value = item
        if expires <= self.clock():
            self._items.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._items[key] = (self.clock() + ttl, value)


# -------------------------
# Model
# -------------------------
@dataclass(frozen=True)
class Category:
    id: int
    name: str
    children: Tuple["Category", ...] = ()


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    image: str
    price: Optional[float]
    currency: str
    description: str = ""

    def has_price(self) -> bool:
        return self.price is not None


@dataclass(frozen=True)
class CartItem:
    item_id: int
    name: str
    price: float
    qty: int
    currency: str

    def line_total(self) -> float:
        return self.price * self.qty


@dataclass(frozen=True)
class Cart:
    items: Tuple[CartItem, ...]
    count: int

    def total(self) -> float:
        return sum(it.line_total() for it in self.items)

    def currency(self, default: str = "") -> str:
        # the last item carrying a currency wins
        cur = ""
        for it in self.items:
            cur = it.currency or cur
        return cur or default


# -------------------------
# Normalization
# -------------------------
def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except Exception:
        return default


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "."))
    except Exception:
        return None


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = raw.get(k)
        if v is not None and v != "":
            return v
    return None


def localized_name(value: Any, lang: str = "") -> str:
    """Resolve a name that is either a plain string or a list of
    ``{"locale": ..., "value": ...}`` entries."""
    if isinstance(value, list):
        entries = [e for e in value if isinstance(e, dict)]
        for e in entries:
            if lang and str(e.get("locale") or "").lower() == lang.lower():
                return str(e.get("value") or "")
        return str(entries[0].get("value") or "") if entries else ""
    if value is None:
        return ""
    return str(value)


def normalize_category(raw: Dict[str, Any], lang: str = "") -> Category:
    kids = raw.get("children") or raw.get("sub") or []
    children = tuple(
        normalize_category(c, lang) for c in kids if isinstance(c, dict)
    )
    return Category(
        id=_to_int(raw.get("id")),
        name=localized_name(raw.get("name"), lang),
        children=children,
    )


def normalize_product(raw: Dict[str, Any]) -> Product:
    """Map the field names used by the public, authenticated and detail
    endpoints onto one Product shape."""
    pid = _to_int(_first(raw, "id", "good_id", "id_goods", "product_id"))
    name = _first(raw, "name", "name_goods", "title")

    price = _to_float(_first(raw, "price", "price_usd", "price_rub"))
    currency = raw.get("currency")
    if not currency:
        if raw.get("price_usd") is not None:
            currency = "USD"
        elif raw.get("price_rub") is not None:
            currency = "RUB"
        else:
            currency = ""

    image = _first(raw, "image", "image_url")
    if not image:
        previews = raw.get("preview_imgs")
        if isinstance(previews, list) and previews and isinstance(previews[0], dict):
            image = previews[0].get("url") or ""

    return Product(
        id=pid,
        name=str(name) if name is not None else f"#{pid}",
        image=str(image or ""),
        price=price,
        currency=str(currency),
        description=str(_first(raw, "info", "description") or ""),
    )


def normalize_cart(raw: Dict[str, Any]) -> Cart:
    items: List[CartItem] = []
    for it in raw.get("products") or []:
        if not isinstance(it, dict):
            continue
        items.append(
            CartItem(
                item_id=_to_int(it.get("item_id")),
                name=str(it.get("name") or "Item"),
                price=_to_float(it.get("price")) or 0.0,
                qty=_to_int(it.get("cnt_item"), 1),
                currency=str(it.get("currency") or ""),
            )
        )
    return Cart(items=tuple(items), count=_to_int(raw.get("cart_cnt")))


def updated_cart_count(response: Dict[str, Any], current: int) -> int:
    """Badge count after an add: the remote ``cart_cnt`` if present."""
    if response.get("cart_cnt") is None:
        return current
    return _to_int(response["cart_cnt"], current)


# -------------------------
# Webhook signature
# -------------------------
def callback_signature_base(params: Dict[str, Any]) -> str:
    incoming = {k: str(params.get(k) or "") for k in CALLBACK_FIELDS}
    return "".join(f"{k}:{incoming[k]};" for k in sorted(incoming))


def sign_callback(params: Dict[str, Any], secret: str) -> str:
    base = callback_signature_base(params)
    return hmac.new(secret.encode("utf-8"), base.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_callback_signature(params: Dict[str, Any], secret: str) -> bool:
    expected = sign_callback(params, secret)
    given = str(params.get("signature") or "")
    return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


# -------------------------
# API client
# -------------------------
class DigisellerClient:
    def __init__(
        self,
        seller_id: int,
        api_key: str = "",
        lang: str = "en-US",
        currency: str = "USD",
        timeout: float = 12,
        cache: Optional[ExpiringCache] = None,
        session: Optional[requests.Session] = None,
    ):
        self.seller_id = seller_id
        self.api_key = api_key
        self.lang = lang
        self.currency = currency
        self.timeout = timeout
        self.cache = cache if cache is not None else ExpiringCache()

        # requests.Session is not thread-safe: one per worker thread unless injected
        self._session = session
        if session is not None:
            session.headers.update({"Accept": "application/json"})
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        s = getattr(self._local, "session", None)
        if s is None:
            s = requests.Session()
            s.headers.update({"Accept": "application/json"})
            self._local.session = s
        return s

    # ---- HTTP ----
    def _decode(self, r: requests.Response, url: str) -> Dict[str, Any]:
        if r.status_code >= 400:
            logger.warning("Digiseller HTTP %s for %s", r.status_code, url)
            return {"error": f"HTTP {r.status_code}", "url": url}
        try:
            data = r.json()
        except ValueError:
            logger.warning("Digiseller returned non-JSON body for %s", url)
            return {"error": "Bad JSON", "raw": r.text}
        if not isinstance(data, dict):
            return {"error": "Bad JSON", "raw": r.text}
        return data

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = self.session.get(url, params=params or {}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Digiseller GET %s failed: %s", url, e)
            return {"error": str(e), "url": url}
        return self._decode(r, url)

    def post_json(self, url: str, payload: Dict[str, Any], params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = self.session.post(url, params=params or {}, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Digiseller POST %s failed: %s", url, e)
            return {"error": str(e), "url": url}
        return self._decode(r, url)

    def post_form(self, url: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        try:
            r = self.session.post(url, data=fields, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Digiseller POST %s failed: %s", url, e)
            return {"error": str(e), "url": url}
        return self._decode(r, url)

    # ---- Auth ----
    def token(self) -> Optional[str]:
        cached = self.cache.get("token")
        if cached:
            return cached

        ts = int(self.cache.clock())
        sign = hashlib.sha256(f"{self.api_key}{ts}".encode("utf-8")).hexdigest()
        res = self.post_json(
            f"{API_BASE}/apilogin",
            {"seller_id": self.seller_id, "timestamp": ts, "sign": sign},
        )
        if res.get("error"):
            return None
        if _to_int(res.get("retval"), 0) != 0:
            logger.warning("Digiseller apilogin refused: retval=%s", res.get("retval"))
            return None
        tok = res.get("token")
        if not tok:
            return None
        self.cache.set("token", str(tok), TOKEN_TTL_SECONDS - TOKEN_MARGIN_SECONDS)
        return str(tok)

    # ---- Catalog ----
    def categories(self, root: int = 0) -> List[Category]:
        key = f"cats_{root}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        res = self.get_json(f"{API_BASE}/dictionary/categories/{self.seller_id}/{root}")
        if res.get("error"):
            return []
        cats = [
            normalize_category(c, self.lang)
            for c in (res.get("content") or [])
            if isinstance(c, dict)
        ]
        self.cache.set(key, cats, CATEGORIES_TTL_SECONDS)
        return cats

    def category_name(self, category_id: int) -> Optional[str]:
        stack = list(self.categories(0))
        while stack:
            c = stack.pop(0)
            if c.id == category_id:
                return c.name
            stack.extend(c.children)
        return None

    def products_by_category(self, category_id: int, page: int = 1, per_page: int = 30) -> List[Product]:
        page = max(1, page)
        size = min(100, max(10, per_page))
        res = self.get_json(
            f"{API_BASE}/shop/products",
            {
                "seller_id": self.seller_id,
                "category_id": category_id,
                "page": page,
                "pagesize": size,
                "lang": self.lang,
            },
        )
        rows = res.get("products") or []
        if rows:
            return [normalize_product(p) for p in rows if isinstance(p, dict)]
        # past the end of a public listing is just an empty page
        if page > 1 and not res.get("error"):
            return []

        logger.info("No public products for category %s, trying seller-goods", category_id)
        goods = self.seller_goods({"category_id": category_id, "page": page, "rows": size})
        if isinstance(goods, dict):
            return []
        return goods

    def seller_goods(self, filters: Optional[Dict[str, Any]] = None):
        tok = self.token()
        if not tok:
            return {"error": "Token failed"}
        res = self.post_json(f"{API_BASE}/seller-goods", filters or {}, params={"token": tok})
        if res.get("error"):
            return res
        rows = res.get("goods") or res.get("data") or res.get("rows") or []
        return [normalize_product(p) for p in rows if isinstance(p, dict)]

    def search(self, query: str, page: int = 1, per_page: int = 30) -> List[Product]:
        query = (query or "").strip()
        if not query:
            return []
        res = self.get_json(
            f"{API_BASE}/products/search2",
            {
                "seller_id": self.seller_id,
                "search": query,
                "currency": self.currency,
                "lang": self.lang,
                "page": max(1, page),
                "rows": min(100, max(10, per_page)),
            },
        )
        rows = res.get("products") or []
        if isinstance(rows, dict):
            rows = rows.get("product") or []
        return [normalize_product(p) for p in rows if isinstance(p, dict)]

    def product_info(self, product_id: int) -> Optional[Product]:
        res = self.get_json(
            f"{API_BASE}/products/{product_id}/data",
            {"seller_id": self.seller_id, "currency": self.currency, "lang": self.lang},
        )
        raw = res.get("product")
        if res.get("error") or not isinstance(raw, dict):
            return None
        raw = dict(raw)
        raw.setdefault("id", product_id)
        return normalize_product(raw)

    # ---- Cart ----
    def cart_add(self, product_id: int, qty: int = 1, cart_uid: str = "") -> Dict[str, Any]:
        """Add a product; the response carries ``cart_uid``, ``cart_cnt`` and
        ``products``."""
        return self.post_form(
            f"{CART_BASE}/shop_cart_add.asp",
            {
                "product_id": product_id,
                "product_cnt": max(1, qty),
                "lang": self.lang,
                "cart_uid": cart_uid or "",
            },
        )

    def cart_list(self, cart_uid: str, item_id: Optional[int] = None, qty: Optional[int] = None) -> Dict[str, Any]:
        """List the cart, or set one line's quantity when both ``item_id``
        and ``qty`` are given."""
        if not cart_uid:
            return {"cart_err": "0", "cart_cnt": "0", "products": []}
        fields: Dict[str, Any] = {"cart_uid": cart_uid, "lang": self.lang}
        if item_id is not None and qty is not None:
            fields["item_id"] = item_id
            fields["product_cnt"] = max(0, qty)
        return self.post_form(f"{CART_BASE}/shop_cart_lst.asp", fields)

    def cart(self, cart_uid: str) -> Cart:
        return normalize_cart(self.cart_list(cart_uid))

    def cart_clear(self, cart_uid: str) -> List[Dict[str, Any]]:
        # Best-effort: set all items to 0, one call per line.
        results: List[Dict[str, Any]] = []
        listing = self.cart_list(cart_uid)
        for it in listing.get("products") or []:
            if not isinstance(it, dict):
                continue
            res = self.cart_list(cart_uid, _to_int(it.get("item_id")), 0)
            if res.get("error"):
                logger.warning("Clearing cart item %s failed: %s", it.get("item_id"), res["error"])
            results.append(res)
        return results

    def payment_fields(self, cart_uid: str, success_url: str = "", fail_url: str = "") -> Dict[str, str]:
        fields = {
            "cart_uid": cart_uid,
            "typecurr": self.currency,
            "lang": self.lang,
        }
        if fail_url:
            fields["failpage"] = fail_url
        if success_url:
            fields["successpage"] = success_url
        return fields
