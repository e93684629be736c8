from __future__ import annotations

import hmac
import html as py_html
import logging
import os
import re
import secrets
from typing import Any, Dict, List, Mapping, Optional

from flask import (
    Flask,
    abort,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from markupsafe import Markup, escape
from werkzeug.exceptions import HTTPException

from digiseller import (
    PAY_URL,
    DigisellerClient,
    ExpiringCache,
    updated_cart_count,
    verify_callback_signature,
)


logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Best-effort .env loader (no external dependency).

    Only sets variables that are not already present in the environment.
    Supports simple KEY=VALUE lines (optionally quoted); ignores blanks and comments.
    """
    base_dir = os.path.abspath(os.path.dirname(__file__))
    env_path = os.path.join(base_dir, ".env")
    if not os.path.isfile(env_path):
        return
    try:
        with open(env_path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip()
                if (v.startswith("'") and v.endswith("'")) or (v.startswith("\"") and v.endswith("\"")):
                    v = v[1:-1]
                if not k:
                    continue
                if k not in os.environ:
                    os.environ[k] = v
    except OSError as e:
        logger.warning("Could not read %s: %s", env_path, e)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# -------------------------
# Helpers
# -------------------------
def format_money(value: Any) -> str:
    """Two decimals, dot separator: 12.50"""
    try:
        v = float(value)
    except Exception:
        v = 0.0
    return f"{v:.2f}"


def format_description_html(raw: str) -> Markup:
    """
    Converts a remote product description (often containing literal <br>) into safe structured HTML.
    - converts <br> to newlines
    - removes any remaining tags
    - builds paragraphs + lists
    """
    if not raw:
        return Markup("")

    s = str(raw)
    s = py_html.unescape(s)
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    s = re.sub(r"(?i)<br\s*/?>", "\n", s)
    s = re.sub(r"<[^>]+>", "", s)  # strip all tags

    lines = [ln.strip() for ln in s.split("\n")]
    out_parts: List[str] = []
    list_items: List[str] = []

    def flush_list() -> None:
        nonlocal list_items
        if list_items:
            out_parts.append(
                "<ul>" + "".join(f"<li>{escape(x)}</li>" for x in list_items) + "</ul>"
            )
            list_items = []

    for ln in lines:
        if not ln:
            flush_list()
            continue

        m = re.match(r"^(\*|-|•)\s+(.*)$", ln)
        if m:
            list_items.append(m.group(2).strip())
            continue

        flush_list()
        out_parts.append(f"<p>{escape(ln)}</p>")

    flush_list()
    return Markup("\n".join(out_parts))


def is_mobile_request() -> bool:
    """
    Heuristic mobile detection based on User-Agent.
    Goal: smaller product pages on phones (1-column grid).
    """
    ua = (request.headers.get("User-Agent") or "").lower()
    tokens = ("mobile", "android", "iphone", "ipod", "windows phone", "opera mini")
    return any(t in ua for t in tokens)


# -------------------------
# CSRF
# -------------------------
def csrf_token() -> str:
    tok = session.get("csrf")
    if not tok:
        tok = secrets.token_hex(16)
        session["csrf"] = tok
    return tok


def csrf_check() -> None:
    sent = request.form.get("csrf") or ""
    expected = session.get("csrf") or ""
    if not expected or not hmac.compare_digest(sent.encode("utf-8"), expected.encode("utf-8")):
        abort(400, "Bad CSRF")


# Old single-script links: /?route=<name>&id=...
LEGACY_ROUTES = {
    "home": ("home", None),
    "category": ("category", "category_id"),
    "search": ("search", None),
    "product": ("product", "product_id"),
    "add": ("add", "product_id"),
    "cart": ("cart", None),
    "update_item": ("cart_update", None),
    "clear_cart": ("cart_clear", None),
    "checkout": ("checkout", None),
    "callback": ("callback", None),
}

CONNECT_SRC = "https://api.digiseller.com https://shop.digiseller.ru https://pay.digiseller.ru https://oplata.info"
CSP = (
    "default-src 'self'; img-src 'self' data: https:; script-src 'self' 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline'; form-action 'self' https://oplata.info; "
    f"connect-src 'self' {CONNECT_SRC}; frame-ancestors 'self'; base-uri 'self';"
)


def build_client(config: Mapping[str, Any]) -> DigisellerClient:
    return DigisellerClient(
        seller_id=int(config.get("SELLER_ID") or 0),
        api_key=config.get("API_KEY") or "",
        lang=config.get("SHOP_LANG") or "en-US",
        currency=config.get("SHOP_CURRENCY") or "USD",
        timeout=float(config.get("HTTP_TIMEOUT") or 12),
        cache=ExpiringCache(),
    )


# -------------------------
# App factory
# -------------------------
def create_app(config: Optional[Dict[str, Any]] = None, client: Optional[DigisellerClient] = None) -> Flask:
    _load_dotenv()
    app = Flask(__name__)

    app.secret_key = os.getenv("SECRET_KEY", "dev-secret-change-me")
    app.config.update(
        SELLER_ID=_env_int("DIGISELLER_SELLER_ID", 0),
        API_KEY=os.getenv("DIGISELLER_API_KEY", ""),
        WEBHOOK_SECRET=os.getenv("DIGISELLER_SECRET_KEY", ""),
        SHOP_LANG=os.getenv("SHOP_LANG", "en-US"),
        SHOP_CURRENCY=os.getenv("SHOP_CURRENCY", "USD"),
        SHOP_TITLE=os.getenv("SHOP_TITLE", "My Digiseller Shop"),
        SHOP_SUCCESS_URL=os.getenv("SHOP_SUCCESS_URL", ""),
        SHOP_FAIL_URL=os.getenv("SHOP_FAIL_URL", ""),
        HTTP_TIMEOUT=_env_int("HTTP_TIMEOUT", 12),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=_env_flag("SESSION_COOKIE_SECURE"),
    )
    if config:
        app.config.update(config)

    if client is None:
        client = build_client(app.config)
    app.extensions["digiseller"] = client

    app.add_template_filter(format_money, name="money")
    app.add_template_filter(format_description_html, name="desc_html")
    app.add_template_global(csrf_token, name="csrf_token")

    def per_page() -> int:
        return 12 if is_mobile_request() else 30

    # -------------------------
    # Config guard
    # -------------------------
    @app.before_request
    def require_config():
        if request.endpoint in ("callback", "static"):
            return None
        if not app.config.get("SELLER_ID"):
            return (
                "Missing Digiseller configuration.\n"
                "Please set DIGISELLER_SELLER_ID, DIGISELLER_API_KEY, DIGISELLER_SECRET_KEY, "
                "SHOP_LANG, SHOP_CURRENCY, HTTP_TIMEOUT (environment or .env).",
                500,
                {"Content-Type": "text/plain; charset=utf-8"},
            )
        return None

    # -------------------------
    # Security + cache headers
    # -------------------------
    @app.after_request
    def add_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "SAMEORIGIN"
        resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        resp.headers["Permissions-Policy"] = "interest-cohort=()"
        resp.headers["Content-Security-Policy"] = CSP
        resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        resp.headers["Pragma"] = "no-cache"
        resp.headers["Expires"] = "0"
        return resp

    # -------------------------
    # Globals for templates
    # -------------------------
    @app.context_processor
    def inject_globals():
        return dict(
            cart_count=int(session.get("last_cart_cnt") or 0),
            shop_title=app.config["SHOP_TITLE"],
            seller_id=app.config["SELLER_ID"],
            shop_lang=app.config["SHOP_LANG"],
        )

    # -------------------------
    # Errors
    # -------------------------
    @app.errorhandler(404)
    def not_found(e):
        return render_template("index.html", view="not_found", title="Not found"), 404

    @app.errorhandler(Exception)
    def unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error on %s", request.path)
        return render_template("index.html", view="error", title="Error"), 500

    # -------------------------
    # Routes
    # -------------------------
    @app.route("/", methods=["GET", "POST"])
    def home():
        route = (request.args.get("route") or "home").strip()
        if route != "home":
            target = LEGACY_ROUTES.get(route)
            if not target:
                abort(404)
            endpoint, id_arg = target
            args = request.args.to_dict()
            args.pop("route", None)
            if id_arg:
                try:
                    args[id_arg] = max(0, int(args.pop("id", 0)))
                except ValueError:
                    args[id_arg] = 0
            code = 307 if request.method == "POST" else 302
            return redirect(url_for(endpoint, **args), code=code)

        cats = client.categories(0)
        return render_template("index.html", view="home", title="Shop — Categories", categories=cats)

    @app.get("/category/<int:category_id>")
    def category(category_id: int):
        page = max(1, request.args.get("p", 1, type=int) or 1)
        size = per_page()
        products = client.products_by_category(category_id, page, size)
        cat_name = client.category_name(category_id) or f"Category #{category_id}"
        return render_template(
            "index.html",
            view="category",
            title=f"Shop — {cat_name}",
            category_id=category_id,
            category_name=cat_name,
            products=products,
            page=page,
            has_next=len(products) >= size,
        )

    @app.get("/search")
    def search():
        q = (request.args.get("q") or "").strip()
        page = max(1, request.args.get("p", 1, type=int) or 1)
        size = per_page()
        products = client.search(q, page, size) if q else []
        return render_template(
            "index.html",
            view="search",
            title=f"Search — {q}" if q else "Search",
            q=q,
            products=products,
            page=page,
            has_next=len(products) >= size,
        )

    @app.get("/product/<int:product_id>")
    def product(product_id: int):
        if product_id <= 0:
            flash("Invalid product id.", "error")
            return redirect(url_for("home"))
        p = client.product_info(product_id)
        title = p.name if p and p.name else f"Product #{product_id}"
        return render_template("index.html", view="product", title=title, product_id=product_id, p=p)

    @app.get("/add/<int:product_id>")
    def add(product_id: int):
        if product_id <= 0:
            flash("Invalid product id.", "error")
            return redirect(url_for("home"))

        res = client.cart_add(product_id, 1, session.get("cart_uid", ""))
        if res.get("error"):
            flash("Add to cart failed.", "error")
        else:
            if res.get("cart_uid"):
                session["cart_uid"] = str(res["cart_uid"])
            session["last_cart_cnt"] = updated_cart_count(res, int(session.get("last_cart_cnt") or 0))
            flash("Added to cart.", "success")
        return redirect(url_for("cart"))

    @app.get("/cart")
    def cart():
        cart_data = client.cart(session.get("cart_uid", ""))
        session["last_cart_cnt"] = cart_data.count
        return render_template(
            "index.html",
            view="cart",
            title="Your cart",
            cart=cart_data,
            cart_currency=cart_data.currency(app.config["SHOP_CURRENCY"]),
        )

    @app.post("/cart/update")
    def cart_update():
        csrf_check()
        item_id = request.form.get("item_id", type=int) or 0
        qty = request.form.get("qty", type=int)
        if qty is None:
            qty = -1
        if item_id <= 0 or qty < 0:
            flash("Bad item/qty.", "error")
            return redirect(url_for("cart"))

        res = client.cart_list(session.get("cart_uid", ""), item_id, qty)
        if res.get("error"):
            flash("Update failed.", "error")
        session["last_cart_cnt"] = updated_cart_count(res, 0)
        return redirect(url_for("cart"))

    @app.post("/cart/clear")
    def cart_clear():
        csrf_check()
        uid = session.get("cart_uid", "")
        if uid:
            client.cart_clear(uid)
        session.pop("cart_uid", None)
        session["last_cart_cnt"] = 0
        flash("Cart cleared.", "success")
        return redirect(url_for("cart"))

    @app.post("/checkout")
    def checkout():
        """Auto-POST the cart to the hosted payment page."""
        csrf_check()
        uid = session.get("cart_uid", "")
        if not uid:
            flash("Cart is empty.", "error")
            return redirect(url_for("cart"))
        fields = client.payment_fields(
            uid,
            success_url=app.config.get("SHOP_SUCCESS_URL") or "",
            fail_url=app.config.get("SHOP_FAIL_URL") or "",
        )
        return render_template("checkout.html", pay_url=PAY_URL, fields=fields)

    @app.route("/callback", methods=["GET", "POST"])
    def callback():
        secret = app.config.get("WEBHOOK_SECRET") or ""
        params = request.args.to_dict()
        if not secret:
            logger.error("Payment callback received but DIGISELLER_SECRET_KEY is not set")
            return jsonify({"ok": False})
        ok = verify_callback_signature(params, secret)
        if not ok:
            logger.warning("Rejected payment callback for invoice %r", params.get("invoice_id"))
        return jsonify({"ok": ok})

    return app


logging.basicConfig(level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5050, debug=True)
