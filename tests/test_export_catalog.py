import json

from conftest import PRODUCTS_URL, categories_url
from export_catalog import export_catalog, walk
from digiseller import Category


def test_walk_flattens_tree():
    tree = [Category(1, "A", (Category(2, "B"), Category(3, "C", (Category(4, "D"),))))]
    assert [c.id for c in walk(tree)] == [1, 2, 3, 4]


def test_export_writes_categories_and_products(client, http, tmp_path):
    http.on("GET", categories_url(), {"content": [{"id": 1, "name": "Games", "sub": [{"id": 2, "name": "Keys"}]}]})

    def products(call):
        params = call["params"]
        if params["page"] > 1:
            return {"products": []}
        return {"products": [{"id": params["category_id"] * 10, "name": "P", "price_usd": 1}]}

    http.on("GET", PRODUCTS_URL, products)

    stats = export_catalog(client, tmp_path, max_pages=3, per_page=10)

    assert stats == {"categories": 2, "products": 2}
    cats = json.loads((tmp_path / "categories.json").read_text(encoding="utf-8"))
    assert cats[0]["name"] == "Games"
    assert cats[0]["children"][0]["id"] == 2
    keys = json.loads((tmp_path / "by_category" / "2.json").read_text(encoding="utf-8"))
    assert keys == [{"id": 20, "name": "P", "image": "", "price": 1.0, "currency": "USD", "description": ""}]
