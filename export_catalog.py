"""Dump the remote category tree and category products to JSON.

    python export_catalog.py --seller-id 123456 --out export_catalog
"""
import argparse
import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List

from digiseller import Category, DigisellerClient


logger = logging.getLogger("export_catalog")


def save_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def walk(categories: List[Category]) -> List[Category]:
    out: List[Category] = []
    for c in categories:
        out.append(c)
        out.extend(walk(list(c.children)))
    return out


def export_catalog(client: DigisellerClient, out_dir: Path, max_pages: int = 20, per_page: int = 100) -> Dict[str, int]:
    categories = client.categories(0)
    save_json(out_dir / "categories.json", [asdict(c) for c in categories])

    total = 0
    for cat in walk(categories):
        rows: List[Dict] = []
        seen = set()
        for page in range(1, max_pages + 1):
            batch = client.products_by_category(cat.id, page, per_page)
            fresh = [p for p in batch if p.id not in seen]
            # fallback endpoint may ignore paging; stop once nothing new arrives
            if not fresh:
                break
            for p in fresh:
                seen.add(p.id)
                rows.append(asdict(p))
            if len(batch) < per_page:
                break
        logger.info("[%s] %s: %d products", cat.id, cat.name, len(rows))
        save_json(out_dir / "by_category" / f"{cat.id}.json", rows)
        total += len(rows)

    return {"categories": len(walk(categories)), "products": total}


def main():
    ap = argparse.ArgumentParser(description="Export a Digiseller catalog to JSON files")
    ap.add_argument("--seller-id", type=int, default=int(os.getenv("DIGISELLER_SELLER_ID") or 0))
    ap.add_argument("--api-key", default=os.getenv("DIGISELLER_API_KEY", ""), help="Needed for the seller-goods fallback")
    ap.add_argument("--lang", default=os.getenv("SHOP_LANG", "en-US"))
    ap.add_argument("--currency", default=os.getenv("SHOP_CURRENCY", "USD"))
    ap.add_argument("--timeout", type=float, default=12)
    ap.add_argument("--out", default="export_catalog", help="Output directory")
    ap.add_argument("--max-pages", type=int, default=20, help="Page limit per category")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if not args.seller_id:
        raise SystemExit("--seller-id (or DIGISELLER_SELLER_ID) is required")

    client = DigisellerClient(
        seller_id=args.seller_id,
        api_key=args.api_key,
        lang=args.lang,
        currency=args.currency,
        timeout=args.timeout,
    )
    out_dir = Path(args.out)
    stats = export_catalog(client, out_dir, max_pages=args.max_pages)

    logger.info("Categories: %d", stats["categories"])
    logger.info("Products: %d", stats["products"])
    logger.info("Output: %s", out_dir.resolve())


if __name__ == "__main__":
    main()
