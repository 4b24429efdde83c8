#!/usr/bin/env python3
from __future__ import annotations

import json
import os

from data_fetchers import PRODUCT_METAS, FetcherRegistry
from gfs_params import artifact_name

CACHE_DIR = os.getenv("GFS_CACHE_DIR", "data")
WARM_RESOLUTIONS = tuple(
    v.strip() for v in os.getenv("WARM_RESOLUTIONS", "LOW").split(",") if v.strip()
)
WARM_FORECAST_STEPS = tuple(
    int(v) for v in os.getenv("WARM_FORECAST_STEPS", "1,2,3,4").split(",") if v.strip()
)


def _warm_one(registry: FetcherRegistry, product_id: str, query: dict) -> dict:
    fetcher = registry.get(product_id)
    params = fetcher.parse(query)
    name = artifact_name(params, fetcher.prefix, "png")
    cached = registry.store.exists(name)
    try:
        fetcher.fetch(query, ".png")
        return {"artifact": name, "status": "cached" if cached else "built"}
    except RuntimeError as exc:  # pragma: no cover - diagnostics script
        return {"artifact": name, "status": "failed", "error": f"{type(exc).__name__}: {exc}"}


def main() -> None:
    registry = FetcherRegistry(CACHE_DIR)
    rows = []
    try:
        for product in PRODUCT_METAS:
            for resolution in WARM_RESOLUTIONS:
                for step in WARM_FORECAST_STEPS:
                    query = {"resolution": resolution, "forecast": str(step)}
                    rows.append(_warm_one(registry, product.value, query))
    finally:
        registry.close()

    failed = [r for r in rows if r.get("status") == "failed"]
    print(f"total={len(rows)} failed={len(failed)}")
    for row in failed:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
