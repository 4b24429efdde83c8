from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from data_fetchers import FetcherRegistry

CACHE_DIR = Path(os.getenv("GFS_CACHE_DIR", "data"))


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("GFS_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("gfs_textures")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("GFS_LOG_FILE", "logs/gfs_textures.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="GFS Texture Server")


def _allowed_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

registry = FetcherRegistry(CACHE_DIR)


def _split_artifact(artifact: str) -> tuple[str, str]:
    product_id, dot, extension = str(artifact).rpartition(".")
    if not dot or not product_id:
        return str(artifact), ""
    return product_id, extension


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    registry.close()


@app.get("/data/{artifact}")
def data(
    artifact: str,
    dateTime: str | None = Query(None),
    resolution: str | None = Query(None),
    forecast: str | None = Query(None),
    colors: str | None = Query(None),
) -> Response:
    product_id, extension = _split_artifact(artifact)
    fetcher = registry.get(product_id)
    if fetcher is None:
        raise HTTPException(status_code=404, detail=f"No fetcher for {product_id}")

    query = {
        key: value
        for key, value in (
            ("dateTime", dateTime),
            ("resolution", resolution),
            ("forecast", forecast),
            ("colors", colors),
        )
        if value is not None
    }
    try:
        result = fetcher.fetch(query, extension)
    except ValueError as exc:
        LOGGER.warning("Data request invalid artifact=%s: %s", artifact, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Data request failed artifact=%s query=%s: %s", artifact, query, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception:
        LOGGER.exception("Data request unexpected failure artifact=%s query=%s", artifact, query)
        raise
    return Response(content=result.data, media_type=result.mime_type)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
