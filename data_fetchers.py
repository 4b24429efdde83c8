from __future__ import annotations

from collections import OrderedDict
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Tuple

from artifact_store import DiskArtifactStore, InFlightRequestRegistry
from gfs_params import (
    FetchParameters,
    Level,
    Variable,
    VariableConfig,
    artifact_name,
    artifact_stem,
    parse_color_stops,
    parse_query,
)
from grib_client import BuildCancelledError, EncodeError, UpstreamGribClient
from texture_encoders import CloudEncoder, ColorRampEncoder, EncodedArtifact, WindEncoder

STATE_HISTORY_LIMIT = 512
LOGGER = logging.getLogger("gfs_textures.fetchers")


class UnsupportedArtifactError(ValueError):
    """Raised for a product/extension combination that has no artifact."""


class Product(str, Enum):
    WIND = "wind"
    CLOUD = "cloud"
    COLORRAMP = "colorramp"

    @classmethod
    def lookup(cls, product_id: str) -> Product | None:
        text = str(product_id or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return None


class ArtifactExtension(str, Enum):
    PNG = "png"
    JSON = "json"

    @property
    def mime_type(self) -> str:
        if self is ArtifactExtension.PNG:
            return "image/png"
        if self is ArtifactExtension.JSON:
            return "application/json"
        raise UnsupportedArtifactError(f"No mime type for extension {self.value}")

    @classmethod
    def from_suffix(cls, suffix: str | ArtifactExtension) -> ArtifactExtension:
        if isinstance(suffix, ArtifactExtension):
            return suffix
        text = str(suffix or "").strip().lower().lstrip(".")
        for member in cls:
            if member.value == text:
                return member
        raise UnsupportedArtifactError(f"Unsupported artifact extension: {suffix!r}")

    def select(self, artifact: EncodedArtifact) -> bytes:
        if self is ArtifactExtension.PNG:
            return artifact.png
        if self is ArtifactExtension.JSON:
            return artifact.json
        raise UnsupportedArtifactError(f"Unsupported artifact extension: {self.value}")


class BuildState(str, Enum):
    IDLE = "idle"
    CHECK_CACHE = "check_cache"
    HIT = "hit"
    MISS = "miss"
    DOWNLOADING = "downloading"
    DECODING = "decoding"
    ENCODING = "encoding"
    WRITING = "writing"
    SERVE = "serve"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (BuildState.SERVE, BuildState.FAILED)


@dataclass(frozen=True)
class FetchResult:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class ProductMeta:
    product: Product
    prefix: str
    display_name: str
    variable_configs: Tuple[VariableConfig, ...]


PRODUCT_METAS: Dict[Product, ProductMeta] = {
    Product.WIND: ProductMeta(
        product=Product.WIND,
        prefix="wind",
        display_name="10 m wind",
        variable_configs=(
            VariableConfig(Variable.WIND_U, Level.ABOVE_GROUND_10M),
            VariableConfig(Variable.WIND_V, Level.ABOVE_GROUND_10M),
        ),
    ),
    Product.CLOUD: ProductMeta(
        product=Product.CLOUD,
        prefix="cloud",
        display_name="Cloud, precipitation and snow",
        variable_configs=(
            VariableConfig(Variable.CLOUD_COVER, Level.CONVECTIVE_CLOUD_LAYER),
            VariableConfig(Variable.PRECIPITATION, Level.SURFACE),
            VariableConfig(Variable.SNOW_PERCENTAGE, Level.SURFACE),
        ),
    ),
}


class DataFetcher:
    """Turns a query and an extension into artifact bytes."""

    product: Product

    def fetch(
        self,
        query: Mapping[str, object] | None,
        extension: str | ArtifactExtension,
        cancel_event: threading.Event | None = None,
    ) -> FetchResult:
        raise NotImplementedError


class GfsDataFetcher(DataFetcher):
    """Disk-cached GFS textures built from one or more decoded GRIB fields.

    A request walks CHECK_CACHE -> HIT -> SERVE, or CHECK_CACHE -> MISS ->
    DOWNLOADING -> DECODING -> ENCODING -> WRITING -> SERVE. Identical
    concurrent requests share one in-flight load, and the PNG and JSON of one
    parameter set share one upstream build. ``cancel_event`` lets the owner
    of a build abort it at the next transition.
    """

    def __init__(
        self,
        meta: ProductMeta,
        encoder,
        client: UpstreamGribClient,
        store: DiskArtifactStore,
    ) -> None:
        self.product = meta.product
        self._meta = meta
        self._encoder = encoder
        self._client = client
        self._store = store
        self._reads = InFlightRequestRegistry()
        self._builds = InFlightRequestRegistry()
        self._states: OrderedDict[str, BuildState] = OrderedDict()
        self._state_guard = threading.Lock()

    @property
    def prefix(self) -> str:
        return self._meta.prefix

    def parse(self, query: Mapping[str, object] | None) -> FetchParameters:
        return parse_query(query, self._meta.variable_configs)

    def state(self, key: str) -> BuildState:
        with self._state_guard:
            return self._states.get(key, BuildState.IDLE)

    def fetch(
        self,
        query: Mapping[str, object] | None,
        extension: str | ArtifactExtension,
        cancel_event: threading.Event | None = None,
    ) -> FetchResult:
        ext = ArtifactExtension.from_suffix(extension)
        params = self.parse(query)
        name = artifact_name(params, self.prefix, ext.value)
        data = self._reads.load(name, lambda: self._read_or_build(name, params, cancel_event))
        return FetchResult(data=data, mime_type=ext.mime_type)

    def _read_or_build(self, name: str, params: FetchParameters, cancel_event: threading.Event | None) -> bytes:
        self._transition(name, BuildState.CHECK_CACHE, cancel_event)
        if self._store.exists(name):
            self._transition(name, BuildState.HIT, cancel_event)
            data = self._store.read(name)
            self._transition(name, BuildState.SERVE)
            return data

        self._transition(name, BuildState.MISS, cancel_event)
        stem = artifact_stem(params, self.prefix)
        try:
            self._builds.load(stem, lambda: self._build(stem, params, cancel_event))
            data = self._store.read(name)
        except BaseException:
            self._transition(name, BuildState.FAILED)
            raise
        self._transition(name, BuildState.SERVE)
        return data

    def _build(self, stem: str, params: FetchParameters, cancel_event: threading.Event | None) -> EncodedArtifact:
        started = time.monotonic()
        LOGGER.info("Building artifacts key=%s url=%s", stem, self._client.request_url(params))

        def _on_stage(stage: str) -> None:
            self._transition(stem, BuildState(stage), cancel_event)

        try:
            self._store.ensure_dir()
            fields = self._client.fetch_variables(params, on_stage=_on_stage)
            self._transition(stem, BuildState.ENCODING, cancel_event)
            artifact = self._encoder.encode(fields)
            self._transition(stem, BuildState.WRITING, cancel_event)
            try:
                self._store.write_many(
                    {
                        artifact_name(params, self.prefix, ArtifactExtension.PNG.value): artifact.png,
                        artifact_name(params, self.prefix, ArtifactExtension.JSON.value): artifact.json,
                    }
                )
            except OSError as exc:
                raise EncodeError(f"Failed to persist artifacts key={stem}: {exc}") from exc
        except Exception as exc:
            self._transition(stem, BuildState.FAILED)
            LOGGER.warning("Artifact build failed key=%s error=%s", stem, exc)
            raise

        self._transition(stem, BuildState.SERVE)
        LOGGER.info("Built artifacts key=%s elapsed=%.2fs", stem, time.monotonic() - started)
        return artifact

    def _transition(self, key: str, state: BuildState, cancel_event: threading.Event | None = None) -> None:
        if cancel_event is not None and cancel_event.is_set() and not state.terminal:
            raise BuildCancelledError(f"Build cancelled key={key} before state={state.value}")
        with self._state_guard:
            self._states[key] = state
            self._states.move_to_end(key)
            while len(self._states) > STATE_HISTORY_LIMIT:
                self._states.popitem(last=False)
        LOGGER.debug("Artifact state key=%s state=%s", key, state.value)


class ColorRampFetcher(DataFetcher):
    """Color ramp lookup textures, synthesized per request without upstream data."""

    product = Product.COLORRAMP

    def __init__(self, encoder: ColorRampEncoder | None = None) -> None:
        self._encoder = encoder or ColorRampEncoder()

    def fetch(
        self,
        query: Mapping[str, object] | None,
        extension: str | ArtifactExtension,
        cancel_event: threading.Event | None = None,
    ) -> FetchResult:
        ext = ArtifactExtension.from_suffix(extension)
        stops = parse_color_stops((query or {}).get("colors"))
        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelledError("Color ramp build cancelled")
        artifact = self._encoder.encode(stops)
        return FetchResult(data=ext.select(artifact), mime_type=ext.mime_type)


class FetcherRegistry:
    """Lazily creates one fetcher per product; all GFS fetchers share a client and a store."""

    def __init__(
        self,
        cache_dir: Path | str,
        client_factory: Callable[[], UpstreamGribClient] = UpstreamGribClient,
    ) -> None:
        self._store = DiskArtifactStore(cache_dir)
        self._client_factory = client_factory
        self._client: UpstreamGribClient | None = None
        self._fetchers: Dict[Product, DataFetcher] = {}
        self._guard = threading.Lock()

    @property
    def store(self) -> DiskArtifactStore:
        return self._store

    @property
    def product_ids(self) -> List[str]:
        return [product.value for product in Product]

    def get(self, product_id: str) -> DataFetcher | None:
        product = Product.lookup(product_id)
        if product is None:
            return None
        with self._guard:
            fetcher = self._fetchers.get(product)
            if fetcher is None:
                fetcher = self._create_fetcher(product)
                self._fetchers[product] = fetcher
                LOGGER.debug("Created fetcher product=%s", product.value)
            return fetcher

    def close(self) -> None:
        with self._guard:
            client = self._client
            self._client = None
            self._fetchers.clear()
        if client is not None:
            client.close()

    def _shared_client(self) -> UpstreamGribClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _create_fetcher(self, product: Product) -> DataFetcher:
        if product is Product.COLORRAMP:
            return ColorRampFetcher()
        if product is Product.WIND:
            return GfsDataFetcher(PRODUCT_METAS[product], WindEncoder(), self._shared_client(), self._store)
        if product is Product.CLOUD:
            return GfsDataFetcher(PRODUCT_METAS[product], CloudEncoder(), self._shared_client(), self._store)
        raise ValueError(f"Unhandled product: {product.value}")
