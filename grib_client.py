from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
import json
import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, Callable, Dict, List, Sequence

import numpy as np
import requests

from gfs_params import FetchParameters, Resolution, VariableConfig

GFS_FILTER_BASE_URL = os.getenv("GFS_FILTER_BASE_URL", "https://nomads.ncep.noaa.gov/cgi-bin/filter_gfs_")
GLOBAL_BBOX = "leftlon=0&rightlon=360&toplat=90&bottomlat=-90"
HTTP_TIMEOUT_SECONDS = float(os.getenv("GFS_HTTP_TIMEOUT_SECONDS", "60"))
GRIB_DUMP_COMMAND = tuple(shlex.split(os.getenv("GFS_GRIB_DUMP_COMMAND", "grib_dump -j -")))
DECODER_MAX_OUTPUT_BYTES = int(os.getenv("GFS_DECODER_MAX_OUTPUT_BYTES", str(50 * 2**20)))
MAX_CONCURRENT_DECODES = int(os.getenv("GFS_MAX_CONCURRENT_DECODES", "4"))
FETCH_WORKERS = int(os.getenv("GFS_FETCH_WORKERS", "6"))
READ_CHUNK_BYTES = 64 * 1024
LOGGER = logging.getLogger("gfs_textures.grib")


class GfsIngestionError(RuntimeError):
    """Base class for GFS ingestion failures."""


class UpstreamFetchError(GfsIngestionError):
    """Raised when the NOMADS download fails."""


class DecodeError(GfsIngestionError):
    """Raised when the decoder process fails or returns an unusable document."""


class EncodeError(GfsIngestionError):
    """Raised when an artifact cannot be encoded or persisted."""


class BuildCancelledError(GfsIngestionError):
    """Raised when the owner of a build cancels it."""


@dataclass(frozen=True, eq=False)
class GridField:
    """One decoded GRIB message.

    ``values`` keeps the decoder's column order with column 0 at longitude 0;
    the half-width longitude shift is applied by ``grid_projection.project``
    when the field is encoded.
    """

    variable: str
    level: str
    width: int
    height: int
    minimum: float
    maximum: float
    values: np.ndarray


def _feed_stdin(stream: IO[bytes], payload: bytes) -> None:
    try:
        stream.write(payload)
    except BrokenPipeError:
        LOGGER.debug("Decoder closed stdin before consuming %d bytes", len(payload))
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


def _drain(stream: IO[bytes], sink: List[bytes]) -> None:
    sink.append(stream.read())
    stream.close()


def _stat_or_default(value: object, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if np.isfinite(number) else fallback


class UpstreamGribClient:
    """Downloads GFS subsets from the NOMADS filter and decodes them with an external grib_dump."""

    def __init__(
        self,
        base_url: str = GFS_FILTER_BASE_URL,
        session: requests.Session | None = None,
        decoder_command: Sequence[str] = GRIB_DUMP_COMMAND,
        timeout: float | None = HTTP_TIMEOUT_SECONDS,
        max_output_bytes: int = DECODER_MAX_OUTPUT_BYTES,
        max_concurrent_decodes: int = MAX_CONCURRENT_DECODES,
        fetch_workers: int = FETCH_WORKERS,
    ) -> None:
        self._base_url = base_url
        self._session = session or requests.Session()
        self._decoder_command = tuple(decoder_command)
        self._timeout = timeout
        self._max_output_bytes = int(max_output_bytes)
        self._decode_slots = threading.BoundedSemaphore(max(1, int(max_concurrent_decodes)))
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(fetch_workers)),
            thread_name_prefix="grib-fetch",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=False)
        self._session.close()

    def request_url(self, params: FetchParameters) -> str:
        res = params.resolution.value
        run = params.run_slot.value
        # 0.5 degree files are published under the pgrb2full name.
        full = "full" if params.resolution is Resolution.MEDIUM else ""
        return (
            f"{self._base_url}{res}.pl?file=gfs.t{run}z.pgrb2{full}.{res}.f{params.forecast_hour:03d}"
            f"&{GLOBAL_BBOX}&dir=%2Fgfs.{params.date}%2F{run}%2Fatmos"
        )

    @staticmethod
    def variable_url(url_base: str, config: VariableConfig) -> str:
        return f"{url_base}&{config.level.value}=on&var_{config.variable.value}=on"

    def fetch_variables(
        self,
        params: FetchParameters,
        on_stage: Callable[[str], None] | None = None,
    ) -> List[GridField]:
        url_base = self.request_url(params)
        futures = [
            self._executor.submit(self.fetch_variable, url_base, config, on_stage)
            for config in params.variable_configs
        ]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [future for future in futures if future in done and future.exception() is not None]
        if failed:
            # Siblings must finish before the key is released for a retry.
            for future in pending:
                future.cancel()
            wait(pending)
            LOGGER.debug(
                "Variable fetch failed url=%s cancelled=%d",
                url_base,
                sum(1 for future in pending if future.cancelled()),
            )
            raise failed[0].exception()
        return [future.result() for future in futures]

    def fetch_variable(
        self,
        url_base: str,
        config: VariableConfig,
        on_stage: Callable[[str], None] | None = None,
    ) -> GridField:
        url = self.variable_url(url_base, config)
        if on_stage is not None:
            on_stage("downloading")
        raw = self.download(url)
        if on_stage is not None:
            on_stage("decoding")
        decoded = self.run_decoder(raw)
        field = self.parse_decoded(decoded, config)
        LOGGER.info(
            "Decoded GFS field var=%s level=%s grid=%dx%d min=%s max=%s",
            config.variable.value,
            config.level.value,
            field.width,
            field.height,
            field.minimum,
            field.maximum,
        )
        return field

    def download(self, url: str) -> bytes:
        LOGGER.debug("Downloading GFS subset url=%s", url)
        try:
            response = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            raise UpstreamFetchError(f"GFS download failed url={url}: {exc}") from exc
        if not 200 <= int(response.status_code) < 300:
            raise UpstreamFetchError(f"GFS download failed status={response.status_code} url={url}")
        return response.content

    def run_decoder(self, raw: bytes) -> bytes:
        with self._decode_slots:
            try:
                proc = subprocess.Popen(
                    self._decoder_command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                raise DecodeError(f"Failed to start decoder command={' '.join(self._decoder_command)}: {exc}") from exc

            stderr_chunks: List[bytes] = []
            feeder = threading.Thread(target=_feed_stdin, args=(proc.stdin, raw), name="grib-decode-stdin", daemon=True)
            drainer = threading.Thread(target=_drain, args=(proc.stderr, stderr_chunks), name="grib-decode-stderr", daemon=True)
            feeder.start()
            drainer.start()

            chunks: List[bytes] = []
            total = 0
            overflow = False
            try:
                while True:
                    chunk = proc.stdout.read(READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > self._max_output_bytes:
                        overflow = True
                        proc.kill()
                        break
                    chunks.append(chunk)
            except BaseException:
                proc.kill()
                raise
            finally:
                proc.stdout.close()
                returncode = proc.wait()
                feeder.join()
                drainer.join()

        if overflow:
            raise DecodeError(f"Decoder output exceeded {self._max_output_bytes} bytes")
        if returncode != 0:
            stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
            raise DecodeError(f"Decoder exited with status={returncode}: {stderr[:500]}")
        return b"".join(chunks)

    @staticmethod
    def parse_decoded(payload: bytes, config: VariableConfig) -> GridField:
        try:
            document = json.loads(payload)
            records = document["messages"][0]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise DecodeError(f"Malformed decoder output for var={config.variable.value}: {exc}") from exc

        message: Dict[str, object] = {}
        for record in records:
            if isinstance(record, dict) and "key" in record:
                message[str(record["key"])] = record.get("value")

        try:
            width = int(message["Ni"])
            height = int(message["Nj"])
            values = np.asarray(
                [np.nan if value is None else value for value in message["values"]],
                dtype=np.float64,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Decoded message for var={config.variable.value} lacks grid keys: {exc}") from exc

        if width <= 0 or height <= 1 or values.size != width * height:
            raise DecodeError(
                f"Decoded grid for var={config.variable.value} has {values.size} values, expected {width}x{height}"
            )

        grid = values.reshape(height, width)
        finite = grid[np.isfinite(grid)]
        fallback_min = float(finite.min()) if finite.size else 0.0
        fallback_max = float(finite.max()) if finite.size else 0.0
        return GridField(
            variable=config.variable.value,
            level=config.level.value,
            width=width,
            height=height,
            minimum=_stat_or_default(message.get("minimum"), fallback_min),
            maximum=_stat_or_default(message.get("maximum"), fallback_max),
            values=grid,
        )
