"""Configuration: load replay.yaml into typed dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .converter import BACKENDS, BACKEND_AUTO
from .gpu_backend import DEFAULT_THREADS_PER_BLOCK
from .worker_pool import DEFAULT_CONCURRENCY

WARP_SIZE = 32


@dataclass
class DatasetConfig:
    data_dir: Path
    segment_id: str


@dataclass
class PoolConfig:
    workers: int = DEFAULT_CONCURRENCY
    eager_units: int = 2       # units decoded before the dataset is declared ready
    prefetch: bool = True      # request every remaining unit in the background
    camera_workers: int = 2    # camera_image decode threads; 0 skips camera images


@dataclass
class ConverterConfig:
    backend: str = BACKEND_AUTO    # "auto", "cpu" or "gpu"
    threads_per_block: int = DEFAULT_THREADS_PER_BLOCK


@dataclass
class PlaybackConfig:
    fps: float = 10.0


@dataclass
class ReplayConfig:
    dataset: DatasetConfig
    pool: PoolConfig = field(default_factory=PoolConfig)
    converter: ConverterConfig = field(default_factory=ConverterConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)


def _validate(cfg: ReplayConfig) -> None:
    """Validate config values. Raises ValueError on bad input."""
    if not cfg.dataset.segment_id:
        raise ValueError("Dataset segment_id must not be empty")
    if cfg.pool.workers < 1:
        raise ValueError(f"Pool workers must be >= 1, got {cfg.pool.workers}")
    if cfg.pool.eager_units < 0:
        raise ValueError(f"Pool eager_units must be >= 0, got {cfg.pool.eager_units}")
    if cfg.pool.camera_workers < 0:
        raise ValueError(f"Pool camera_workers must be >= 0, got {cfg.pool.camera_workers}")
    if cfg.converter.backend not in BACKENDS:
        raise ValueError(f"Unsupported converter backend: {cfg.converter.backend!r}")
    tpb = cfg.converter.threads_per_block
    if tpb <= 0 or tpb % WARP_SIZE != 0:
        raise ValueError(f"Threads per block must be a positive multiple of {WARP_SIZE}, got {tpb}")
    if cfg.playback.fps <= 0:
        raise ValueError(f"Playback fps must be positive, got {cfg.playback.fps}")


def load_config(path: str | Path) -> ReplayConfig:
    """Load replay.yaml and return a fully typed ReplayConfig."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    ds = raw["dataset"]
    dataset = DatasetConfig(data_dir=Path(ds["data_dir"]), segment_id=str(ds["segment_id"]))

    # Optional sections fall back to dataclass defaults.
    pool = raw.get("pool") or {}
    converter = raw.get("converter") or {}
    playback = raw.get("playback") or {}

    cfg = ReplayConfig(
        dataset=dataset,
        pool=PoolConfig(
            workers=int(pool.get("workers", DEFAULT_CONCURRENCY)),
            eager_units=int(pool.get("eager_units", 2)),
            prefetch=bool(pool.get("prefetch", True)),
            camera_workers=int(pool.get("camera_workers", 2)),
        ),
        converter=ConverterConfig(
            backend=str(converter.get("backend", BACKEND_AUTO)),
            threads_per_block=int(converter.get("threads_per_block", DEFAULT_THREADS_PER_BLOCK)),
        ),
        playback=PlaybackConfig(fps=float(playback.get("fps", 10.0))),
    )
    _validate(cfg)
    return cfg
