"""Load a Waymo v2 segment, prefetch every frame and report decode timing.

Decodes all lidar row groups on the worker pool, optionally simulates
real-time playback over the cached frames, and can export them to PLY.

Usage:
    python run_replay.py
    python run_replay.py --config replay.yaml --playback 100
    python run_replay.py --backend cpu --export-ply data/processed/ply
"""

from __future__ import annotations

import argparse
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np

from replay.config import load_config
from replay.numba_kernels import warmup_numba
from replay.parquet_io import camera_label
from replay.ply_export import export_frames
from replay.session import ReplaySession

CONFIG_PATH = "replay.yaml"


@dataclass
class PlaybackStats:
    """Cursor moves collected while simulating playback."""

    shown: int = 0
    misses: int = 0
    points: list[int] = field(default_factory=list)

    def record(self, frame) -> None:
        self.shown += 1
        self.points.append(frame.point_count)


def _print_header(cfg) -> None:
    print("=" * 70)
    print("WAYMO LIDAR REPLAY")
    print("=" * 70)
    print(f"  Segment: {cfg.dataset.segment_id}")
    print(f"  Data dir: {cfg.dataset.data_dir}")
    print(f"  Workers: {cfg.pool.workers}  eager units: {cfg.pool.eager_units}  "
          f"prefetch: {cfg.pool.prefetch}  camera workers: {cfg.pool.camera_workers}")
    print(f"  Backend: {cfg.converter.backend} (threads/block {cfg.converter.threads_per_block})")


def _simulate_playback(session: ReplaySession, n_frames: int, fps: float) -> PlaybackStats:
    """Step the cursor forward at fps, counting frames that were not cached yet."""
    stats = PlaybackStats()
    unsubscribe = session.subscribe(lambda _index, frame: stats.record(frame))
    period_s = 1.0 / fps
    try:
        session.load_frame(0)
        for _ in range(n_frames - 1):
            t0 = time.perf_counter()
            if not session.next_frame():
                if session.current_index is not None and session.current_index >= session.total_frames - 1:
                    break
                stats.misses += 1
            slack = period_s - (time.perf_counter() - t0)
            if slack > 0:
                time.sleep(slack)
    finally:
        unsubscribe()
    return stats


def _print_summary(session: ReplaySession, load_s: float, prefetch_s: float, complete: bool) -> None:
    tel = session.telemetry
    cached = session.cached_frames()
    counts = np.array([session.get_frame(i).point_count for i in cached], dtype=np.int64)

    print(f"\n-- Summary --")
    print(f"  Load (eager units): {load_s * 1000:.0f} ms")
    print(f"  Prefetch: {prefetch_s:.1f}s ({'complete' if complete else 'INCOMPLETE'})")
    print(f"  Frames cached: {len(cached)}/{session.total_frames}")
    print(f"  Units: {tel.units_loaded} loaded, {tel.units_failed} failed, {session.num_units} total")
    if session.num_camera_units:
        print(f"  Camera units: {tel.camera_units_loaded} loaded, {tel.camera_units_failed} failed, "
              f"{session.num_camera_units} total; {len(session.camera_frames())} frames with images")
    print(f"  Backend: {tel.backend}")
    print(f"  Last unit: decode={tel.last_decode_ms:.1f} ms  convert={tel.last_convert_ms:.1f} ms")
    if counts.size > 0:
        print(f"  Points/frame: mean={counts.mean():,.0f}  min={counts.min():,}  max={counts.max():,}")


def main():
    parser = argparse.ArgumentParser(description="Waymo LiDAR replay")
    parser.add_argument("--config", default=CONFIG_PATH)
    parser.add_argument("--backend", choices=["auto", "cpu", "gpu"], default=None,
                        help="Override converter.backend from the config")
    parser.add_argument("--playback", type=int, default=0, metavar="N",
                        help="Simulate real-time playback of N frames after prefetch")
    parser.add_argument("--export-ply", type=str, default=None, metavar="DIR",
                        help="Write every cached frame as PLY into DIR")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Give up waiting for prefetch after this many seconds")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = load_config(args.config)
    if args.backend is not None:
        cfg.converter = replace(cfg.converter, backend=args.backend)
    _print_header(cfg)

    # Warm up JIT kernels once so the first unit is not dominated by
    # compilation latency.
    print("\n-- Warmup --")
    print(f"  numba: {warmup_numba():.2f}s")

    print("\n-- Loading --")
    with ReplaySession.from_config(cfg) as session:
        t0 = time.perf_counter()
        total = session.load_config(cfg)
        load_s = time.perf_counter() - t0
        print(f"  {total} frames in {session.num_units} units, "
              f"{len(session.cached_frames())} cached after eager load")

        t0 = time.perf_counter()
        complete = session.wait_for_prefetch(timeout=args.timeout)
        prefetch_s = time.perf_counter() - t0

        if args.playback > 0:
            print(f"\n-- Playback ({args.playback} frames @ {cfg.playback.fps:g} fps) --")
            stats = _simulate_playback(session, args.playback, cfg.playback.fps)
            print(f"  shown={stats.shown}  misses={stats.misses}")
            frame = session.current_frame
            if frame is not None:
                cameras = ", ".join(camera_label(c) for c in sorted(frame.camera_images)) or "none"
                print(f"  Stopped at frame {frame.frame_index}: {frame.point_count:,} points, cameras: {cameras}")

        _print_summary(session, load_s, prefetch_s, complete)

        if args.export_ply:
            frames = [session.get_frame(i) for i in session.cached_frames()]
            paths = export_frames(frames, Path(args.export_ply))
            print(f"\n  Exported {len(paths)} PLY files to {args.export_ply}")


if __name__ == "__main__":
    main()
