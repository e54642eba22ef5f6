from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path

from rich.console import Console

from .config import EngineSettings, TrajectoryPoint
from .engine import AudioEngine
from .logging_utils import DEBUG_ENV, configure_logging, log_exception
from .patterns import DEFAULT_PATTERN
from .spinner import Spinner, render_error
from .trajectory import load_trajectory, lorenz_trajectory

_LOGGER = logging.getLogger("attractorscore.cli")
_CONSOLE = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="attractorscore")
    parser.add_argument("--url", type=str, default=None, help="Pattern store URL.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("patterns", help="List available patterns.")

    render = sub.add_parser("render", help="Render a pattern to an audio file.")
    render.add_argument("--pattern", type=str, default=DEFAULT_PATTERN)
    render.add_argument("--duration", type=float, default=16.0)
    render.add_argument("--bpm", type=float, default=None)
    render.add_argument("--seed", type=int, default=None)
    render.add_argument("--sample-rate", type=int, default=None)
    render.add_argument(
        "--attractor-volume",
        type=float,
        default=None,
        help="Attractor voice level in dB (silent by default).",
    )
    source = render.add_mutually_exclusive_group()
    source.add_argument("--trajectory", type=Path, default=None)
    source.add_argument("--lorenz", action="store_true", help="Drive the attractor with a Lorenz orbit.")
    render.add_argument("--output", type=str, default="attractorscore.wav")

    play = sub.add_parser("play", help="Play a pattern on the default audio device.")
    play.add_argument("--pattern", type=str, default=DEFAULT_PATTERN)
    play.add_argument("--duration", type=float, default=30.0)
    play.add_argument("--bpm", type=float, default=None)
    return parser


def _build_engine(args: argparse.Namespace) -> AudioEngine:
    settings = EngineSettings.from_env(
        bpm=getattr(args, "bpm", None),
        seed=getattr(args, "seed", None),
        sample_rate=getattr(args, "sample_rate", None),
        patterns_url=args.url,
    )
    engine = AudioEngine(settings)
    if settings.patterns_url:
        with Spinner("Loading patterns"):
            engine.load_patterns()
    return engine


def _select_pattern(engine: AudioEngine, name: str) -> None:
    if name not in engine.library:
        _CONSOLE.print(f"[yellow]Unknown pattern {name!r}; using {engine.current_pattern_name!r}[/yellow]")
        return
    engine.set_pattern(name)


def _trajectory_for(args: argparse.Namespace) -> list[TrajectoryPoint] | None:
    if args.trajectory is not None:
        return load_trajectory(args.trajectory)
    if args.lorenz:
        return lorenz_trajectory(args.duration)
    return None


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        if args.command == "patterns":
            engine = _build_engine(args)
            for name in engine.library.names():
                pattern = engine.library.get(name)
                assert pattern is not None
                _CONSOLE.print(f"{name} ({len(pattern)} bars)")
            return 0

        if args.command == "render":
            engine = _build_engine(args)
            _select_pattern(engine, args.pattern)
            if args.attractor_volume is not None:
                engine.set_volume("attractor", args.attractor_volume)
            trajectory = _trajectory_for(args)
            with Spinner(f"Rendering {engine.current_pattern_name}"):
                buffer = engine.render_offline(args.duration, trajectory)
            path = buffer.save(args.output)
            _CONSOLE.print(f"Wrote {buffer.duration:.2f}s to {path} (sr={buffer.sample_rate})")
            return 0

        if args.command == "play":
            engine = _build_engine(args)
            _select_pattern(engine, args.pattern)
            engine.init()
            try:
                engine.start()
                _CONSOLE.print(f"Playing {engine.current_pattern_name} for {args.duration:g}s")
                time.sleep(args.duration)
                engine.stop()
            finally:
                engine.close()
            return 0

        parser.print_help()
        return 1
    except Exception as exc:
        debug = bool(os.environ.get(DEBUG_ENV))
        _LOGGER.warning("attractorscore CLI failed: %s", exc, exc_info=debug)
        log_exception("attractorscore CLI", exc)
        render_error("attractorscore CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
