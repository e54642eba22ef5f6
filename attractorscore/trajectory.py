from __future__ import annotations

import csv
import json
import logging
from pathlib import Path

import numpy as np
from numpy.typing import NDArray

from .config import TrajectoryPoint, parse_trajectory
from .errors import InvalidConfigError

_LOGGER = logging.getLogger("attractorscore.trajectory")

DEFAULT_RATE = 20.0
_SUBSTEPS = 10


def load_trajectory(path: str | Path) -> list[TrajectoryPoint]:
    """Read ``{time, x, y, z}`` samples from a JSON list or a CSV with those columns."""

    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidConfigError(f"Cannot read trajectory {source}: {exc}") from exc

    if source.suffix.lower() == ".csv":
        rows: list[dict[str, str]] = list(csv.DictReader(text.splitlines()))
        payload: object = [{key.strip(): value for key, value in row.items() if key} for row in rows]
    else:
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise InvalidConfigError(f"Trajectory {source} is not valid JSON: {exc}") from exc
        if isinstance(payload, dict) and "trajectory" in payload:
            payload = payload["trajectory"]

    points = parse_trajectory(payload)
    _LOGGER.info("Loaded %d trajectory points from %s", len(points), source)
    return points


def _lorenz_step(
    state: NDArray[np.float64],
    dt: float,
    sigma: float,
    rho: float,
    beta: float,
) -> NDArray[np.float64]:
    def _deriv(s: NDArray[np.float64]) -> NDArray[np.float64]:
        x, y, z = s
        return np.array([sigma * (y - x), x * (rho - z) - y, x * y - beta * z])

    k1 = _deriv(state)
    k2 = _deriv(state + 0.5 * dt * k1)
    k3 = _deriv(state + 0.5 * dt * k2)
    k4 = _deriv(state + dt * k3)
    return state + (dt / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)


def lorenz_trajectory(
    duration: float,
    *,
    rate: float = DEFAULT_RATE,
    sigma: float = 10.0,
    rho: float = 28.0,
    beta: float = 8.0 / 3.0,
    initial: tuple[float, float, float] = (0.1, 0.0, 0.0),
    speed: float = 0.25,
) -> list[TrajectoryPoint]:
    """Sample a Lorenz orbit at ``rate`` points per second of audio.

    ``speed`` is simulated time per second of audio. Each sample is reached
    with several RK4 substeps to keep the integration stable.
    """

    if not duration > 0 or not rate > 0:
        raise InvalidConfigError("duration and rate must be positive")
    count = int(duration * rate) + 1
    dt = speed / rate / _SUBSTEPS
    state = np.asarray(initial, dtype=np.float64)
    points: list[TrajectoryPoint] = []
    for index in range(count):
        x, y, z = (float(value) for value in state)
        points.append(TrajectoryPoint(time=index / rate, x=x, y=y, z=z))
        for _ in range(_SUBSTEPS):
            state = _lorenz_step(state, dt, sigma, rho, beta)
    return points
