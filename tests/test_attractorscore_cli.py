import json
from pathlib import Path

import pytest
import soundfile as sf

from attractorscore import cli


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ATTRACTORSCORE_LOG_DIR", str(tmp_path / "logs"))
    names = ("BPM", "SAMPLE_RATE", "BLOCK_SIZE", "SEED", "PATTERNS_URL", "ADMIN_PASSWORD", "DEBUG")
    for name in names:
        monkeypatch.delenv(f"ATTRACTORSCORE_{name}", raising=False)


def test_patterns_lists_defaults(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["patterns"]) == 0
    out = capsys.readouterr().out
    assert "Ethereal" in out
    assert "Drone (4 bars)" in out


def test_render_writes_wav(tmp_path: Path) -> None:
    target = tmp_path / "out.wav"
    code = cli.main(
        [
            "render",
            "--pattern",
            "Mystery",
            "--duration",
            "0.25",
            "--bpm",
            "120",
            "--seed",
            "4",
            "--sample-rate",
            "8000",
            "--output",
            str(target),
        ]
    )
    assert code == 0
    data, sample_rate = sf.read(target)
    assert sample_rate == 8_000
    assert data.shape == (2_000, 2)


def test_render_with_trajectory_file(tmp_path: Path) -> None:
    trajectory = tmp_path / "orbit.json"
    trajectory.write_text(json.dumps([{"time": 0.0, "x": 4, "y": 5, "z": 6}]))
    target = tmp_path / "orbit.wav"
    code = cli.main(
        [
            "render",
            "--duration",
            "0.2",
            "--sample-rate",
            "8000",
            "--attractor-volume",
            "-12",
            "--trajectory",
            str(trajectory),
            "--output",
            str(target),
        ]
    )
    assert code == 0
    assert target.stat().st_size > 44


def test_render_with_lorenz(tmp_path: Path) -> None:
    target = tmp_path / "lorenz.wav"
    code = cli.main(
        ["render", "--duration", "0.2", "--sample-rate", "8000", "--lorenz", "--output", str(target)]
    )
    assert code == 0
    assert target.exists()


def test_render_error_returns_one(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(
        ["render", "--duration", "-1", "--sample-rate", "8000", "--output", str(tmp_path / "x.wav")]
    )
    assert code == 1
    assert "RenderError" in capsys.readouterr().err
    log_file = tmp_path / "logs" / "attractorscore.log"
    assert "attractorscore CLI failed" in log_file.read_text()


def test_unknown_pattern_falls_back(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    target = tmp_path / "fallback.wav"
    code = cli.main(
        [
            "render",
            "--pattern",
            "Nope",
            "--duration",
            "0.1",
            "--sample-rate",
            "8000",
            "--output",
            str(target),
        ]
    )
    assert code == 0
    assert "Unknown pattern" in capsys.readouterr().out
