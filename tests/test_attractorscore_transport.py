import pytest

from attractorscore.errors import InvalidConfigError
from attractorscore.transport import (
    PPQ,
    TICKS_PER_BAR,
    Transport,
    bar_index,
    to_seconds,
    to_ticks,
)


@pytest.mark.parametrize(
    ("notation", "ticks"),
    [
        ("1m", TICKS_PER_BAR),
        ("2m", 2 * TICKS_PER_BAR),
        ("4n", PPQ),
        ("8n", PPQ // 2),
        ("16n", PPQ // 4),
        ("8n.", PPQ * 3 // 4),
        ("96t", 96),
    ],
)
def test_to_ticks_notation(notation: str, ticks: int) -> None:
    assert to_ticks(notation, bpm=120) == ticks


def test_seconds_depend_on_tempo() -> None:
    assert to_ticks(1.0, bpm=60) == PPQ
    assert to_seconds("1m", bpm=60) == pytest.approx(4.0)
    assert to_seconds("1m", bpm=120) == pytest.approx(2.0)
    assert to_seconds(0.75, bpm=120) == 0.75


def test_to_ticks_rejects_garbage() -> None:
    with pytest.raises(InvalidConfigError):
        to_ticks("soon", bpm=60)
    with pytest.raises(InvalidConfigError):
        to_ticks(-1.0, bpm=60)


def test_bar_index_wraps() -> None:
    assert bar_index(0, 4) == 0
    assert bar_index(TICKS_PER_BAR - 1, 4) == 0
    assert bar_index(TICKS_PER_BAR, 4) == 1
    assert bar_index(5 * TICKS_PER_BAR + 10, 4) == 1


def _run(
    transport: Transport, seconds: float, *, start: int = 0, sample_rate: int = 1_000, step: int = 16
) -> int:
    frame = start
    end = start + int(round(seconds * sample_rate))
    while frame < end:
        count = min(step, end - frame)
        transport.advance(frame, count, sample_rate)
        frame += count
    return frame


def test_repeating_loop_fires_on_bar_lines() -> None:
    transport = Transport(bpm=120)
    fired: list[tuple[float, int]] = []
    transport.schedule_repeating("1m", lambda time, tick: fired.append((time, tick)))
    transport.start(0.0)
    _run(transport, 6.0)

    assert [tick for _, tick in fired] == [0, TICKS_PER_BAR, 2 * TICKS_PER_BAR]
    assert [time for time, _ in fired] == pytest.approx([0.0, 2.0, 4.0], abs=1e-6)


def test_loop_boundary_is_exclusive() -> None:
    transport = Transport(bpm=60)
    fired: list[int] = []
    transport.schedule_repeating("1m", lambda time, tick: fired.append(tick))
    transport.start(0.0)
    _run(transport, 4.0)
    assert fired == [0]


def test_stopped_transport_does_not_fire() -> None:
    transport = Transport(bpm=120)
    fired: list[int] = []
    transport.schedule_repeating("4n", lambda time, tick: fired.append(tick))
    _run(transport, 1.0)
    assert fired == []
    assert transport.ticks == 0


def test_loops_sharing_a_tick_fire_in_registration_order() -> None:
    transport = Transport(bpm=120)
    order: list[str] = []
    transport.schedule_repeating("1m", lambda time, tick: order.append(f"bar{tick}"))
    transport.schedule_repeating("2n", lambda time, tick: order.append(f"half{tick}"))
    transport.start(0.0)
    _run(transport, 1.5)
    assert order == ["bar0", "half0", "half384"]


def test_cancelled_handle_stops_firing() -> None:
    transport = Transport(bpm=120)
    fired: list[int] = []
    handle = transport.schedule_repeating("4n", lambda time, tick: fired.append(tick))
    transport.start(0.0)
    frame = _run(transport, 0.6)
    handle.cancel()
    _run(transport, 0.6, start=frame)
    assert fired == [0, PPQ]
    assert transport.loops == ()


def test_cancel_disposes_every_loop() -> None:
    transport = Transport()
    first = transport.schedule_repeating("1m", lambda time, tick: None)
    second = transport.schedule_repeating("8n", lambda time, tick: None)
    transport.cancel()
    assert not first.active
    assert not second.active
    assert transport.loops == ()


def test_stop_rewinds_position() -> None:
    transport = Transport(bpm=120)
    transport.start(0.0)
    _run(transport, 2.5)
    assert transport.position.startswith("1:")
    transport.stop(2.5)
    assert transport.ticks == 0
    assert transport.position == "0:0:0"


def test_bar_line_lands_on_a_whole_tick() -> None:
    transport = Transport(bpm=60)
    fired: list[int] = []
    transport.schedule_repeating("1m", lambda time, tick: fired.append(tick))
    transport.start(0.0)
    # 1378.125 blocks of 128 frames at 44.1 kHz is exactly one bar.
    _run(transport, 4.0, sample_rate=44_100, step=128)
    assert transport.ticks == TICKS_PER_BAR
    assert transport.position == "1:0:0"
    assert fired == [0]


@pytest.mark.parametrize("sample_rate", [22_050, 44_100, 48_000])
@pytest.mark.parametrize("bpm", [60.0, 90.0, 120.0, 133.0])
@pytest.mark.parametrize("bars", [1, 2, 3, 5])
def test_bar_loop_fires_once_per_bar(sample_rate: int, bpm: float, bars: int) -> None:
    transport = Transport(bpm=bpm)
    fired: list[int] = []
    transport.schedule_repeating("1m", lambda time, tick: fired.append(tick))
    transport.start(0.0)
    _run(transport, bars * 4 * 60 / bpm, sample_rate=sample_rate, step=128)
    assert fired == [bar * TICKS_PER_BAR for bar in range(bars)]


def test_tempo_change_reanchors_playhead() -> None:
    transport = Transport(bpm=60)
    transport.start(0.0)
    frame = _run(transport, 1.0)
    assert transport.ticks == PPQ
    transport.bpm.value = 120
    _run(transport, 1.0, start=frame)
    assert transport.ticks == 3 * PPQ


def test_restart_anchors_at_the_current_frame() -> None:
    transport = Transport(bpm=60)
    fired: list[int] = []
    transport.schedule_repeating("4n", lambda time, tick: fired.append(tick))
    transport.start(0.0)
    frame = _run(transport, 0.5)
    transport.stop(0.5)
    transport.start(0.5)
    _run(transport, 1.5, start=frame)
    assert fired == [0, 0, PPQ]
