import asyncio
import logging

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from auris import waveform_render
from auris.level_meter import LevelMeter
from auris.waveform_render import PeakFetchError, PlayerState, ThemeColors, WaveformPlayer

COLORS = ThemeColors(played="#3b82f6", unplayed="#4b5563", background="#0a0a0a")
PLAYED = (0x3B, 0x82, 0xF6)
UNPLAYED = (0x4B, 0x55, 0x63)


class FakeScheduler:
    def __init__(self):
        self.pending = {}
        self.cancelled = []
        self._next = 0

    def request_frame(self, callback):
        self._next += 1
        self.pending[self._next] = callback
        return self._next

    def cancel(self, handle):
        self.cancelled.append(handle)
        self.pending.pop(handle, None)

    def tick(self, timestamp=0.0):
        callbacks = list(self.pending.values())
        self.pending.clear()
        for callback in callbacks:
            callback(timestamp)


class FakeSource:
    def __init__(self, duration=100.0):
        self.current_time = 0.0
        self.duration = duration
        self.playing = False
        self.seeks = []

    def play(self):
        self.playing = True

    def pause(self):
        self.playing = False

    def seek(self, seconds):
        self.seeks.append(seconds)
        self.current_time = seconds


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _player(**kwargs):
    source = kwargs.pop("source", None) or FakeSource()
    scheduler = FakeScheduler()
    player = WaveformPlayer(source, scheduler, COLORS, width=100, height=40, **kwargs)
    return player, source, scheduler


def _played_columns(player):
    return sum(1 for x in range(player.buffer.width) if player.buffer.color_at(x + 0.5, 20) == PLAYED)


def test_idle_player_disables_controls():
    player, source, scheduler = _player()

    assert player.state is PlayerState.IDLE
    assert player.controls_enabled is False
    assert player.play() is False
    assert player.click(50) is None
    assert source.playing is False
    assert scheduler.pending == {}


def test_load_draws_initial_frame():
    player, _source, _scheduler = _player()

    player.load_peaks([0.5] * 1600)

    assert player.state is PlayerState.LOADED
    assert player.controls_enabled is True
    assert player.frames_drawn == 1
    assert player.progress == 0.0
    assert _played_columns(player) == 1

    with pytest.raises(ValueError):
        player.load_peaks([])


def test_play_runs_frame_loop_until_paused():
    player, source, scheduler = _player()
    player.load_peaks([0.5] * 200)

    assert player.play() is True
    assert player.state is PlayerState.PLAYING
    assert source.playing is True
    assert len(scheduler.pending) == 1

    source.current_time = 25.0
    scheduler.tick()
    assert player.progress == pytest.approx(0.25)
    assert len(scheduler.pending) == 1

    source.current_time = 30.0
    scheduler.tick()
    assert player.progress == pytest.approx(0.30)
    drawn = player.frames_drawn

    player.pause()
    assert player.state is PlayerState.PAUSED
    assert source.playing is False
    assert scheduler.pending == {}

    scheduler.tick()
    assert player.frames_drawn == drawn


def test_click_seeks_and_redraws_while_paused():
    player, source, scheduler = _player()
    player.load_peaks([0.5] * 1600)
    drawn = player.frames_drawn

    ratio = player.click(50)

    assert ratio == 0.5
    assert source.seeks == [50.0]
    assert player.progress == 0.5
    assert player.frames_drawn == drawn + 1
    assert player.time_text == "0:50 / 1:40"
    assert player.state is PlayerState.LOADED
    assert scheduler.pending == {}
    # bars 0..50 satisfy i / n <= 0.5
    assert _played_columns(player) == 51
    assert player.buffer.color_at(75.5, 20) == UNPLAYED


def test_click_clamps_to_surface():
    player, source, _scheduler = _player()
    player.load_peaks([0.5] * 10)

    assert player.click(-20) == 0.0
    assert player.click(250) == 1.0
    assert source.seeks == [0.0, 100.0]


def test_seek_requires_known_duration():
    player, source, _scheduler = _player(source=FakeSource(duration=float("nan")))
    player.load_peaks([0.5] * 10)

    assert player.seek_fraction(0.5) is None
    assert source.seeks == []


def test_end_of_playback_is_terminal_until_replay():
    ended = []
    player, source, scheduler = _player(on_ended=lambda: ended.append(True))
    player.load_peaks([0.5] * 100)
    player.play()

    source.current_time = 100.0
    scheduler.tick()

    assert player.state is PlayerState.ENDED
    assert player.progress == 1.0
    assert ended == [True]
    assert scheduler.pending == {}
    assert player.time_text == "1:40 / 1:40"
    assert _played_columns(player) == 100

    scheduler.tick()
    assert ended == [True]

    assert player.play() is True
    assert source.seeks[-1] == 0.0
    assert player.state is PlayerState.PLAYING


def test_ended_notification_cancels_loop():
    player, _source, scheduler = _player()
    player.load_peaks([0.5] * 100)
    player.play()

    player.ended()

    assert player.state is PlayerState.ENDED
    assert scheduler.pending == {}
    assert scheduler.cancelled


def test_resize_invalidates_buffer_and_redraws_at_current_progress():
    player, source, scheduler = _player()
    player.load_peaks([0.5] * 1600)
    player.click(50)
    player.resize(40, 20, pixel_ratio=2.0)

    assert len(scheduler.pending) == 1
    scheduler.tick()

    assert player.buffer.pixels.shape == (40, 80, 3)
    assert player.progress == 0.5
    assert source.current_time == 50.0


def test_time_text_is_throttled():
    clock = FakeClock()
    seen = []
    player, source, scheduler = _player(clock=clock, time_text_interval=0.25, on_time_text=seen.append)
    player.load_peaks([0.5] * 100)
    player.play()

    source.current_time = 1.0
    scheduler.tick()
    assert player.time_text == "0:01 / 1:40"

    clock.now = 0.1
    source.current_time = 2.0
    scheduler.tick()
    assert player.time_text == "0:01 / 1:40"

    clock.now = 0.3
    source.current_time = 3.0
    scheduler.tick()
    assert player.time_text == "0:03 / 1:40"
    assert seen == ["0:01 / 1:40", "0:03 / 1:40"]


def test_level_meter_follows_playback():
    meter = LevelMeter(clock=FakeClock())
    player, source, scheduler = _player(level_meter=meter, level_source=lambda: [0.5, -0.5])
    player.load_peaks([0.5] * 100)
    player.play()

    source.current_time = 10.0
    scheduler.tick()
    assert meter.reading.color == "yellow"
    assert meter.reading.text == "-6.0"

    player.pause()
    assert meter.reading.text == "-∞"
    assert meter.reading.percent == 0.0


def test_dispose_drops_late_peak_fetch(monkeypatch):
    gate = asyncio.Event()

    async def slow_fetch(session, url):
        await gate.wait()
        return [0.5] * 10

    monkeypatch.setattr(waveform_render, "fetch_peaks", slow_fetch)
    player, _source, scheduler = _player()

    async def runner():
        task = player.load_from_url(None, "/api/recordings/a.mp3/waveform")
        await asyncio.sleep(0)
        player.dispose()
        gate.set()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(runner())

    assert player.state is PlayerState.IDLE
    assert player.controls_enabled is False
    assert player.frames_drawn == 0
    assert scheduler.pending == {}


def test_failed_fetch_keeps_player_idle(monkeypatch, caplog):
    async def failing_fetch(session, url):
        raise PeakFetchError("Failed to load waveform (404)")

    monkeypatch.setattr(waveform_render, "fetch_peaks", failing_fetch)
    player, _source, _scheduler = _player()

    async def runner():
        await player.load_from_url(None, "/api/recordings/a.mp3/waveform")

    with caplog.at_level(logging.WARNING, logger="auris.render"):
        asyncio.run(runner())

    assert player.state is PlayerState.IDLE
    assert player.play() is False
    assert "404" in caplog.text


def test_successful_fetch_loads_peaks(monkeypatch):
    async def fetch(session, url):
        return [0.25, 0.75]

    monkeypatch.setattr(waveform_render, "fetch_peaks", fetch)
    player, _source, _scheduler = _player()

    async def runner():
        await player.load_from_url(None, "/api/recordings/a.mp3/waveform")

    asyncio.run(runner())

    assert player.state is PlayerState.LOADED
    assert player.frames_drawn == 1


def test_non_json_waveform_response_fails_load_cleanly(caplog):
    async def text_handler(request: web.Request) -> web.Response:
        return web.Response(text="not json")

    player, _source, _scheduler = _player()

    async def runner():
        app = web.Application()
        app.router.add_get("/waveform", text_handler)
        server = TestServer(app)
        client = TestClient(server)
        await client.start_server()
        try:
            task = player.load_from_url(client.session, str(server.make_url("/waveform")))
            await asyncio.gather(task, return_exceptions=True)
            return task
        finally:
            await client.close()
            await server.close()

    with caplog.at_level(logging.WARNING, logger="auris.render"):
        task = asyncio.run(runner())

    assert task.exception() is None
    assert player.state is PlayerState.IDLE
    assert player.controls_enabled is False
    assert "Waveform peaks unavailable" in caplog.text


def test_load_peaks_rejects_values_outside_unit_range():
    player, _source, _scheduler = _player()

    for bad in ([5.0, 0.5], [-0.1], [0.5, float("nan")], [float("inf")]):
        with pytest.raises(ValueError):
            player.load_peaks(bad)

    assert player.state is PlayerState.IDLE
    assert player.frames_drawn == 0


def test_asyncio_scheduler_runs_callbacks_on_loop():
    scheduler = waveform_render.AsyncioFrameScheduler(interval=0.001)
    seen = []

    async def runner():
        scheduler.request_frame(seen.append)
        handle = scheduler.request_frame(lambda ts: seen.append("cancelled"))
        scheduler.cancel(handle)
        await asyncio.sleep(0.05)

    asyncio.run(runner())

    assert len(seen) == 1
    assert isinstance(seen[0], float)

    with pytest.raises(ValueError):
        waveform_render.AsyncioFrameScheduler(interval=0)


def test_player_from_config_runs_on_event_loop():
    cfg = {"renderer": {"theme": "light", "frame_interval_sec": 0.001, "pixel_ratio": 2.0}}
    source = FakeSource(duration=10.0)

    async def runner():
        player = WaveformPlayer.from_config(source, cfg, width=50, height=20)
        player.load_peaks([0.5] * 50)
        player.play()
        source.current_time = 5.0
        await asyncio.sleep(0.05)
        source.current_time = 10.0
        await asyncio.sleep(0.05)
        return player

    player = asyncio.run(runner())

    assert player.state is PlayerState.ENDED
    assert player.buffer.pixels.shape == (40, 100, 3)
    assert player.buffer.color_at(0.5, 0) == (0xFF, 0xFF, 0xFF)
