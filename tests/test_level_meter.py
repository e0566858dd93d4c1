import pytest

from auris.level_meter import LevelMeter, level_color, rms_db


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_silence_reads_negative_infinity():
    meter = LevelMeter(clock=FakeClock())

    reading = meter.update([0.0, 0.0, 0.0])

    assert reading.text == "-∞"
    assert reading.db == -60.0
    assert reading.percent == 0.0
    assert reading.color == "green"
    assert meter.update([]).text == "-∞"


@pytest.mark.parametrize(
    ("amplitude", "color", "percent"),
    [(1.0, "red", 100.0), (0.5, "yellow", 89.97), (0.1, "green", 66.67), (0.0001, "green", 0.0)],
)
def test_levels_map_to_bar_and_color(amplitude, color, percent):
    meter = LevelMeter(clock=FakeClock())

    reading = meter.update([amplitude, -amplitude] * 64)

    assert reading.color == color
    assert reading.percent == pytest.approx(percent, abs=0.01)


def test_level_color_thresholds():
    assert level_color(-2.9) == "red"
    assert level_color(-3.0) == "yellow"
    assert level_color(-11.9) == "yellow"
    assert level_color(-12.0) == "green"


def test_rms_db():
    assert rms_db([0.5, -0.5]) == pytest.approx(-6.0206, abs=1e-3)
    assert rms_db([0.0]) == float("-inf")


def test_numeric_text_refresh_is_throttled():
    clock = FakeClock()
    meter = LevelMeter(clock=clock, text_interval=0.3)

    assert meter.update([0.5, -0.5]).text == "-6.0"

    clock.now = 0.1
    reading = meter.update([0.1, -0.1])
    assert reading.text == "-6.0"
    assert reading.color == "green"

    clock.now = 0.4
    assert meter.update([0.1, -0.1]).text == "-20.0"


def test_reset_returns_to_silence():
    meter = LevelMeter(clock=FakeClock())
    meter.update([1.0, -1.0])

    reading = meter.reset()

    assert reading.text == "-∞"
    assert reading.percent == 0.0
    assert meter.reading == reading
