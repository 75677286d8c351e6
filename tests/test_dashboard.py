import pytest

from movesense_receiver.dashboard import DashboardApp, ReadingHistory
from movesense_receiver.dashboard.plots import (
    EMPTY_TEXT,
    create_accelerometer_plot,
    create_ecg_plot,
    create_multi_plot_layout,
)
from movesense_receiver.link import MockLinkFactory
from movesense_receiver.models import (
    AccelerometerReading,
    EcgReading,
    HeartRateReading,
    Origin,
    SensorKind,
    TemperatureReading,
    Vector3,
)
from movesense_receiver.session import MovesenseSession


def accel(t, x=0.0):
    return AccelerometerReading.from_samples(t, (Vector3(x, 0.0, 1.0),))


def test_history_keeps_last_readings_per_kind():
    history = ReadingHistory(max_size=3)
    for t in range(5):
        history(accel(float(t)))
    history(TemperatureReading(9.0, 30.0))

    assert [r.timestamp for r in history.recent(SensorKind.ACCELEROMETER)] == [2.0, 3.0, 4.0]
    assert [r.timestamp for r in history.recent(SensorKind.ACCELEROMETER, 1)] == [4.0]
    assert len(history.recent(SensorKind.TEMPERATURE)) == 1


def test_history_ecg_trace_skips_synthetic_samples():
    history = ReadingHistory(ecg_max_samples=4)
    history(EcgReading(0.0, (1, 2, 3)))
    history(EcgReading(1.0, (-5,), Origin.SYNTHETIC))
    history(EcgReading(2.0, (4, 5)))
    assert history.ecg_samples() == [2, 3, 4, 5]


def test_history_stats_and_clear():
    history = ReadingHistory()
    history(HeartRateReading(1.0, 72.0, Origin.SYNTHETIC))
    history(HeartRateReading(2.0, 70.0))

    stats = history.stats
    assert stats.total_readings == 2
    assert stats.synthetic_readings == 1
    assert stats.per_kind == {SensorKind.HEART_RATE: 2}
    assert stats.last_timestamp == 2.0

    history.clear()
    assert history.stats.total_readings == 0
    assert history.recent(SensorKind.HEART_RATE) == []


def test_empty_plots_show_placeholder():
    for fig in (create_accelerometer_plot([]), create_ecg_plot([]), create_multi_plot_layout([], [], [], [])):
        # subplot titles are annotations too
        assert EMPTY_TEXT in [a.text for a in fig.layout.annotations]


def test_accelerometer_plot_uses_relative_seconds():
    fig = create_accelerometer_plot([accel(1000.0, 0.1), accel(1500.0, 0.2), accel(3000.0, 0.3)])
    assert [trace.name for trace in fig.data] == ["X-axis", "Y-axis", "Z-axis"]
    assert list(fig.data[0].x) == [0.0, 0.5, 2.0]
    assert list(fig.data[0].y) == [0.1, 0.2, 0.3]


def test_ecg_plot_time_axis_from_sample_rate():
    fig = create_ecg_plot([0, 10, 20, 30], sample_rate_hz=4.0)
    assert list(fig.data[0].x) == pytest.approx([0.0, 0.25, 0.5, 0.75])


def test_multi_plot_separates_synthetic_readings():
    fig = create_multi_plot_layout(
        [accel(0.0)],
        [HeartRateReading(0.0, 72.0, Origin.SYNTHETIC), HeartRateReading(1000.0, 80.0)],
        [],
        [TemperatureReading(500.0, 30.0)],
    )
    names = [trace.name for trace in fig.data]
    assert names == ["X-axis", "Y-axis", "Z-axis", "Heart Rate", "Heart Rate (synthetic)", "Temperature"]
    synthetic = fig.data[4]
    assert synthetic.mode == "markers"
    assert list(synthetic.y) == [72.0]


def test_dashboard_attaches_history_listener():
    session = MovesenseSession(MockLinkFactory())
    dashboard = DashboardApp(session, buffer_size=50, update_rate=4)
    assert dashboard.update_interval == 250
    assert dashboard.history.max_size == 50
    assert dashboard.app.layout is not None
