"""
Plot components for the live dashboard.
"""

from typing import List, Sequence

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from ..models import (
    AccelerometerReading,
    GyroscopeReading,
    HeartRateReading,
    SensorReading,
    TemperatureReading,
)

EMPTY_TEXT = "No data available"


def _empty_figure(title: str, yaxis_title: str) -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text=EMPTY_TEXT,
        showarrow=False,
        xref="paper",
        yref="paper",
        font=dict(size=16, color="gray"),
    )
    fig.update_layout(
        title=title,
        xaxis_title="Time (seconds)",
        yaxis_title=yaxis_title,
        height=300,
    )
    return fig


def _relative_seconds(readings: Sequence[SensorReading]) -> List[float]:
    start = readings[0].timestamp
    return [(r.timestamp - start) / 1000.0 for r in readings]


def create_accelerometer_plot(
    readings: List[AccelerometerReading], title: str = "Accelerometer"
) -> go.Figure:
    """Three axes of the accelerometer, in g."""
    if not readings:
        return _empty_figure(title, "Acceleration (g)")

    timestamps = _relative_seconds(readings)
    fig = go.Figure()
    for axis, color in (("x", "red"), ("y", "green"), ("z", "blue")):
        fig.add_trace(
            go.Scatter(
                x=timestamps,
                y=[getattr(r, axis) for r in readings],
                mode="lines",
                name=f"{axis.upper()}-axis",
                line=dict(color=color, width=1.5),
            )
        )
    fig.update_layout(
        title=title,
        xaxis_title="Time (seconds)",
        yaxis_title="Acceleration (g)",
        showlegend=True,
        height=300,
        margin=dict(l=50, r=20, t=50, b=50),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
    )
    fig.update_xaxes(range=[timestamps[0], timestamps[-1]])
    return fig


def create_ecg_plot(
    samples: List[int], sample_rate_hz: float = 128.0, title: str = "ECG"
) -> go.Figure:
    """Raw ECG trace with a time axis derived from the sample rate."""
    if not samples:
        return _empty_figure(title, "Amplitude")

    timestamps = [i / sample_rate_hz for i in range(len(samples))]
    fig = go.Figure(
        go.Scatter(
            x=timestamps,
            y=samples,
            mode="lines",
            name="ECG",
            line=dict(color="crimson", width=1.2),
        )
    )
    fig.update_layout(
        title=title,
        xaxis_title="Time (seconds)",
        yaxis_title="Amplitude",
        height=300,
        margin=dict(l=50, r=20, t=50, b=50),
    )
    return fig


def create_multi_plot_layout(
    accel: List[AccelerometerReading],
    heart_rate: List[HeartRateReading],
    gyro: List[GyroscopeReading],
    temperature: List[TemperatureReading],
) -> go.Figure:
    """2x2 grid: accelerometer, gyroscope, heart rate and temperature.

    Synthetic readings are drawn as markers so they do not pass for
    measurements.
    """
    fig = make_subplots(
        rows=2,
        cols=2,
        subplot_titles=(
            "Accelerometer (g)",
            "Gyroscope (°/s)",
            "Heart Rate (bpm)",
            "Temperature (°C)",
        ),
        vertical_spacing=0.12,
        horizontal_spacing=0.1,
    )

    if not (accel or heart_rate or gyro or temperature):
        fig.add_annotation(
            x=0.5,
            y=0.5,
            text=EMPTY_TEXT,
            showarrow=False,
            xref="paper",
            yref="paper",
            font=dict(size=20, color="gray"),
        )
        fig.update_layout(height=600, showlegend=False)
        return fig

    starts = [series[0].timestamp for series in (accel, heart_rate, gyro, temperature) if series]
    origin = min(starts)

    def seconds(readings: Sequence[SensorReading]) -> List[float]:
        return [(r.timestamp - origin) / 1000.0 for r in readings]

    if accel:
        t = seconds(accel)
        for axis, color in (("x", "red"), ("y", "green"), ("z", "blue")):
            fig.add_trace(
                go.Scatter(
                    x=t,
                    y=[getattr(r, axis) for r in accel],
                    mode="lines",
                    name=f"{axis.upper()}-axis",
                    line=dict(color=color, width=1.5),
                ),
                row=1,
                col=1,
            )

    if gyro:
        t = seconds(gyro)
        for axis, color in (("x", "darkred"), ("y", "darkgreen"), ("z", "darkblue")):
            fig.add_trace(
                go.Scatter(
                    x=t,
                    y=[getattr(r.samples[0], axis) for r in gyro],
                    mode="lines",
                    name=f"{axis.upper()}-rotation",
                    line=dict(color=color, width=1.5),
                    showlegend=False,
                ),
                row=1,
                col=2,
            )

    for series, color, row, col, label in (
        (heart_rate, "purple", 2, 1, "Heart Rate"),
        (temperature, "orange", 2, 2, "Temperature"),
    ):
        measured = [r for r in series if not r.is_synthetic]
        synthetic = [r for r in series if r.is_synthetic]
        if measured:
            fig.add_trace(
                go.Scatter(
                    x=seconds(measured),
                    y=[_scalar(r) for r in measured],
                    mode="lines",
                    name=label,
                    line=dict(color=color, width=2),
                    showlegend=False,
                ),
                row=row,
                col=col,
            )
        if synthetic:
            fig.add_trace(
                go.Scatter(
                    x=seconds(synthetic),
                    y=[_scalar(r) for r in synthetic],
                    mode="markers",
                    name=f"{label} (synthetic)",
                    marker=dict(color="lightgray", size=5),
                    showlegend=False,
                ),
                row=row,
                col=col,
            )

    fig.update_xaxes(title_text="Time (seconds)")
    fig.update_layout(
        height=600,
        showlegend=True,
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        margin=dict(l=50, r=50, t=80, b=50),
    )
    return fig


def _scalar(reading: SensorReading) -> float:
    if isinstance(reading, HeartRateReading):
        return reading.bpm
    if isinstance(reading, TemperatureReading):
        return reading.celsius
    raise TypeError(f"no scalar value for {reading.kind.value}")
