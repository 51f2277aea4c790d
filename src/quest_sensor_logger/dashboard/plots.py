"""
Plot components for the sensor logger dashboard.
"""

from typing import List

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from ..store import DEGREE_SCALE, TEMPERATURE_SCALE, SampleRecord


def _empty_figure(title: str, xaxis_title: str, yaxis_title: str) -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text="No data available",
        showarrow=False,
        xref="paper",
        yref="paper",
        font=dict(size=16, color="gray"),
    )
    fig.update_layout(
        title=title,
        xaxis_title=xaxis_title,
        yaxis_title=yaxis_title,
        height=350,
    )
    return fig


def create_temperature_plot(
    records: List[SampleRecord], title: str = "Temperature"
) -> go.Figure:
    """Create temperature trace over the stored samples."""
    if not records:
        return _empty_figure(title, "Time (seconds)", "Temperature (°C)")

    t0 = records[0].timestamp
    timestamps = [(r.timestamp - t0) / 1000.0 for r in records]
    temperatures = [(r.temperature or 0) / TEMPERATURE_SCALE for r in records]

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=timestamps,
            y=temperatures,
            mode="lines+markers",
            name="Temperature",
            line=dict(color="orange", width=2),
            marker=dict(size=4),
        )
    )
    fig.update_layout(
        title=title,
        xaxis_title="Time (seconds)",
        yaxis_title="Temperature (°C)",
        showlegend=False,
        height=350,
        margin=dict(l=50, r=20, t=50, b=50),
    )
    return fig


def create_track_plot(records: List[SampleRecord], title: str = "GPS Track") -> go.Figure:
    """Create a longitude/latitude track colored by temperature."""
    if not records:
        return _empty_figure(title, "Longitude", "Latitude")

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=[(r.longitude or 0) / DEGREE_SCALE for r in records],
            y=[(r.latitude or 0) / DEGREE_SCALE for r in records],
            mode="markers",
            name="Track",
            marker=dict(
                size=6,
                color=[(r.temperature or 0) / TEMPERATURE_SCALE for r in records],
                colorscale="RdYlBu_r",
                showscale=True,
                colorbar=dict(title="°C"),
            ),
        )
    )
    fig.update_layout(
        title=title,
        xaxis_title="Longitude",
        yaxis_title="Latitude",
        height=350,
        margin=dict(l=50, r=20, t=50, b=50),
    )
    fig.update_yaxes(scaleanchor="x", scaleratio=1)
    return fig


def create_session_layout(records: List[SampleRecord]) -> go.Figure:
    """Temperature trace and GPS track side by side."""
    fig = make_subplots(
        rows=1,
        cols=2,
        subplot_titles=("Temperature (°C)", "GPS Track"),
        horizontal_spacing=0.1,
    )
    if records:
        temperature_fig = create_temperature_plot(records)
        track_fig = create_track_plot(records)
        for trace in temperature_fig.data:
            fig.add_trace(trace, row=1, col=1)
        for trace in track_fig.data:
            fig.add_trace(trace, row=1, col=2)
    else:
        fig.add_annotation(
            x=0.5,
            y=0.5,
            text="No samples recorded yet",
            showarrow=False,
            xref="paper",
            yref="paper",
            font=dict(size=16, color="gray"),
        )

    fig.update_xaxes(title_text="Time (seconds)", row=1, col=1)
    fig.update_yaxes(title_text="Temperature (°C)", row=1, col=1)
    fig.update_xaxes(title_text="Longitude", row=1, col=2)
    fig.update_yaxes(title_text="Latitude", row=1, col=2)
    fig.update_layout(
        height=420,
        showlegend=False,
        margin=dict(l=50, r=20, t=60, b=50),
        uirevision="session",
    )
    return fig
