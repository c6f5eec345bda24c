from __future__ import annotations

import io
from typing import List

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from dispatch_engine.models import AgencyScore, TrendPoint

from .db import get_conn, now_iso


def load_incident_frame() -> pd.DataFrame:
    with get_conn() as conn:
        df = pd.read_sql_query(
            "SELECT id, category, severity, status, assigned_agency_id, response_time, created_at FROM incidents",
            conn,
        )
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True, format="ISO8601")
    return df


def daily_response_times(df: pd.DataFrame) -> List[TrendPoint]:
    """Average response time per calendar day, over incidents that have one."""
    resolved = df.dropna(subset=["response_time"])
    if resolved.empty:
        return []
    daily = resolved.groupby(resolved["created_at"].dt.floor("D"))["response_time"].mean().sort_index()
    return [TrendPoint(date=day.to_pydatetime(), value=round(float(value), 2)) for day, value in daily.items()]


def daily_incident_counts(df: pd.DataFrame) -> List[TrendPoint]:
    if df.empty:
        return []
    daily = df.groupby(df["created_at"].dt.floor("D")).size().sort_index()
    return [TrendPoint(date=day.to_pydatetime(), value=float(count)) for day, count in daily.items()]


def build_leaderboard_pdf(scores: List[AgencyScore]) -> bytes:
    buff = io.BytesIO()
    pdf = canvas.Canvas(buff, pagesize=letter)
    width, height = letter

    y = height - 40
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(40, y, "Agency Performance Leaderboard")
    y -= 18
    pdf.setFont("Helvetica", 10)
    pdf.drawString(40, y, f"Generated: {now_iso()}")
    y -= 20

    for rank, entry in enumerate(scores, start=1):
        if y < 100:
            pdf.showPage()
            y = height - 40

        pdf.setStrokeColor(colors.darkblue)
        pdf.rect(35, y - 60, width - 70, 55, stroke=1, fill=0)
        pdf.setFont("Helvetica-Bold", 10)
        pdf.drawString(45, y - 15, f"#{rank} {entry.agency_name or entry.agency_id} | score {entry.score}")
        pdf.setFont("Helvetica", 9)
        pdf.drawString(
            45,
            y - 30,
            f"Incidents: {entry.incidents_handled}  |  Resolution rate: {entry.resolution_rate}%"
            f"  |  Avg response: {round(entry.avg_response_time, 1)} min",
        )
        factors = "  ".join(f"{name}={value}" for name, value in entry.factors.items())
        pdf.drawString(45, y - 43, f"Factors: {factors}")

        y -= 70

    pdf.save()
    buff.seek(0)
    return buff.read()
