# dashboard_blueprint.py
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from dateutil.relativedelta import relativedelta
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text

from errors import BadRequestError
from models import db
from security import current_user, login_required
from timeutil import current_date_ist, format_decimal_to_time, normalize_date, parse_date, parse_time_to_decimal

dashboard_bp = Blueprint("dashboard_bp", __name__)

# ----------------- Helpers -----------------
FILTER_KEYS: List[str] = ["project", "user"]
TOTAL_KEYS: List[str] = FILTER_KEYS + ["date"]


def _hours(value) -> float:
    try:
        return parse_time_to_decimal(value)
    except ValueError:
        return 0.0


def calculate_trend(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def calculate_variance(actual_total: float, tracked_total: float) -> Dict[str, float]:
    variance = actual_total - tracked_total
    percent = variance / tracked_total * 100 if tracked_total > 0 else 0.0
    return {
        "actualTotal": round(actual_total, 2),
        "trackedTotal": round(tracked_total, 2),
        "variance": round(variance, 2),
        "variancePercent": round(percent, 1),
    }


def get_default_dates() -> Tuple[str, str]:
    today = parse_date(current_date_ist())
    return (today - timedelta(days=30)).isoformat(), today.isoformat()


def load_logs_frame(start_date: str, end_date: str, user_id: Optional[int] = None,
                    team_id: Optional[int] = None) -> pd.DataFrame:
    where_clauses = ["dl.date BETWEEN :start AND :end"]
    params: Dict[str, Any] = {"start": start_date, "end": end_date}
    if user_id is not None:
        where_clauses.append("dl.user_id = :user_id")
        params["user_id"] = user_id
    if team_id is not None:
        where_clauses.append("p.team_id = :team_id")
        params["team_id"] = team_id

    query = f"""
        SELECT
            dl.id,
            dl.date,
            dl.user_id,
            u.name AS user_name,
            dl.project_id,
            p.name AS project_name,
            p.team_id,
            dl.task_description,
            dl.actual_time_spent,
            dl.tracked_time
        FROM daily_logs dl
        JOIN projects p ON p.id = dl.project_id
        JOIN users u ON u.id = dl.user_id
        WHERE {" AND ".join(where_clauses)}
        ORDER BY dl.date, u.name, dl.id
    """
    current_app.logger.debug("Dashboard query [%s -> %s] params=%s", start_date, end_date, params)
    with db.engine.connect() as conn:
        df = pd.read_sql(text(query), conn, params=params)

    df.rename(columns={"user_name": "user", "project_name": "project"}, inplace=True)
    if not df.empty:
        df["date"] = pd.to_datetime(df["date"]).dt.strftime("%Y-%m-%d")
        df["actual_hours"] = df["actual_time_spent"].apply(_hours)
        df["tracked_hours"] = df["tracked_time"].apply(_hours)
    else:
        df["actual_hours"] = pd.Series(dtype=float)
        df["tracked_hours"] = pd.Series(dtype=float)
    return df


def build_dashboard_payload(df: pd.DataFrame) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if df.empty:
        payload["details"] = []
        payload["filters"] = {key: [] for key in FILTER_KEYS}
        payload["overall_totals"] = {key: [] for key in TOTAL_KEYS}
        payload["variance"] = calculate_variance(0.0, 0.0)
        payload["totals"] = {"entries": 0, "actual_hours": 0.0, "tracked_hours": 0.0,
                             "actual_hhmm": "0:00", "tracked_hhmm": "0:00"}
        return payload

    cols_order = ["id", "date", "user_id", "user", "project_id", "project", "team_id",
                  "task_description", "actual_time_spent", "tracked_time", "actual_hours", "tracked_hours"]
    df_detailed = df[cols_order].copy()

    filter_options = {key: sorted(df[key].dropna().astype(str).unique().tolist()) for key in FILTER_KEYS}

    overall_totals = {}
    for key in TOTAL_KEYS:
        grp = (
            df.groupby(key, dropna=False)[["actual_hours", "tracked_hours"]]
              .sum()
              .reset_index()
        )
        grp[key] = grp[key].fillna("")
        grp["actual_hours"] = grp["actual_hours"].round(2)
        grp["tracked_hours"] = grp["tracked_hours"].round(2)
        grp["actual_hhmm"] = grp["actual_hours"].apply(format_decimal_to_time)
        grp["tracked_hhmm"] = grp["tracked_hours"].apply(format_decimal_to_time)
        overall_totals[key] = grp.to_dict("records")

    actual_total = float(df["actual_hours"].sum())
    tracked_total = float(df["tracked_hours"].sum())

    payload["details"] = df_detailed.to_dict("records")
    payload["filters"] = filter_options
    payload["overall_totals"] = overall_totals
    payload["variance"] = calculate_variance(actual_total, tracked_total)
    payload["totals"] = {
        "entries": int(len(df)),
        "actual_hours": round(actual_total, 2),
        "tracked_hours": round(tracked_total, 2),
        "actual_hhmm": format_decimal_to_time(actual_total),
        "tracked_hhmm": format_decimal_to_time(tracked_total),
    }
    return payload


def _sum_hours(user_id: int, start_date: date, end_date: date) -> float:
    df = load_logs_frame(start_date.isoformat(), end_date.isoformat(), user_id=user_id)
    return float(df["actual_hours"].sum()) if not df.empty else 0.0


def _team_id_arg():
    value = request.args.get("team_id")
    if value in (None, ""):
        return None
    try:
        team_id = int(value)
    except ValueError:
        raise BadRequestError("team_id must be a positive integer")
    if team_id < 1:
        raise BadRequestError("team_id must be a positive integer")
    return team_id


def _date_arg(name, default):
    value = request.args.get(name) or default
    try:
        return normalize_date(value)
    except ValueError as e:
        raise BadRequestError(str(e))


# ----------------- Routes -----------------
@dashboard_bp.route("/api/data", methods=["GET"])
@login_required
def get_dashboard_data():
    user = current_user()
    default_start, default_end = get_default_dates()
    start_date = _date_arg("start", default_start)
    end_date = _date_arg("end", default_end)

    if user.is_admin:
        df = load_logs_frame(start_date, end_date, team_id=_team_id_arg())
    else:
        df = load_logs_frame(start_date, end_date, user_id=user.id)

    payload = build_dashboard_payload(df)
    payload["range"] = {"start": start_date, "end": end_date}
    return jsonify({"success": True, "data": payload})


@dashboard_bp.route("/api/my-7day-hours", methods=["GET"])
@login_required
def api_my_7day_hours():
    user = current_user()
    end_dt = parse_date(current_date_ist())
    start_dt = end_dt - timedelta(days=6)
    df = load_logs_frame(start_dt.isoformat(), end_dt.isoformat(), user_id=user.id)
    by_date = df.groupby("date")["actual_hours"].sum().to_dict() if not df.empty else {}

    series, total, d = [], 0.0, start_dt
    for _ in range(7):
        k = d.isoformat()
        h = float(by_date.get(k, 0.0))
        series.append({"date": k, "hours_hhmm": format_decimal_to_time(h), "hours_decimal": round(h, 2)})
        total += h
        d += timedelta(days=1)
    return jsonify({"success": True, "data": {
        "start_date": start_dt.isoformat(), "end_date": end_dt.isoformat(), "by_day": series,
        "total_hours_hhmm": format_decimal_to_time(total), "total_hours_decimal": round(total, 2),
    }})


@dashboard_bp.route("/api/my-monthly-hours", methods=["GET"])
@login_required
def api_my_monthly_hours():
    user = current_user()
    today = parse_date(current_date_ist())
    start_of_this_month = today.replace(day=1)
    start_of_last_month = start_of_this_month - relativedelta(months=1)
    end_of_last_month = start_of_last_month + relativedelta(months=+1, days=-1)
    this_month = _sum_hours(user.id, start_of_this_month, today)
    last_month = _sum_hours(user.id, start_of_last_month, end_of_last_month)
    return jsonify({"success": True, "data": {
        "total_hours_hhmm": format_decimal_to_time(this_month),
        "total_hours_decimal": round(this_month, 2),
        "previous_hours_decimal": round(last_month, 2),
        "percent_change": round(calculate_trend(this_month, last_month), 1),
    }})
