# teams_notifier.py
import logging
import os
import time
from urllib.parse import urlparse

import requests

from models import db, DailyLog, Project, Team, User
from timeutil import current_date_ist, format_date_long, format_decimal_to_time, normalize_date, parse_date, parse_time_to_decimal

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_DELAY_SECONDS = 2
MICROSOFT_WEBHOOK_DOMAINS = ("webhook.office.com", "outlook.office.com", "outlook.office365.com")
CARD_FOOTER = "Generated by Daily Report System"


class WebhookError(Exception):
    pass


def _hours(value) -> float:
    try:
        return parse_time_to_decimal(value)
    except ValueError:
        logger.warning("Ignoring unparseable time value %r in summary", value)
        return 0.0


# ── SUMMARY ──────────────────────────────────────────────────────────────
def generate_team_summary(team: Team, date_str: str) -> dict:
    rows = (db.session.query(DailyLog, Project.name, User.name)
            .join(Project, DailyLog.project_id == Project.id)
            .outerjoin(User, DailyLog.user_id == User.id)
            .filter(Project.team_id == team.id, DailyLog.date == parse_date(date_str))
            .order_by(DailyLog.created_at, DailyLog.id)
            .all())

    by_user = {}
    for log, project_name, user_name in rows:
        entry = by_user.setdefault(log.user_id, {
            "user_id": log.user_id,
            "user_name": user_name or f"Unknown User (ID: {log.user_id})",
            "total_actual_time": 0.0,
            "total_tracked_time": 0.0,
            "tasks": [],
        })
        actual, tracked = _hours(log.actual_time_spent), _hours(log.tracked_time)
        entry["tasks"].append({
            "project_id": log.project_id,
            "project_name": project_name,
            "task_description": log.task_description,
            "actual_time": actual,
            "tracked_time": tracked,
        })
        entry["total_actual_time"] += actual
        entry["total_tracked_time"] += tracked

    user_summaries = sorted(by_user.values(), key=lambda u: u["user_name"].lower())
    return {
        "team_id": team.id,
        "team_name": team.name,
        "date": date_str,
        "user_summaries": user_summaries,
        "total_team_actual_time": sum(u["total_actual_time"] for u in user_summaries),
        "total_team_tracked_time": sum(u["total_tracked_time"] for u in user_summaries),
    }


def generate_all_team_summaries(date_str: str):
    summaries = []
    for team in Team.query.order_by(Team.id).all():
        try:
            summary = generate_team_summary(team, date_str)
        except Exception:
            logger.exception("Failed to generate summary for team %s", team.name)
            continue
        if summary["user_summaries"]:
            summaries.append(summary)
    return summaries


# ── ADAPTIVE CARD ────────────────────────────────────────────────────────
def _text_block(text, **props):
    block = {"type": "TextBlock", "text": text}
    block.update(props)
    block.update({"wrap": True, "width": "stretch"})
    return block


def format_summary_card(summary: dict) -> dict:
    body = [_text_block(f"Daily Summary - {format_date_long(summary['date'])}",
                        size="extraLarge", weight="bolder", color="accent")]

    for user in summary["user_summaries"]:
        body.append(_text_block(user["user_name"], size="medium", weight="bolder",
                                separator=True, spacing="default"))

        by_project = {}
        for task in user["tasks"]:
            by_project.setdefault(task["project_name"], []).append(task)

        for project_name, tasks in by_project.items():
            tracked = format_decimal_to_time(sum(t["tracked_time"] for t in tasks))
            if tracked != "0:00":
                body.append(_text_block(f"Tracked Time: {tracked}", size="medium",
                                        weight="default", spacing="small"))
            body.append(_text_block(project_name, size="medium", weight="default", spacing="small"))
            for task in tasks:
                body.append(_text_block(task["task_description"], spacing="none"))

    body.append(_text_block(CARD_FOOTER, size="small", weight="lighter",
                            separator=True, spacing="medium"))

    return {
        "type": "message",
        "attachments": [{
            "contentType": "application/vnd.microsoft.card.adaptive",
            "contentUrl": None,
            "content": {
                "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                "type": "AdaptiveCard",
                "version": "1.4",
                "body": body,
                "msteams": {"width": "Full"},
            },
        }],
    }


# ── WEBHOOK ──────────────────────────────────────────────────────────────
def validate_webhook_url(webhook_url) -> bool:
    if not webhook_url or not isinstance(webhook_url, str):
        return False
    parsed = urlparse(webhook_url)
    if parsed.scheme != "https" or not parsed.hostname:
        return False
    if not any(domain in parsed.hostname for domain in MICROSOFT_WEBHOOK_DOMAINS):
        logger.warning("Webhook URL does not match expected Microsoft Teams domains: %s", parsed.hostname)
    return True


def send_with_retry(webhook_url: str, payload: dict):
    last_error = None
    for attempt in range(1, WEBHOOK_MAX_RETRIES + 1):
        try:
            resp = requests.post(webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
            resp.raise_for_status()
            return
        except requests.RequestException as e:
            last_error = e
            status = e.response.status_code if e.response is not None else "N/A"
            logger.warning("Webhook attempt %s/%s failed: status=%s error=%s",
                           attempt, WEBHOOK_MAX_RETRIES, status, e)
            if attempt < WEBHOOK_MAX_RETRIES:
                time.sleep(WEBHOOK_RETRY_DELAY_SECONDS)
    raise WebhookError(f"Failed to send webhook after {WEBHOOK_MAX_RETRIES} attempts: {last_error}")


def send_daily_summary(summary: dict, webhook_url: str) -> dict:
    result = {"success": False, "team_id": summary["team_id"], "team_name": summary["team_name"]}
    if not validate_webhook_url(webhook_url):
        result["error"] = "Invalid webhook URL format"
        return result
    try:
        send_with_retry(webhook_url, format_summary_card(summary))
    except WebhookError as e:
        logger.error("Failed to send Teams notification for team %s: %s", summary["team_name"], e)
        result["error"] = str(e)
        return result
    logger.info("Sent Teams notification for team %s", summary["team_name"])
    result["success"] = True
    return result


# ── JOB ──────────────────────────────────────────────────────────────────
class DailySummaryJob:
    """Builds every active team's summary for one day and posts it to Teams."""

    def resolve_webhook(self, team_id, override=None):
        team = db.session.get(Team, team_id)
        if team is not None and team.webhook_url:
            return team.webhook_url
        return override or os.environ.get("TEAMS_WEBHOOK_URL") or None

    def execute(self, date=None, webhook_url=None) -> dict:
        started = time.monotonic()
        summary_date = normalize_date(date) if date else current_date_ist()
        logger.info("Teams daily summary job starting for %s", summary_date)

        summaries = generate_all_team_summaries(summary_date)
        stats = {"date": summary_date, "teams": len(summaries), "success": 0, "failed": 0, "results": []}
        if not summaries:
            logger.info("No teams with activity on %s. Nothing to send.", summary_date)
            return stats

        for summary in summaries:
            url = self.resolve_webhook(summary["team_id"], webhook_url)
            if not url:
                logger.warning("No webhook URL configured for team %s (ID: %s)",
                               summary["team_name"], summary["team_id"])
                result = {"success": False, "team_id": summary["team_id"],
                          "team_name": summary["team_name"], "error": "No webhook URL configured"}
            else:
                result = send_daily_summary(summary, url)
            stats["results"].append(result)
            stats["success" if result["success"] else "failed"] += 1

        logger.info("Teams daily summary job finished in %.2fs: %s sent, %s failed",
                    time.monotonic() - started, stats["success"], stats["failed"])
        return stats
