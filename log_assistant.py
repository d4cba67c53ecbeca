# log_assistant.py
import logging
import os

from flask import Blueprint, Response, request
from openai import OpenAI, OpenAIError

from chat_events import SSE_HEADERS, format_event
from errors import AppError, BadRequestError, ForbiddenError, NotFoundError, ok
from models import db, DailyLog, Project, User
from security import current_user, login_required
from timeutil import normalize_date, parse_date

logger = logging.getLogger(__name__)

log_assistant_bp = Blueprint("log_assistant_bp", __name__)

DEFAULT_MODEL = "gpt-4o"
MAX_LOGS_IN_CONTEXT = 100
CHAT_ROLES = ("user", "assistant", "system")

_client = None


def get_client() -> OpenAI:
    global _client
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise AppError("AI chat is not configured", 503)
    if _client is None:
        _client = OpenAI(api_key=api_key)
    return _client


# ── CONTEXT ──────────────────────────────────────────────────────────────
def _target_id(value):
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise BadRequestError("targetUserId must be a positive integer")
    try:
        target = int(value)
    except (TypeError, ValueError):
        raise BadRequestError("targetUserId must be a positive integer")
    if target < 1:
        raise BadRequestError("targetUserId must be a positive integer")
    return target


def _date(value, field):
    if value in (None, ""):
        return None
    try:
        return normalize_date(value)
    except (TypeError, ValueError):
        raise BadRequestError(f"{field} must be a valid YYYY-MM-DD date")


def resolve_target_user(user: User, target_user_id=None) -> User:
    """The caller, or for admins any user they name."""
    if not target_user_id or target_user_id == user.id:
        return user
    if not user.is_admin:
        raise ForbiddenError("Only admins can chat about other users' logs")
    target = db.session.get(User, target_user_id)
    if target is None:
        raise NotFoundError(f"User with ID {target_user_id} not found")
    return target


def build_logs_context(user_id: int, start_date=None, end_date=None):
    q = (db.session.query(DailyLog, Project.name)
         .outerjoin(Project, Project.id == DailyLog.project_id)
         .filter(DailyLog.user_id == user_id))
    if start_date:
        q = q.filter(DailyLog.date >= parse_date(start_date))
    if end_date:
        q = q.filter(DailyLog.date <= parse_date(end_date))
    rows = q.order_by(DailyLog.date.desc(), DailyLog.created_at.desc(), DailyLog.id.desc()).all()
    return [{
        "id": log.id,
        "date": log.date.isoformat(),
        "project_name": project_name or "Unknown Project",
        "task_description": log.task_description,
        "actual_time_spent": log.actual_time_spent,
        "tracked_time": log.tracked_time,
    } for log, project_name in rows]


def build_system_prompt(user_name: str, logs, start_date=None, end_date=None) -> str:
    dates = sorted(log["date"] for log in logs)
    if start_date and end_date:
        date_range = f"{start_date} to {end_date}"
    elif len(dates) > 1:
        date_range = f"{dates[0]} to {dates[-1]}"
    else:
        date_range = dates[0] if dates else "No dates"

    lines = [
        f"- [{log['date']}] {log['project_name']}: {log['task_description']} "
        f"(Actual: {log['actual_time_spent']}, Tracked: {log['tracked_time']})"
        for log in logs[:MAX_LOGS_IN_CONTEXT]
    ]
    if len(logs) > MAX_LOGS_IN_CONTEXT:
        lines.append(f"\n(Showing {MAX_LOGS_IN_CONTEXT} of {len(logs)} total logs)")

    return (
        "You are a helpful assistant for a daily work logging application. "
        f"You are talking with {user_name} about their work logs and productivity.\n\n"
        "## Context\n"
        f"Date range: {date_range}\n"
        f"Total entries: {len(logs)}\n"
        f"Projects: {len({log['project_name'] for log in logs})}\n\n"
        "## Work Logs\n"
        + "\n".join(lines) + "\n\n"
        "## Guidelines\n"
        "- Summarize work by day, week or project when asked\n"
        "- Point out patterns in time allocation and actual vs tracked time\n"
        "- Use the real project names and dates from the logs\n"
        "- Say so when a question needs data the logs do not contain\n"
        "- Keep answers concise and use markdown where it helps"
    )


def build_minimal_system_prompt(user_name: str) -> str:
    return (
        "You are a helpful assistant for a daily work logging application. "
        f"You are talking with {user_name}.\n\n"
        "No work logs are loaded for this conversation. You can answer general questions about "
        "productivity and time management, explain the work logging features, and help plan "
        f"upcoming tasks. Suggest that {user_name} pick a date range to get insights about their logs."
    )


# ── MESSAGES ─────────────────────────────────────────────────────────────
def _parts_text(parts) -> str:
    return "".join(p["text"] for p in parts
                   if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str))


def _message_text(msg: dict) -> str:
    if isinstance(msg.get("parts"), list):
        return _parts_text(msg["parts"])
    content = msg.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _parts_text(content)
    return ""


def normalize_messages(raw):
    """Accepts string content, content parts, or a `parts` array; returns [{role, content}]."""
    if not isinstance(raw, list) or not raw:
        raise BadRequestError("Messages array is required and must not be empty")
    for msg in raw:
        if not isinstance(msg, dict) or not isinstance(msg.get("role"), str) or not (
                isinstance(msg.get("content"), (str, list)) or isinstance(msg.get("parts"), list)):
            raise BadRequestError("Invalid message format. Each message must have role and content.")

    messages = [{"role": m["role"], "content": _message_text(m)} for m in raw if m["role"] in CHAT_ROLES]
    messages = [m for m in messages if m["content"]]
    if not messages:
        raise BadRequestError("No valid messages found after normalization.")
    return messages


def _relay(stream):
    try:
        for chunk in stream:
            if not chunk.choices:
                continue
            text = chunk.choices[0].delta.content
            if text:
                yield format_event("delta", {"text": text})
    except OpenAIError as e:
        logger.error("AI chat stream failed: %s", e)
        yield format_event("error", {"message": "The AI response was interrupted"})
        return
    finally:
        stream.close()
    yield format_event("done", {})


# ── ROUTES ───────────────────────────────────────────────────────────────
@log_assistant_bp.route("", methods=["POST"])
@login_required
def chat():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    messages = normalize_messages(data.get("messages"))
    context = data.get("context") or {}
    if not isinstance(context, dict):
        raise BadRequestError("context must be an object")

    target = resolve_target_user(current_user(), _target_id(context.get("targetUserId")))
    start_date = _date(context.get("startDate"), "startDate")
    end_date = _date(context.get("endDate"), "endDate")
    logs = build_logs_context(target.id, start_date, end_date)
    if logs:
        system_prompt = build_system_prompt(target.name, logs, start_date, end_date)
    else:
        system_prompt = build_minimal_system_prompt(target.name)

    client = get_client()
    model = os.environ.get("OPENAI_MODEL", DEFAULT_MODEL)
    try:
        stream = client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": system_prompt}] + messages,
            stream=True,
        )
    except OpenAIError as e:
        logger.error("AI chat request failed for user %s: %s", target.id, e)
        raise AppError("AI service request failed", 502)

    logger.info("AI chat for user %s about %s (%s logs, model %s)",
                current_user().id, target.id, len(logs), model)
    db.session.close()
    return Response(_relay(stream), mimetype="text/event-stream", headers=SSE_HEADERS)


@log_assistant_bp.route("/context", methods=["GET"])
@login_required
def chat_context():
    target = resolve_target_user(current_user(), _target_id(request.args.get("targetUserId")))
    start_date = _date(request.args.get("startDate"), "startDate")
    end_date = _date(request.args.get("endDate"), "endDate")
    logs = build_logs_context(target.id, start_date, end_date)
    return ok({
        "userId": target.id,
        "userName": target.name,
        "logCount": len(logs),
        "dateRange": {"startDate": start_date, "endDate": end_date},
    })
