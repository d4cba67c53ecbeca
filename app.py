# ── app.py ──────────────────────────────────────────────────────────────────
import logging
import os
import re
from datetime import datetime, timedelta
from math import ceil

import click
from dotenv import load_dotenv
from flask import Flask, request, session
from flask_cors import CORS
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from dashboard_blueprint import dashboard_bp
from errors import AppError, BadRequestError, ForbiddenError, NotFoundError, UnauthorizedError, fail, ok
from models import db, DailyLog, Project, ProjectAssignment, Team, User, ROLES
from security import current_user, limiter, login_required, role_required, start_session
from log_assistant import log_assistant_bp
from team_chat_blueprint import team_chat_bp
from teams_notifier import DailySummaryJob, validate_webhook_url
from timeutil import normalize_date, parse_date, to_hhmm

# ── CONFIG ────────────────────────────────────────────────────────────────
load_dotenv()

FLASK_ENV      = os.environ.get("FLASK_ENV", "development")
IS_PRODUCTION  = FLASK_ENV == "production"
IS_DEVELOPMENT = FLASK_ENV == "development"
BACKEND_HTTPS  = os.environ.get("BACKEND_HTTPS", "false").lower() == "true"
FRONTEND_URL   = os.environ.get("FRONTEND_URL", "http://localhost:5173")
DEFAULT_SECRET = "dev-secret"


# ── LOGGING ───────────────────────────────────────────────────────────────
SENSITIVE_KEY_RE = re.compile(r"password|token|secret|api_?key|authorization|cookie", re.I)
SENSITIVE_VALUE_RE = re.compile(
    r"""(?i)(["']?[\w-]*(?:password|token|secret|api_?key|authorization|cookie)[\w-]*["']?\s*[:=]\s*["']?)(?!%[sdrf])[^"'\s,&}]+"""
)
REDACTED = "[REDACTED]"


def redact(value):
    if isinstance(value, dict):
        return {k: REDACTED if isinstance(k, str) and SENSITIVE_KEY_RE.search(k) else redact(v)
                for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(redact(v) for v in value)
    if isinstance(value, str):
        return SENSITIVE_VALUE_RE.sub(lambda m: m.group(1) + REDACTED, value)
    return value


class RedactingFilter(logging.Filter):
    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if record.args:
            record.args = redact(record.args)
        return True


logging.basicConfig(
    level=logging.INFO if IS_PRODUCTION else logging.DEBUG,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RedactingFilter())
logging.getLogger("apscheduler").setLevel(logging.WARNING)

app = Flask(__name__)

# ── SECRET KEY ──────────────────────────────────────────────
SECRET_KEY = os.environ.get("SECRET_KEY")
if IS_PRODUCTION and (not SECRET_KEY or SECRET_KEY == DEFAULT_SECRET):
    raise RuntimeError("SECRET_KEY must be set to a non-default value in production")
app.secret_key = SECRET_KEY or DEFAULT_SECRET

app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=BACKEND_HTTPS,
    SESSION_COOKIE_SAMESITE="None" if BACKEND_HTTPS else "Lax",
    PERMANENT_SESSION_LIFETIME=timedelta(days=7),
    RATELIMIT_ENABLED=os.environ.get("RATELIMIT_ENABLED", "true").lower() == "true",
)

# ── DB CONFIG ───────────────────────────────────────────────
DB_USER = os.environ.get("DB_USER", "root")
DB_PASS = os.environ.get("DB_PASS", "")
DB_HOST = os.environ.get("DB_HOST", "localhost")
DB_PORT = os.environ.get("DB_PORT", "3306")
DB_NAME = os.environ.get("DB_NAME", "daily_report")
INSTANCE_UNIX_SOCKET = os.environ.get("INSTANCE_UNIX_SOCKET")

if INSTANCE_UNIX_SOCKET:
    DB_URI = f"mysql+pymysql://{DB_USER}:{DB_PASS}@/{DB_NAME}?unix_socket={INSTANCE_UNIX_SOCKET}"
else:
    DB_URI = f"mysql+pymysql://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", DB_URI)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}
db.init_app(app)

# ── CORS / RATE LIMIT ───────────────────────────────────────
ALLOWED_ORIGINS = [
    "http://localhost:5173",
    FRONTEND_URL,
    re.compile(r"^https://[a-z0-9-]+\.ngrok(-free)?\.(app|io|dev)$"),
    re.compile(r"^https://daily-report[a-z0-9-]*\.vercel\.app$"),
    re.compile(r"^https://[a-z0-9-]+\.(a\.)?(free\.)?pinggy\.(link|online|io)$"),
]
CORS(app, supports_credentials=True, origins=ALLOWED_ORIGINS)
limiter.init_app(app)


# ── ERROR HANDLERS ────────────────────────────────────────────────────────
@app.errorhandler(AppError)
def handle_app_error(e):
    app.logger.warning("Application error %s on %s %s: %s", e.status_code, request.method, request.path, e.message)
    return fail(e.message, e.status_code)


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return fail(e.description or e.name, e.code)


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    db.session.rollback()
    app.logger.exception("Unexpected error on %s %s", request.method, request.path)
    return fail("Internal server error", 500, error=str(e) if IS_DEVELOPMENT else None)


# ── HELPERS ───────────────────────────────────────────────────────────────
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
PER_PAGE_CHOICES = (50, 100, 200, 500)
LOG_SORT_FIELDS = {
    "date": DailyLog.date,
    "created_at": DailyLog.created_at,
    "user_id": DailyLog.user_id,
    "project_id": DailyLog.project_id,
}


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _positive_int(value, message):
    if isinstance(value, bool):
        raise BadRequestError(message)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise BadRequestError(message)
    if number < 1:
        raise BadRequestError(message)
    return number


def _text(value):
    return value.strip() if isinstance(value, str) else ""


def _query_date(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return parse_date(value)
    except ValueError as e:
        raise BadRequestError(str(e))


def _get_or_404(model, ident, message):
    obj = db.session.get(model, ident)
    if obj is None:
        raise NotFoundError(message)
    return obj


def _team_id_or_none(value):
    if value in (None, ""):
        return None
    team_id = _positive_int(value, "team_id must be a positive integer")
    _get_or_404(Team, team_id, "Team not found")
    return team_id


def clean_user_fields(data, partial=False):
    out = {}
    if not partial or "email" in data:
        email = _text(data.get("email")).lower()
        if not EMAIL_RE.match(email):
            raise BadRequestError("Valid email is required")
        out["email"] = email
    if not partial or data.get("password") not in (None, ""):
        password = data.get("password")
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        out["password"] = password
    if not partial or "name" in data:
        name = _text(data.get("name"))
        if not name:
            raise BadRequestError("Name is required")
        out["name"] = name
    if not partial or "role" in data:
        role = data.get("role")
        if role not in ROLES:
            raise BadRequestError("Role must be admin or member")
        out["role"] = role
    if "team_id" in data:
        out["team_id"] = _team_id_or_none(data.get("team_id"))
    return out


def create_user_account(fields) -> User:
    if User.query.filter_by(email=fields["email"]).first():
        raise BadRequestError("User with this email already exists")
    user = User(email=fields["email"], name=fields["name"], role=fields["role"],
                team_id=fields.get("team_id"),
                password_hash=generate_password_hash(fields["password"]))
    db.session.add(user)
    db.session.commit()
    return user


def is_assigned(user_id, project_id) -> bool:
    return ProjectAssignment.query.filter_by(user_id=user_id, project_id=project_id).first() is not None


def clean_log_entry(data, partial=False, suffix=""):
    out = {}
    if not partial or "project_id" in data:
        out["project_id"] = _positive_int(data.get("project_id"), "Valid project_id is required" + suffix)
    if not partial or "date" in data:
        try:
            out["date"] = parse_date(data.get("date"))
        except (TypeError, ValueError):
            raise BadRequestError("Valid date is required" + suffix)
    if not partial or "task_description" in data:
        desc = _text(data.get("task_description"))
        if not desc:
            raise BadRequestError(("Task description cannot be empty" if partial else "Task description is required") + suffix)
        out["task_description"] = desc
    for field, label in (("actual_time_spent", "Actual time spent"), ("tracked_time", "Tracked time")):
        if not partial or field in data:
            try:
                out[field] = to_hhmm(data.get(field))
            except (TypeError, ValueError):
                raise BadRequestError(f'{label} must be in HH:MM format (e.g., "3:30") or empty for 0{suffix}')
    return out


def get_log_for(log_id, user: User, action: str) -> DailyLog:
    log = _get_or_404(DailyLog, log_id, "Log not found")
    if not user.is_admin and log.user_id != user.id:
        raise ForbiddenError(f"You can only {action} your own logs")
    return log


# ── AUTH ROUTES ───────────────────────────────────────────────────────────
@app.route("/api/auth/register", methods=["POST"])
def register():
    fields = clean_user_fields(_body())
    fields.pop("team_id", None)
    user = create_user_account(fields)
    start_session(user)
    app.logger.info("User registered: %s (%s)", user.id, user.role)
    return ok(user.to_dict(), status=201)


@app.route("/api/auth/login", methods=["POST"])
def login():
    data = _body()
    email, password = _text(data.get("email")).lower(), data.get("password")
    if not email or not isinstance(password, str) or not password:
        raise BadRequestError("Email and password are required")
    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        raise UnauthorizedError("Invalid email or password")
    start_session(user)
    return ok(user.to_dict())


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    session.clear()
    return ok(None, message="Logged out successfully")


@app.route("/api/auth/me", methods=["GET"])
@login_required
def me():
    return ok(current_user().to_dict())


@app.route("/api/auth/password", methods=["PUT"])
@limiter.limit("5 per 15 minutes", error_message="Too many password change attempts. Please try again later.")
@login_required
def change_password():
    user = current_user()
    data = _body()
    current = data.get("current_password", data.get("currentPassword"))
    new = data.get("new_password", data.get("newPassword"))
    if not isinstance(current, str) or not current:
        raise BadRequestError("Current password is required")
    if not isinstance(new, str) or len(new) < MIN_PASSWORD_LENGTH:
        raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not check_password_hash(user.password_hash, current):
        raise UnauthorizedError("Current password is incorrect")
    if current == new:
        raise BadRequestError("New password must be different from current password")
    user.password_hash = generate_password_hash(new)
    db.session.commit()
    app.logger.info("Password changed for user %s", user.id)
    return ok(None, message="Password changed successfully")


# ── USERS (ADMIN) ─────────────────────────────────────────────────────────
@app.route("/api/users", methods=["GET"])
@role_required("admin")
def list_users():
    return ok([u.to_dict() for u in User.query.order_by(User.name).all()])


@app.route("/api/users/team/<int:team_id>", methods=["GET"])
@role_required("admin")
def list_team_users(team_id):
    return ok([u.to_dict() for u in User.query.filter_by(team_id=team_id).order_by(User.name).all()])


@app.route("/api/users", methods=["POST"])
@role_required("admin")
def create_user():
    user = create_user_account(clean_user_fields(_body()))
    app.logger.info("User %s created by admin %s", user.id, current_user().id)
    return ok(user.to_dict(), status=201)


@app.route("/api/users/<int:user_id>", methods=["PUT"])
@role_required("admin")
def update_user(user_id):
    user = _get_or_404(User, user_id, "User not found")
    fields = clean_user_fields(_body(), partial=True)
    if "email" in fields and fields["email"] != user.email:
        if User.query.filter(User.email == fields["email"], User.id != user.id).first():
            raise BadRequestError("User with this email already exists")
    password = fields.pop("password", None)
    if password:
        user.password_hash = generate_password_hash(password)
    for key, value in fields.items():
        setattr(user, key, value)
    db.session.commit()
    return ok(user.to_dict())


@app.route("/api/users/<int:user_id>", methods=["DELETE"])
@role_required("admin")
def delete_user(user_id):
    user = _get_or_404(User, user_id, "User not found")
    db.session.delete(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise BadRequestError("Cannot delete a user who still owns projects")
    app.logger.info("User %s deleted by admin %s", user_id, current_user().id)
    return ok(None, message="User deleted successfully")


# ── TEAMS (ADMIN) ─────────────────────────────────────────────────────────
def _clean_webhook(value):
    if value in (None, ""):
        return None
    if not validate_webhook_url(value) or len(value) > 2048:
        raise BadRequestError("webhook_url must be a valid HTTPS URL")
    return value


@app.route("/api/teams", methods=["POST"])
@role_required("admin")
def create_team():
    data = _body()
    name = _text(data.get("name"))
    if not name:
        raise BadRequestError("Team name is required")
    team = Team(name=name, description=data.get("description"),
                webhook_url=_clean_webhook(data.get("webhook_url")),
                created_by=current_user().id)
    db.session.add(team)
    db.session.commit()
    return ok(team.to_dict(), status=201)


@app.route("/api/teams", methods=["GET"])
@role_required("admin")
def list_teams():
    return ok([t.to_dict() for t in Team.query.order_by(Team.name).all()])


@app.route("/api/teams/<int:team_id>", methods=["GET"])
@role_required("admin")
def get_team(team_id):
    return ok(_get_or_404(Team, team_id, "Team not found").to_dict())


@app.route("/api/teams/<int:team_id>", methods=["PUT"])
@role_required("admin")
def update_team(team_id):
    team = _get_or_404(Team, team_id, "Team not found")
    if team.created_by != current_user().id:
        raise ForbiddenError("You can only update teams you created")
    data = _body()
    if "name" in data:
        name = _text(data.get("name"))
        if not name:
            raise BadRequestError("Team name cannot be empty")
        team.name = name
    if "description" in data:
        team.description = data.get("description")
    if "webhook_url" in data:
        team.webhook_url = _clean_webhook(data.get("webhook_url"))
    db.session.commit()
    return ok(team.to_dict())


@app.route("/api/teams/<int:team_id>", methods=["DELETE"])
@role_required("admin")
def delete_team(team_id):
    team = _get_or_404(Team, team_id, "Team not found")
    if team.created_by != current_user().id:
        raise ForbiddenError("You can only delete teams you created")
    db.session.delete(team)
    db.session.commit()
    return ok(None, message="Team deleted successfully")


def _summary_request():
    data = _body()
    date = data.get("date")
    if date:
        try:
            date = normalize_date(date)
        except ValueError as e:
            raise BadRequestError(str(e))
    return date or None, data.get("webhookUrl") or None


@app.route("/api/teams/summary/trigger", methods=["POST"])
@role_required("admin")
def trigger_daily_summary():
    date, webhook_url = _summary_request()
    app.logger.info("Daily summary triggered by %s for %s", current_user().email, date or "current IST date")
    result = DailySummaryJob().execute(date=date, webhook_url=webhook_url)
    return ok({
        "date": result["date"],
        "webhookSource": "request body" if webhook_url else "team or environment variable",
        "sent": result["success"],
        "failed": result["failed"],
    }, message="Daily summary workflow triggered successfully. Check server logs for detailed output.")


@app.route("/api/teams/summary/test", methods=["POST"])
@role_required("admin")
def test_daily_summary():
    date, webhook_url = _summary_request()
    if not webhook_url:
        raise BadRequestError("webhookUrl is required in request body")
    result = DailySummaryJob().execute(date=date, webhook_url=webhook_url)
    return ok({"date": result["date"], "sent": result["success"], "failed": result["failed"]},
              message="Daily summary test completed. Check server logs for detailed output.")


# ── PROJECTS ──────────────────────────────────────────────────────────────
def _assigned_project_ids(user_id):
    return select(ProjectAssignment.project_id).where(ProjectAssignment.user_id == user_id)


@app.route("/api/projects", methods=["POST"])
@role_required("admin")
def create_project():
    data = _body()
    name = _text(data.get("name"))
    if not name:
        raise BadRequestError("Project name is required")
    team_id = _positive_int(data.get("team_id"), "Valid team_id is required")
    _get_or_404(Team, team_id, "Team not found")
    project = Project(name=name, description=data.get("description"), team_id=team_id,
                      created_by=current_user().id)
    db.session.add(project)
    db.session.commit()
    return ok(project.to_dict(), status=201)


@app.route("/api/projects/<int:project_id>", methods=["PUT"])
@role_required("admin")
def update_project(project_id):
    project = _get_or_404(Project, project_id, "Project not found")
    if project.created_by != current_user().id:
        raise ForbiddenError("You can only update projects you created")
    data = _body()
    if "name" in data:
        name = _text(data.get("name"))
        if not name:
            raise BadRequestError("Project name cannot be empty")
        project.name = name
    if "description" in data:
        project.description = data.get("description")
    if "team_id" in data:
        team_id = _positive_int(data.get("team_id"), "Valid team_id is required")
        _get_or_404(Team, team_id, "Team not found")
        project.team_id = team_id
    db.session.commit()
    return ok(project.to_dict())


@app.route("/api/projects/<int:project_id>", methods=["DELETE"])
@role_required("admin")
def delete_project(project_id):
    project = _get_or_404(Project, project_id, "Project not found")
    if project.created_by != current_user().id:
        raise ForbiddenError("You can only delete projects you created")
    db.session.delete(project)
    db.session.commit()
    return ok(None, message="Project deleted successfully")


@app.route("/api/projects", methods=["GET"])
@login_required
def list_projects():
    user = current_user()
    q = Project.query
    if not user.is_admin:
        q = q.filter(or_(Project.team_id == user.team_id,
                         Project.id.in_(_assigned_project_ids(user.id))))
    return ok([p.to_dict() for p in q.order_by(Project.name).all()])


@app.route("/api/projects/my", methods=["GET"])
@login_required
def my_projects():
    user = current_user()
    projects = (Project.query
                .filter(Project.id.in_(_assigned_project_ids(user.id)))
                .order_by(Project.name)
                .all())
    return ok([p.to_dict() for p in projects])


@app.route("/api/projects/team/<int:team_id>", methods=["GET"])
@login_required
def team_projects(team_id):
    user = current_user()
    if not user.is_admin and user.team_id != team_id:
        raise ForbiddenError("You can only view projects of your own team")
    return ok([p.to_dict() for p in Project.query.filter_by(team_id=team_id).order_by(Project.name).all()])


@app.route("/api/projects/<int:project_id>", methods=["GET"])
@login_required
def get_project(project_id):
    return ok(_get_or_404(Project, project_id, "Project not found").to_dict())


# ── ASSIGNMENTS ───────────────────────────────────────────────────────────
def _assignment_ids():
    data = _body()
    return (_positive_int(data.get("project_id"), "Valid project_id is required"),
            _positive_int(data.get("user_id"), "Valid user_id is required"))


def _assignment_dict(assignment, project=None, user=None):
    data = assignment.to_dict()
    if project is not None:
        data["project_name"] = project.name
        data["team_id"] = project.team_id
    if user is not None:
        data["user_name"] = user.name
        data["user_email"] = user.email
    return data


@app.route("/api/assignments", methods=["POST"])
@role_required("admin")
def assign_project():
    project_id, user_id = _assignment_ids()
    _get_or_404(Project, project_id, "Project not found")
    _get_or_404(User, user_id, "User not found")
    if is_assigned(user_id, project_id):
        raise BadRequestError("User is already assigned to this project")
    assignment = ProjectAssignment(project_id=project_id, user_id=user_id)
    db.session.add(assignment)
    db.session.commit()
    return ok(assignment.to_dict(), status=201)


@app.route("/api/assignments", methods=["DELETE"])
@role_required("admin")
def unassign_project():
    project_id, user_id = _assignment_ids()
    assignment = ProjectAssignment.query.filter_by(project_id=project_id, user_id=user_id).first()
    if assignment is None:
        raise NotFoundError("Assignment not found")
    db.session.delete(assignment)
    db.session.commit()
    return ok(None, message="User unassigned from project successfully")


@app.route("/api/assignments/user/<int:user_id>", methods=["GET"])
@login_required
def user_assignments(user_id):
    user = current_user()
    if not user.is_admin and user.id != user_id:
        raise UnauthorizedError("You can only access your own assignments")
    rows = (db.session.query(ProjectAssignment, Project)
            .join(Project, Project.id == ProjectAssignment.project_id)
            .filter(ProjectAssignment.user_id == user_id)
            .order_by(Project.name)
            .all())
    return ok([_assignment_dict(a, project=p) for a, p in rows])


@app.route("/api/assignments/project/<int:project_id>", methods=["GET"])
@role_required("admin")
def project_assignments(project_id):
    rows = (db.session.query(ProjectAssignment, User)
            .join(User, User.id == ProjectAssignment.user_id)
            .filter(ProjectAssignment.project_id == project_id)
            .order_by(User.name)
            .all())
    return ok([_assignment_dict(a, user=u) for a, u in rows])


# ── DAILY LOGS ────────────────────────────────────────────────────────────
@app.route("/api/logs", methods=["POST"])
@login_required
def create_log():
    user = current_user()
    fields = clean_log_entry(_body())
    if not is_assigned(user.id, fields["project_id"]):
        raise ForbiddenError("You are not assigned to this project")
    log = DailyLog(user_id=user.id, **fields)
    db.session.add(log)
    db.session.commit()
    return ok(log.to_dict(), status=201)


@app.route("/api/logs/bulk", methods=["POST"])
@login_required
def create_logs_bulk():
    user = current_user()
    entries = request.get_json(silent=True)
    if not isinstance(entries, list) or not entries:
        raise BadRequestError("Request body must be an array with at least one log entry")

    cleaned = []
    for i, entry in enumerate(entries):
        suffix = f" (entry {i + 1})"
        if not isinstance(entry, dict):
            raise BadRequestError("Each log entry must be an object" + suffix)
        fields = clean_log_entry(entry, suffix=suffix)
        if not is_assigned(user.id, fields["project_id"]):
            raise ForbiddenError("You are not assigned to this project" + suffix)
        cleaned.append(fields)

    logs = [DailyLog(user_id=user.id, **fields) for fields in cleaned]
    db.session.add_all(logs)
    db.session.commit()
    app.logger.info("User %s created %s logs in bulk", user.id, len(logs))
    return ok([log.to_dict() for log in logs], status=201)


def _apply_date_filters(q):
    date, start, end = _query_date("date"), _query_date("startDate"), _query_date("endDate")
    if date:
        return q.filter(DailyLog.date == date)
    if start:
        q = q.filter(DailyLog.date >= start)
    if end:
        q = q.filter(DailyLog.date <= end)
    return q


@app.route("/api/logs/my", methods=["GET"])
@login_required
def my_logs():
    user = current_user()
    q = _apply_date_filters(DailyLog.query.filter(DailyLog.user_id == user.id))
    logs = q.order_by(DailyLog.date.desc(), DailyLog.created_at.desc(), DailyLog.id.desc()).all()
    return ok([log.to_dict() for log in logs])


@app.route("/api/logs/team/<int:team_id>", methods=["GET"])
@role_required("admin")
def team_logs(team_id):
    _get_or_404(Team, team_id, "Team not found")
    q = (DailyLog.query
         .join(Project, Project.id == DailyLog.project_id)
         .filter(Project.team_id == team_id))
    q = _apply_date_filters(q)
    user_id = request.args.get("userId")
    if user_id:
        q = q.filter(DailyLog.user_id == _positive_int(user_id, "userId must be a positive integer"))
    project_id = request.args.get("projectId")
    if project_id:
        q = q.filter(DailyLog.project_id == _positive_int(project_id, "projectId must be a positive integer"))

    sort = request.args.get("sort", "date")
    order = request.args.get("order", "desc").lower()
    if sort not in LOG_SORT_FIELDS:
        raise BadRequestError(f"sort must be one of {', '.join(LOG_SORT_FIELDS)}")
    if order not in ("asc", "desc"):
        raise BadRequestError("order must be asc or desc")
    column = LOG_SORT_FIELDS[sort]
    primary = column.asc() if order == "asc" else column.desc()
    q = q.order_by(primary, DailyLog.created_at.desc(), DailyLog.id.desc())

    page, per_page = request.args.get("page"), request.args.get("per_page")
    if page is None and per_page is None:
        return ok([log.to_dict() for log in q.all()])

    page = _positive_int(page or 1, "page must be a positive integer")
    per_page = _positive_int(per_page or PER_PAGE_CHOICES[0], "per_page must be a positive integer")
    if per_page not in PER_PAGE_CHOICES:
        raise BadRequestError(f"per_page must be one of {', '.join(str(n) for n in PER_PAGE_CHOICES)}")
    total = q.count()
    logs = q.offset((page - 1) * per_page).limit(per_page).all()
    return ok([log.to_dict() for log in logs], pagination={
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": ceil(total / per_page) if total else 0,
    })


@app.route("/api/logs/<int:log_id>", methods=["GET"])
@login_required
def get_log(log_id):
    return ok(get_log_for(log_id, current_user(), "view").to_dict())


@app.route("/api/logs/<int:log_id>", methods=["PUT"])
@login_required
def update_log(log_id):
    log = get_log_for(log_id, current_user(), "update")
    fields = clean_log_entry(_body(), partial=True)
    if "project_id" in fields and fields["project_id"] != log.project_id:
        if not is_assigned(log.user_id, fields["project_id"]):
            raise ForbiddenError("You are not assigned to this project")
    for key, value in fields.items():
        setattr(log, key, value)
    db.session.commit()
    return ok(log.to_dict())


@app.route("/api/logs/<int:log_id>", methods=["DELETE"])
@login_required
def delete_log(log_id):
    log = get_log_for(log_id, current_user(), "delete")
    db.session.delete(log)
    db.session.commit()
    return ok(None, message="Log deleted successfully")


# ── HEALTH ────────────────────────────────────────────────────────────────
@app.route("/health", methods=["GET"])
def health():
    return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}


app.register_blueprint(dashboard_bp, url_prefix="/dashboard")
app.register_blueprint(team_chat_bp, url_prefix="/api/team-chat")
app.register_blueprint(log_assistant_bp, url_prefix="/api/chat")


# ── CLI ───────────────────────────────────────────────────────────────────
@app.cli.command("init-db")
def init_db_command():
    """Create all tables."""
    db.create_all()
    click.echo("Database tables created.")


@app.cli.command("seed")
def seed_command():
    """Create or refresh the admin account and its default team."""
    email = os.environ.get("ADMIN_EMAIL", "admin@gm.com").lower()
    password = os.environ.get("ADMIN_PASSWORD", "Test@123")
    name = os.environ.get("ADMIN_NAME", "Admin User")
    if not os.environ.get("ADMIN_PASSWORD"):
        app.logger.warning("ADMIN_PASSWORD not set; seeding the default admin password")

    db.create_all()
    admin = User.query.filter_by(email=email).first()
    if admin is None:
        admin = User(email=email, name=name, role="admin", password_hash=generate_password_hash(password))
        db.session.add(admin)
        db.session.flush()
    else:
        admin.name, admin.role = name, "admin"
        admin.password_hash = generate_password_hash(password)

    team = Team.query.filter_by(name="Default Team").first()
    if team is None:
        team = Team(name="Default Team", description="Created by seed", created_by=admin.id)
        db.session.add(team)
        db.session.flush()
    admin.team_id = team.id
    db.session.commit()
    click.echo(f"Admin {email} seeded into team '{team.name}'.")


@app.cli.command("send-daily-summary")
@click.option("--date", "date_", default=None, help="YYYY-MM-DD, defaults to today in IST")
@click.option("--webhook-url", default=None, help="Fallback webhook for teams without one")
def send_daily_summary_command(date_, webhook_url):
    """Run the Teams daily summary now."""
    result = DailySummaryJob().execute(date=date_, webhook_url=webhook_url)
    click.echo(f"{result['date']}: {result['success']} sent, {result['failed']} failed")


# ── SCHEDULER ─────────────────────────────────────────────────────────────
_scheduler = None


def maybe_start_scheduler(force=False):
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    if force or os.environ.get("RUN_SCHEDULER", "false").lower() == "true":
        from scheduler import create_scheduler
        _scheduler = create_scheduler(app)
    return _scheduler


maybe_start_scheduler()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 7060))
    maybe_start_scheduler(force=True)
    app.run(host="0.0.0.0", port=port, debug=IS_DEVELOPMENT, use_reloader=False, threaded=True)
