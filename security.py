# security.py
from functools import wraps

from flask import g, session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from errors import UnauthorizedError
from models import db, User

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def start_session(user: User):
    session.clear()
    session.permanent = True
    session["user_id"] = user.id
    session["role"] = user.role


def current_user() -> User:
    user_id = session.get("user_id")
    cached = g.get("current_user")
    if cached is not None and cached.id == user_id:
        return cached
    user = db.session.get(User, user_id) if user_id else None
    if user is None:
        session.clear()
        raise UnauthorizedError("Authentication required")
    g.current_user = user
    return user


def login_required(f):
    @wraps(f)
    def _wrap(*a, **kw):
        current_user()
        return f(*a, **kw)
    return _wrap


def role_required(*roles):
    def decorator(f):
        @wraps(f)
        def _wrap(*a, **kw):
            user = current_user()
            if user.role not in roles:
                raise UnauthorizedError("Admin access required" if roles == ("admin",) else "Permission denied")
            return f(*a, **kw)
        return _wrap
    return decorator
