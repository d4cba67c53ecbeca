# errors.py
from flask import jsonify


def ok(data=None, status=200, message=None, **extra):
    body = {"success": True, "data": data}
    body.update(extra)
    if message:
        body["message"] = message
    return jsonify(body), status


def fail(message, status, error=None):
    body = {"success": False, "message": message}
    if error:
        body["error"] = error
    return jsonify(body), status


class AppError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404
