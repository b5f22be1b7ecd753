from fastapi.responses import JSONResponse

from utils.errors import AppError, UpstreamError


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data or {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data or {},
            "error": error_code,
            "message": message,
        }
    )


def app_error_response(exc: AppError):
    """Render an AppError with its status, code and detail map."""
    data = dict(exc.details)
    if isinstance(exc, UpstreamError):
        data["retryable"] = exc.retryable
    return error_response(exc.error_code, status=exc.status_code, message=exc.message, data=data)
