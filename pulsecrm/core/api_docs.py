from pulsecrm.schemas.common import ErrorOut


# Default (code, message) per status; routes override messages with the
# detail they actually raise.
_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Invalid request payload"),
    401: ("unauthorized", "Invalid credentials"),
    403: ("forbidden", "User is inactive"),
    404: ("not_found", "Resource not found"),
    409: ("conflict", "Email already exists for another customer"),
    422: ("validation_error", "Validation failed"),
    429: ("rate_limited", "Too many failed attempts. Try again later."),
    500: ("internal_error", "Internal server error"),
    502: ("bad_gateway", "AI provider request failed"),
    503: ("service_unavailable", "Delivery queue is full. Try again later."),
}

_VALIDATION_DETAILS = [
    {
        "field": "rules.conditions.0.value",
        "message": "Field required",
        "type": "missing",
    }
]


def error_responses(
    *status_codes: int,
    path: str = "/",
    messages: dict[int, str] | None = None,
) -> dict[int, dict]:
    """OpenAPI ``responses`` entries for the error envelope of one route."""
    messages = messages or {}
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        message = messages.get(status_code, message)
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                            "path": path,
                            "details": _VALIDATION_DETAILS if status_code == 422 else None,
                        }
                    }
                }
            },
        }
    return responses
