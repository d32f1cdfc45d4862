from onboarding_billing.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("VALIDATION_ERROR", "Invalid request"),
    401: ("UNAUTHORIZED", "Invalid admin key"),
    403: ("CSRF_VALIDATION_FAILED", "Invalid or missing checkout token"),
    404: ("NOT_FOUND", "Webhook event not found"),
    409: ("PAYMENT_ALREADY_COMPLETED", "Payment has already been completed for this submission"),
    429: ("RATE_LIMIT_EXCEEDED", "Too many payment attempts. Please try again later."),
    500: ("INTERNAL_ERROR", "Internal server error"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("HTTP_ERROR", "HTTP error"))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": "/example",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
