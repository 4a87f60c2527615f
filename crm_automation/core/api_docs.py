from crm_automation.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Missing or invalid tenant headers"),
    404: ("not_found", "Resource not found"),
    409: ("conflict", "Name already exists for this business"),
    422: ("validation_error", "Validation failed"),
    500: ("internal_error", "Internal server error"),
}


def error_responses(*status_codes: int, path: str = "/workflows/rules") -> dict[int, dict]:
    """OpenAPI `responses` entries rendering the shared error envelope."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
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
                            "path": path,
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
