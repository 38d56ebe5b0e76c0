PROBLEM_TYPE_DOMAIN = "https://example.com/problems/domain-error"
PROBLEM_TYPE_NOT_FOUND = "https://example.com/problems/not-found"
PROBLEM_TYPE_VALIDATION = "https://example.com/problems/validation-error"
PROBLEM_TYPE_INVALID_TRANSITION = "https://example.com/problems/invalid-transition"
PROBLEM_TYPE_VERSION_CONFLICT = "https://example.com/problems/version-conflict"
PROBLEM_TYPE_FORBIDDEN = "https://example.com/problems/forbidden"


class DomainError(Exception):
    status_code = 400
    default_title = "Domain Error"
    default_type = PROBLEM_TYPE_DOMAIN

    def __init__(
        self,
        detail: str,
        *,
        title: str | None = None,
        errors: list[dict[str, str]] | None = None,
        type: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.title = title or self.default_title
        self.errors = errors or []
        self.type = type or self.default_type


class NotFoundError(DomainError):
    status_code = 404
    default_title = "Not Found"
    default_type = PROBLEM_TYPE_NOT_FOUND


class ValidationFailure(DomainError):
    status_code = 422
    default_title = "Validation Error"
    default_type = PROBLEM_TYPE_VALIDATION


class InvalidTransitionError(DomainError):
    status_code = 409
    default_title = "Invalid Transition"
    default_type = PROBLEM_TYPE_INVALID_TRANSITION


class VersionConflictError(DomainError):
    """Raised when a caller's expected version no longer matches the stored row.

    Callers are expected to refresh the entry and retry with user confirmation.
    """

    status_code = 409
    default_title = "Version Conflict"
    default_type = PROBLEM_TYPE_VERSION_CONFLICT


class PermissionDeniedError(DomainError):
    status_code = 403
    default_title = "Forbidden"
    default_type = PROBLEM_TYPE_FORBIDDEN
