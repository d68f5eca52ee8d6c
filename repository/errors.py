class RepositoryError(Exception):
    """Base class for domain rule violations raised by repository functions."""

    status_code = 400
    code = "validation_error"


class ConflictError(RepositoryError):
    status_code = 409
    code = "conflict"


class ForbiddenError(RepositoryError):
    status_code = 403
    code = "forbidden"


class NotFoundError(RepositoryError):
    status_code = 404
    code = "not_found"
