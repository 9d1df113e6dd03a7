class FeasibilityError(Exception):
    pass


class InvalidArgument(FeasibilityError, ValueError):
    """Caller misuse. Raised before any query runs."""


class NotFoundError(FeasibilityError, LookupError):
    pass


class UnknownDomainError(NotFoundError):
    pass


class TableNotFoundError(NotFoundError):
    pass
