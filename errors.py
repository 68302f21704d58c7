"""Error types raised by the board stores.

Every error carries the HTTP status the API answers with and a short code,
so the Flask layer can turn any of them into a structured JSON result.
"""


class BoardError(Exception):
    """Base class for board failures that are reported back to the caller."""

    status = 500
    code = "error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class NotFound(BoardError):
    """A project, stage or task id could not be resolved."""

    status = 404
    code = "not_found"


class ValidationFailed(BoardError):
    """A required field is missing or a value is out of its allowed range."""

    status = 400
    code = "validation_failed"


class CompletedStageConflict(BoardError):
    """Another stage of the project already holds the completed flag.

    Not a terminal error: the caller resubmits with ``on_conflict`` set to
    one of ``resolutions``.
    """

    status = 409
    code = "conflict"
    resolutions = ("replace", "keep")

    def __init__(self, holder):
        super().__init__(
            f'Stage "{holder["name"]}" is already the completed stage of this project'
        )
        self.holder = holder

    def to_dict(self):
        data = super().to_dict()
        data["holder"] = self.holder
        data["resolutions"] = list(self.resolutions)
        return data


class StoreFailure(BoardError):
    """The database call failed; the operation was rolled back."""

    status = 503
    code = "store_failure"
