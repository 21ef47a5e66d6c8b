"""Failure types raised by the prediction pipeline and its clients.

Each error carries the HTTP status it maps to and the public message shown
in the failure envelope. The underlying library exception, when there is
one, is chained as ``__cause__`` and rendered as the envelope's ``error``.
"""


class PredictionError(Exception):
    status_code = 500
    message = "Prediction failed"

    def __init__(self, detail: str = None):
        super().__init__(detail or self.message)
        self.detail = detail or self.message


class ValidationError(PredictionError):
    """Missing, non-image or oversized upload."""
    status_code = 400
    message = "Invalid upload"

    def __init__(self, detail: str = None):
        super().__init__(detail)
        # The client sees the specific reason as the message
        self.message = self.detail


class ModelLoadError(PredictionError):
    message = "Model not loaded. Please try again later."


class InferenceError(PredictionError):
    pass


class StorageError(PredictionError):
    pass


class PersistenceError(PredictionError):
    pass
