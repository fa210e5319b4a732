class CalculatorError(Exception):
    """Base for every error raised by the calculator service."""


class ConfigError(CalculatorError):
    pass


class StoreUnavailable(CalculatorError):
    """Connectivity probe or schema setup failed at startup."""


class RequestError(CalculatorError):
    """Recovered per request and turned into an HTTP error response.

    ``message`` is what the client sees; the constructor argument is the
    internal detail and only goes to the logs.
    """

    status_code = 500
    message = "internal error"

    def __init__(self, detail=None):
        super().__init__(detail or self.message)


class MalformedRequest(RequestError):
    status_code = 400
    message = "invalid JSON body"


class MethodNotAllowed(RequestError):
    status_code = 405
    message = "method not allowed"

    def __init__(self, allowed=(), detail=None):
        super().__init__(detail)
        self.allowed = sorted(allowed)


class PersistenceError(RequestError):
    status_code = 500
    message = "database error"


class ValueOutOfRange(MalformedRequest):
    """The delta is finite but the new total would not be."""

    message = "result out of range"
