class DispatchError(Exception):
    """
    Base for every definitive business outcome surfaced to callers.
    Never retried automatically; rendered as {"code", "detail"}.
    """

    code = "DISPATCH_ERROR"
    status_code = 400

    def __init__(self, message: str | None = None):
        self.message = message or self.code.replace("_", " ").capitalize()
        super().__init__(self.message)


class NotFound(DispatchError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(DispatchError):
    code = "INVALID_TRANSITION"
    status_code = 409


class ConcurrencyConflict(DispatchError):
    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class AlreadyAssigned(DispatchError):
    code = "ALREADY_ASSIGNED"
    status_code = 409


class OfferExpired(DispatchError):
    code = "OFFER_EXPIRED"
    status_code = 410


class NotEligible(DispatchError):
    code = "NOT_ELIGIBLE"
    status_code = 409


class NoEligibleTechnicians(DispatchError):
    code = "NO_ELIGIBLE_TECHNICIANS"
    status_code = 422


class InvalidRate(DispatchError):
    code = "INVALID_RATE"
    status_code = 400


class ConfigMissing(DispatchError):
    # only used internally to trigger the commission fallback
    code = "CONFIG_MISSING"
    status_code = 500


class Forbidden(DispatchError):
    code = "FORBIDDEN"
    status_code = 403


class StoreUnavailable(DispatchError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
