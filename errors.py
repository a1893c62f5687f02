# errors.py
"""Typed failures raised by the billing core.

Routes never build HTTPException for domain conditions; main.py maps every
BillingError to a JSON body of the form {"error": kind, "detail": message}.
"""


class BillingError(Exception):
  status_code = 400
  kind = "billing_error"

  def __init__(self, message: str):
    super().__init__(message)
    self.message = message


class ValidationError(BillingError):
  status_code = 422
  kind = "validation_error"


class NotFoundError(BillingError):
  status_code = 404
  kind = "not_found"


class ConflictError(BillingError):
  status_code = 409
  kind = "conflict"


class StateError(BillingError):
  status_code = 409
  kind = "state_error"


class RateNotFoundError(NotFoundError):
  kind = "rate_not_found"


class InvalidReadingError(ValidationError):
  kind = "invalid_reading"


class OverpaymentError(ConflictError):
  kind = "overpayment"


class RateConflictError(ConflictError):
  kind = "rate_conflict"
