"""Domain errors.

Every error the core raises derives from ``BoxOfficeError``. Each carries a
stable machine ``code`` and the HTTP status the API surface answers with.
They are raised inside a transaction block, so leaving the block through one
of them rolls the transaction back.
"""


class BoxOfficeError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class InvalidRequest(BoxOfficeError):
    code = "invalid_request"
    status_code = 400


# --- inventory / catalog ---
class InsufficientStock(BoxOfficeError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, ticket_type_name: str, remaining: int):
        super().__init__(
            f'Insufficient stock for "{ticket_type_name}": '
            f'{remaining} remaining',
            ticket_type_name=ticket_type_name, remaining=remaining,
        )
        self.ticket_type_name = ticket_type_name
        self.remaining = remaining


class TicketTypeNotFound(BoxOfficeError):
    code = "ticket_type_not_found"
    status_code = 400


class InvalidPrice(BoxOfficeError):
    code = "invalid_price"
    status_code = 400


class InvalidItems(BoxOfficeError):
    code = "invalid_items"
    status_code = 400


class EventNotFound(BoxOfficeError):
    code = "event_not_found"
    status_code = 404


class EventNotPublished(BoxOfficeError):
    code = "event_not_published"
    status_code = 400


class LedgerInvariantViolation(BoxOfficeError):
    code = "ledger_invariant_violation"
    status_code = 500


# --- holds ---
class HoldNotFound(BoxOfficeError):
    code = "hold_not_found"
    status_code = 404


class HoldExpired(BoxOfficeError):
    code = "hold_expired"
    status_code = 409


class HoldNotFinalizable(BoxOfficeError):
    code = "hold_not_finalizable"
    status_code = 409


class HoldEventMismatch(BoxOfficeError):
    code = "hold_event_mismatch"
    status_code = 400


# --- payments ---
class PaymentNotFound(BoxOfficeError):
    code = "payment_not_found"
    status_code = 404


class PaymentNotPaid(BoxOfficeError):
    # finalize no-op; pollers treat it as "not yet"
    code = "payment_not_paid"
    status_code = 409


class PaymentClosed(BoxOfficeError):
    code = "payment_closed"
    status_code = 409


class AmountMismatch(BoxOfficeError):
    # the hold no longer prices to what the payment charges
    code = "amount_mismatch"
    status_code = 409


class UnknownProvider(BoxOfficeError):
    code = "unknown_provider"
    status_code = 404


class ProviderAuthenticityFailure(BoxOfficeError):
    code = "invalid_signature"
    status_code = 401


class ProviderUnavailable(BoxOfficeError):
    code = "provider_unavailable"
    status_code = 502
