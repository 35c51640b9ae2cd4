"""
Engine errors. One exception class per failure kind.

Every error carries a stable machine-readable `code` and an HTTP status
hint. The engine raises them before touching any record, so a raised
error always means "nothing changed". The HTTP layer translates them
verbatim (see api_errors).
"""


class AMMError(Exception):
    """Base engine error."""

    code = "amm_error"
    http_status = 400

    def __init__(self, message: str = "", **details):
        self.message = message or self.__class__.__name__
        self.details = details
        super().__init__(self.message)


# --- Input ---

class InvalidInput(AMMError):
    code = "invalid_input"


class InvalidFeeRate(InvalidInput):
    code = "invalid_fee_rate"


class InvalidAmount(InvalidInput):
    code = "invalid_amount"


class LiquidityTooLow(InvalidInput):
    code = "liquidity_too_low"


class LiquidityTooHigh(InvalidInput):
    code = "liquidity_too_high"


class MarketEndTimeInPast(InvalidInput):
    code = "market_end_time_in_past"


class MarketDurationTooShort(InvalidInput):
    code = "market_duration_too_short"


class MarketDurationTooLong(InvalidInput):
    code = "market_duration_too_long"


# --- Arithmetic ---

class ArithmeticOverflow(AMMError):
    code = "arithmetic_overflow"
    http_status = 422


# --- Trading ---

class InsufficientShares(AMMError):
    code = "insufficient_shares"
    http_status = 422


class SlippageExceeded(AMMError):
    code = "slippage_exceeded"
    http_status = 409


class InsufficientLiquidity(AMMError):
    code = "insufficient_liquidity"
    http_status = 422


# --- Market state ---

class MarketNotFound(AMMError):
    code = "market_not_found"
    http_status = 404


class MarketAlreadyExists(AMMError):
    code = "market_already_exists"
    http_status = 409


class MarketClosed(AMMError):
    code = "market_closed"
    http_status = 409


class MarketResolved(AMMError):
    code = "market_resolved"
    http_status = 409


class MarketNotResolved(AMMError):
    code = "market_not_resolved"
    http_status = 409


class InvalidWinningOption(AMMError):
    code = "invalid_winning_option"


# --- Positions / settlement ---

class PositionNotFound(AMMError):
    code = "position_not_found"
    http_status = 404


class NoWinningsToClaim(AMMError):
    code = "no_winnings_to_claim"
    http_status = 422


class AlreadyClaimed(AMMError):
    code = "already_claimed"
    http_status = 409


# --- Admin ---

class Unauthorized(AMMError):
    code = "unauthorized"
    http_status = 403


class NotInitialized(AMMError):
    code = "not_initialized"
    http_status = 500


class AlreadyInitialized(AMMError):
    code = "already_initialized"
    http_status = 409


# --- Collaborators ---

class TransferFailed(AMMError):
    """Raised by the token-transfer service. Aborts the whole operation."""
    code = "transfer_failed"
    http_status = 402
