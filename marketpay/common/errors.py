"""Typed errors for order and payment handlers.

Every error carries the HTTP status it maps to, so service code raises domain
errors and the API layer renders them uniformly as `{"error": message}`.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class MarketPayError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MarketPayError):
    status_code = 400


class ProviderConfigurationError(MarketPayError):
    """Seller-side setup problem the seller can act on (no location, no terminal)."""

    status_code = 400


class SignatureVerificationFailure(MarketPayError):
    status_code = 400


class Unauthorized(MarketPayError):
    status_code = 401


class NotFound(MarketPayError):
    status_code = 404


class StateConflict(MarketPayError):
    status_code = 409


class InsufficientInventory(MarketPayError):
    status_code = 409


class Expired(MarketPayError):
    status_code = 410


class UnprocessableOrder(MarketPayError):
    status_code = 422


class NoSellerRoute(MarketPayError):
    status_code = 500


class WebhookNotConfigured(MarketPayError):
    status_code = 500


class ProviderFailure(MarketPayError):
    """Upstream payment API error; message is passed through to the caller."""

    status_code = 502

    def __init__(self, message: str, provider: str = "unknown", status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.upstream_status = status


def register_error_handlers(app: FastAPI) -> None:
    """Render `MarketPayError` subclasses as JSON error bodies."""

    @app.exception_handler(MarketPayError)
    async def handle_marketpay_error(_: Request, exc: MarketPayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if any(error.get("type") == "json_invalid" for error in errors):
            message = "Invalid JSON body."
        elif errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ())[1:])
            message = f"{location}: {errors[0].get('msg')}" if location else errors[0].get("msg", "Invalid request.")
        else:
            message = "Invalid request."
        return JSONResponse(status_code=400, content={"error": message})
