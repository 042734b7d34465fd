# Stratus Error Taxonomy
# Every upstream failure is translated into one of these before it leaves an
# adapter, so callers never see requests exceptions or provider-shaped bodies.

from typing import Optional


class StratusError(Exception):
    """Base for all domain errors. ``code`` is stable and machine-readable."""

    code = "internal_error"
    http_status = 500

    def __init__(self, message: str = "", *, provider: Optional[str] = None,
                 field: Optional[str] = None, status: Optional[int] = None):
        self.message = message or self.__class__.__name__
        self.provider = provider
        self.field = field
        self.status = status
        super().__init__(self.message)

    def to_dict(self) -> dict:
        d = {"code": self.code, "message": self.message}
        if self.provider:
            d["provider"] = self.provider
        if self.field:
            d["field"] = self.field
        return d


# ── Provider errors ──────────────────────────────────────────────────


class ProviderError(StratusError):
    code = "provider_error"
    http_status = 502


class ProviderNotFound(ProviderError):
    code = "provider_not_found"
    http_status = 404


class ProviderInactive(ProviderError):
    code = "provider_inactive"
    http_status = 409


class MissingCredentials(ProviderError):
    code = "missing_credentials"
    http_status = 424


class RateLimited(ProviderError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, **kw):
        super().__init__(message, **kw)
        self.retry_after = retry_after


class ProviderUnavailable(ProviderError):
    code = "provider_unavailable"
    http_status = 503


class UpstreamValidation(ProviderError):
    code = "upstream_validation"
    http_status = 422


class UnsupportedAction(ProviderError):
    code = "unsupported_action"
    http_status = 422


# ── Domain errors ────────────────────────────────────────────────────


class InsufficientFunds(StratusError):
    code = "insufficient_funds"
    http_status = 402


class Forbidden(StratusError):
    code = "forbidden"
    http_status = 403


class InvalidCredentialFormat(StratusError):
    code = "invalid_credential_format"
    http_status = 422


class CredentialConflict(StratusError):
    code = "credential_conflict"
    http_status = 409


class CredentialNotFound(StratusError):
    code = "credential_not_found"
    http_status = 404


class NotFound(StratusError):
    code = "not_found"
    http_status = 404


class InvalidTransition(StratusError):
    code = "invalid_transition"
    http_status = 409


class ValidationError(StratusError):
    code = "validation_error"
    http_status = 422


# ── Upstream normalization ───────────────────────────────────────────


def _extract_detail(kind: str, body) -> tuple[str, Optional[str]]:
    """Pull (message, field) out of a provider error body.

    Linode:       {"errors": [{"field": "region", "reason": "..."}]}
    DigitalOcean: {"id": "unprocessable_entity", "message": "..."}
    """
    if not isinstance(body, dict):
        return (str(body)[:300] if body else "", None)
    errs = body.get("errors")
    if isinstance(errs, list) and errs:
        first = errs[0] if isinstance(errs[0], dict) else {}
        reasons = [e.get("reason", "") for e in errs if isinstance(e, dict)]
        return ("; ".join(r for r in reasons if r), first.get("field"))
    if body.get("message"):
        return (str(body["message"]), None)
    return ("", None)


def normalize_http_error(kind: str, status: int, body=None,
                         retry_after: Optional[float] = None) -> ProviderError:
    """Map an upstream HTTP failure to the normalized taxonomy."""
    message, field = _extract_detail(kind, body)
    if status == 429:
        return RateLimited(message or f"{kind} rate limit exceeded",
                           provider=kind, status=status, retry_after=retry_after)
    if status == 401:
        return MissingCredentials(message or f"{kind} rejected the API token",
                                  provider=kind, status=status)
    if status >= 500:
        return ProviderUnavailable(message or f"{kind} returned HTTP {status}",
                                   provider=kind, status=status)
    if 400 <= status < 500:
        return UpstreamValidation(message or f"{kind} rejected the request (HTTP {status})",
                                  provider=kind, field=field, status=status)
    return ProviderError(message or f"unexpected HTTP {status} from {kind}",
                         provider=kind, status=status)


USER_MESSAGES = {
    "provider_not_found": "The selected provider is not configured.",
    "provider_inactive": "The selected provider is currently disabled.",
    "missing_credentials": "The provider API credentials are missing or were rejected.",
    "rate_limited": "The provider is rate limiting requests. Please try again shortly.",
    "provider_unavailable": "The provider is temporarily unavailable. Please try again later.",
    "upstream_validation": "The provider rejected the request.",
    "unsupported_action": "That action is not supported.",
    "insufficient_funds": "Insufficient wallet balance.",
    "forbidden": "You do not have access to that resource.",
    "invalid_credential_format": "The SSH public key is not in a recognised OpenSSH format.",
    "credential_conflict": "That SSH key is already registered.",
    "credential_not_found": "SSH key not found.",
}


def user_message(err: StratusError) -> str:
    """Operator-facing text for an error; validation errors keep the upstream detail."""
    base = USER_MESSAGES.get(err.code)
    if base is None:
        return err.message
    if err.code == "upstream_validation" and err.message:
        return f"{base} {err.message}"
    return base
