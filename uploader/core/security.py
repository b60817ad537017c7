"""
Security utilities for GitHub Uploader

This module provides security-related utility functions including
secret validation, error sanitization, OAuth state handling and the HTTP
middleware that adds security headers and request correlation.
"""

import logging
import re
import secrets
import string
import time
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from uploader.core.logging_config import set_correlation_id

logger = logging.getLogger(__name__)

INSECURE_DEFAULTS = [
    "your-secret-key-here-change-in-production",
    "change-me",
    "secret",
    "password",
    "123456",
    "admin",
]


def generate_secure_secret_key(length: int = 64) -> str:
    """
    Generate a cryptographically secure secret key.

    Args:
        length: Length of the secret key (default: 64 characters)

    Returns:
        A secure random string suitable for use as SESSION_SECRET
    """
    alphabet = string.ascii_letters + string.digits + "-_"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def validate_secret_key(secret_key: str) -> None:
    """
    Validate that a secret key meets security requirements.

    Args:
        secret_key: The secret key to validate

    Raises:
        ValueError: If the secret key doesn't meet requirements
    """
    if not secret_key:
        raise ValueError("secret cannot be empty")

    if len(secret_key) < 32:
        raise ValueError("secret must be at least 32 characters long")

    if secret_key.lower() in [default.lower() for default in INSECURE_DEFAULTS]:
        raise ValueError("secret appears to be an insecure default value")

    # Check for sufficient entropy (at least 8 different characters)
    if len(set(secret_key.lower())) < 8:
        raise ValueError("secret has insufficient entropy (too repetitive)")


def generate_oauth_state(length: int = 32) -> str:
    """Random value bound to the browser to protect the OAuth callback."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def verify_oauth_state(expected: Optional[str], received: Optional[str]) -> bool:
    if not expected or not received:
        return False
    return secrets.compare_digest(expected, received)


def sanitize_error_message(error_msg: str) -> str:
    """
    Sanitize error messages to prevent sensitive data leakage.

    Args:
        error_msg: The raw error message to sanitize

    Returns:
        A sanitized error message safe for API responses
    """
    if not error_msg:
        return "Unknown error occurred"

    sensitive_patterns = [
        # GitHub tokens
        (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh*_****"),
        # Bearer headers
        (r"bearer\s+[A-Za-z0-9._\-]+", "Bearer ****"),
        # Token, secret and password assignments
        (r"token['\"\s]*[:=]['\"\s]*[^\s'\"]+", "token=****"),
        (r"secret['\"\s]*[:=]['\"\s]*[^\s'\"]+", "secret=****"),
        (r"password['\"\s]*[:=]['\"\s]*[^\s'\"]+", "password=****"),
    ]

    sanitized = str(error_msg)
    for pattern, replacement in sensitive_patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    # Truncate very long error messages
    if len(sanitized) > 200:
        sanitized = sanitized[:200] + "..."

    return sanitized


def mask_sensitive_data(data: dict, sensitive_keys: Optional[list] = None) -> dict:
    """
    Mask sensitive data in dictionaries for safe logging/responses.

    Args:
        data: Dictionary containing potentially sensitive data
        sensitive_keys: List of keys to mask (uses defaults if None)

    Returns:
        Dictionary with sensitive values masked
    """
    if sensitive_keys is None:
        sensitive_keys = ["secret", "password", "token", "credential", "auth"]

    masked_data = {}
    for key, value in data.items():
        if any(sensitive in key.lower() for sensitive in sensitive_keys):
            if isinstance(value, str) and len(value) > 8:
                # Show first 4 characters for identification, mask the rest
                masked_data[key] = value[:4] + "****"
            else:
                masked_data[key] = "****"
        else:
            masked_data[key] = value

    return masked_data


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")


def is_https_request(request: Request) -> bool:
    return request.headers.get("x-forwarded-proto") == "https" or request.url.scheme == "https"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers for XSS and other attack prevention.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "X-XSS-Protection": "1; mode=block",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
        }
        if is_https_request(request):
            security_headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        for header_name, header_value in security_headers.items():
            response.headers[header_name] = header_value

        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assign a correlation id to each request and log its outcome.

    An incoming X-Request-ID header is reused; the id is echoed back.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or secrets.token_hex(16)
        set_correlation_id(request_id)
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"{request.method} {request.url.path} - {response.status_code} - {duration_ms}ms",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": get_client_ip(request),
            },
        )
        return response
