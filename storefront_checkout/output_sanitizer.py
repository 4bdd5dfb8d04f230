"""Output sanitization — redact payment secrets, card numbers and credentials before returning to the LLM."""
import re

# Provider secrets: PaymentIntent client secrets and API keys
_PAYMENT_SECRET_PATTERNS = [
    re.compile(r"\b(?:pi|seti)_[A-Za-z0-9]+_secret_[A-Za-z0-9]+\b"),   # client secrets
    re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]{10,}\b"),        # secret / restricted keys
    re.compile(r"\bpk_(?:live|test)_[A-Za-z0-9]{10,}\b"),               # publishable keys
    re.compile(r"\bwhsec_[A-Za-z0-9]{10,}\b"),                          # webhook secrets
]

_CREDENTIAL_PATTERNS = [
    re.compile(r"(?i)\b(api[_-]?key|client[_-]?secret|password|token|authorization)\b\s*[=:]\s*\S+"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-]{10,}"),
    re.compile(r"ghp_[a-zA-Z0-9]{36}"),
    re.compile(r"AKIA[A-Z0-9]{16}"),
]

# Credit card number patterns (13-19 digits, optionally separated)
_CARD_NUMBER_PATTERN = re.compile(
    r"\b(?:\d{4}[-\s]?){2,4}\d{1,4}\b"
)

# ANSI escape codes
_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


def redact_email(email: str) -> str:
    """Partially redact an email address."""
    if "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[0]}***@{domain}"


def sanitize_output(text: str, max_chars: int = 50000) -> str:
    """
    Sanitize text before returning it to the LLM or the debug log.

    - Strips ANSI escape codes
    - Redacts client secrets and provider keys
    - Redacts credential patterns
    - Redacts credit card numbers
    - Truncates to max_chars
    """
    text = _ANSI_PATTERN.sub("", text)

    for pattern in _PAYMENT_SECRET_PATTERNS:
        text = pattern.sub("[SECRET REDACTED]", text)

    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub("[REDACTED]", text)

    text = _CARD_NUMBER_PATTERN.sub("[CARD REDACTED]", text)

    if len(text) > max_chars:
        text = text[:max_chars] + f"\n\n[... truncated at {max_chars} chars]"

    return text
