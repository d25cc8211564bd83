"""PII redaction for logs and audit exports.

Snapshot payloads and task contact documents routinely carry customer
names, phone numbers and addresses. They are stored verbatim (the audit
record must not change), but anything written to logs or plain-text
exports goes through redact_sensitive() first.
"""

REDACT_FIELDS = {
    # Address fields
    "address",
    "street",
    "city",
    "postal_code",
    "zip",
    "subdistrict",
    "district",
    # Personal info
    "name",
    "phone",
    "mobile",
    "email",
    "line_id",
    "recipient",
    "contact_person",
    # Credentials
    "token",
    "secret",
    "password",
    "api_key",
}

# Keys that contain a redacted substring but are identifiers, not PII.
_ALLOWED_KEYS = {"provider_name", "task_name"}

REDACTED = "[REDACTED]"


def redact_sensitive(
    data: dict | list | str | None, _depth: int = 0
) -> dict | list | str | None:
    """Recursively redact sensitive fields from data structures.

    Scans dictionaries for keys containing known sensitive field names
    and replaces their values with '[REDACTED]'. Handles nested structures.

    Args:
        data: The data structure to redact (dict, list, str, or None)
        _depth: Internal recursion depth counter (prevents infinite loops)

    Returns:
        A copy of the data with sensitive fields redacted.

    Example:
        >>> redact_sensitive({'phone': '0812345678', 'cod_amount': 450})
        {'phone': '[REDACTED]', 'cod_amount': 450}
    """
    if _depth > 10:
        return REDACTED
    if data is None:
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, list):
        return [redact_sensitive(item, _depth + 1) for item in data]
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower().replace("-", "_")
            if key_lower not in _ALLOWED_KEYS and any(
                field in key_lower for field in REDACT_FIELDS
            ):
                result[key] = REDACTED
            else:
                result[key] = redact_sensitive(value, _depth + 1)
        return result
    return data
