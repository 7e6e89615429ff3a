import re
from typing import Any, List
from urllib.parse import urlparse

_ALLOWED_URI_SCHEMES = {"https", "http", "s3"}

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]

def clean_text(val: str | None, max_len: int = 5000) -> str | None:
    """Like clean_str but keeps line breaks (descriptions, notes)."""
    if val is None:
        return None
    s = str(val).strip()
    return s[:max_len] if s else None

def is_valid_uri(val: Any) -> bool:
    if not isinstance(val, str) or not val.strip():
        return False
    parsed = urlparse(val.strip())
    return parsed.scheme in _ALLOWED_URI_SCHEMES and bool(parsed.netloc)

def validate_commission_details(details: Any, *, max_reference_images: int) -> List[str]:
    """
    Shape checks for a commission submission. Returns a list of "field: problem" strings.
    """
    if not isinstance(details, dict):
        return ["details: must be a JSON object"]

    errors: List[str] = []
    if not clean_text(details.get("description")):
        errors.append("description: required")

    images = details.get("reference_images") or []
    if not isinstance(images, list):
        errors.append("reference_images: must be a list")
    else:
        if len(images) > max_reference_images:
            errors.append(f"reference_images: at most {max_reference_images} allowed")
        if any(not is_valid_uri(u) for u in images):
            errors.append("reference_images: each entry must be an http(s) or s3 URI")
    return errors
