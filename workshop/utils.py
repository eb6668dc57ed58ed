import re


def slugify(s: str) -> str:
    s = (s or "").strip().lower()
    s = re.sub(r"[^a-z0-9\-]+", "-", s)
    return re.sub(r"-+", "-", s).strip("-")


def extension_for_mime(mime_type: str) -> str:
    """``image/png`` -> ``png``; anything without a subtype -> ``bin``."""
    _, _, subtype = (mime_type or "").partition("/")
    return subtype.strip() or "bin"
