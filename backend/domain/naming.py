"""Safe file and storage path components built from stored identifiers."""


def safe_path_component(value: str, fallback: str = "unknown") -> str:
    """Keep alphanumerics, '-' and '_'. Never returns an empty string."""
    cleaned = "".join(c for c in str(value) if c.isalnum() or c in "-_")
    return cleaned or fallback
