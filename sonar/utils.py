"""Utility functions for common operations across the application."""


def normalize_username(username: str) -> str:
    """Strip surrounding whitespace from a username. Case is preserved."""
    return username.strip()


def escape_like(query: str) -> str:
    """Escape LIKE wildcards (%, _, \\) so the query matches literally."""
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def page_count(total: int, limit: int) -> int:
    """Number of pages needed to show `total` items `limit` at a time."""
    return (total + limit - 1) // limit
