
def _normalize_db_url(url: str | None) -> str | None:
    # managed postgres providers hand out "postgres://..." , asyncpg/SQLAlchemy needs "postgresql+asyncpg://..."
    if not url:
        return None
    if url.startswith("postgres://",):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def is_unique_violation(exc, column: str | None = None) -> bool:
    """True when an IntegrityError came from a unique constraint (postgres 23505 / sqlite UNIQUE),
    optionally narrowed to a constraint that mentions `column`."""
    orig = getattr(exc, "orig", None)
    text = str(orig if orig is not None else exc).lower()
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        unique = sqlstate == "23505"
    else:
        unique = "unique" in text or "duplicate key" in text
    if not unique:
        return False
    return column is None or column.lower() in text
