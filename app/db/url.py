from __future__ import annotations

import os
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_PSYCOPG_SCHEME = "postgresql+psycopg"
_POSTGRES_SCHEMES = {
    "postgres",
    "postgresql",
    "postgresql+asyncpg",
    "postgresql+psycopg2",
    _PSYCOPG_SCHEME,
}
_SSL_OFF = {"0", "false", "no", "off", "disable"}
_SSL_MODES = {"allow", "prefer", "require", "verify-ca", "verify-full"}


def normalize_database_url(url: str) -> str:
    """Point any Postgres URL at the psycopg 3 driver.

    Hosted providers often hand out ``postgres://`` URLs with ``?ssl=true``;
    psycopg only understands ``sslmode``, so ``ssl`` is translated.
    """
    url = (url or "").strip()
    if not url:
        return url

    parts = urlsplit(url)
    scheme = _PSYCOPG_SCHEME if parts.scheme in _POSTGRES_SCHEMES else parts.scheme

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    ssl_key = next((key for key in query if key.lower() == "ssl"), None)
    if ssl_key is not None:
        ssl_val = query.pop(ssl_key).lower().strip()
        if "sslmode" not in query:
            if ssl_val in _SSL_OFF:
                query["sslmode"] = "disable"
            elif ssl_val in _SSL_MODES:
                query["sslmode"] = ssl_val
            else:
                query["sslmode"] = "require"

    return urlunsplit((scheme, parts.netloc, parts.path, urlencode(query, doseq=True), parts.fragment))


def resolve_database_url(fallback: str | None = None) -> str:
    """``DATABASE_URL`` from the environment, else ``fallback``, normalized."""
    return normalize_database_url(os.getenv("DATABASE_URL", "").strip() or (fallback or ""))
