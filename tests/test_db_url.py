from app.db.url import normalize_database_url, resolve_database_url


def test_postgres_scheme_uses_psycopg():
    assert normalize_database_url("postgres://u:p@db:5432/ledger") == "postgresql+psycopg://u:p@db:5432/ledger"
    assert (
        normalize_database_url("postgresql+asyncpg://u:p@db/ledger")
        == "postgresql+psycopg://u:p@db/ledger"
    )


def test_ssl_param_translated_to_sslmode():
    assert normalize_database_url("postgres://db/ledger?ssl=true") == "postgresql+psycopg://db/ledger?sslmode=require"
    assert normalize_database_url("postgres://db/ledger?ssl=false") == "postgresql+psycopg://db/ledger?sslmode=disable"
    assert (
        normalize_database_url("postgres://db/ledger?ssl=true&sslmode=verify-full")
        == "postgresql+psycopg://db/ledger?sslmode=verify-full"
    )


def test_non_postgres_and_blank_urls_pass_through():
    assert normalize_database_url("mysql://u@db/ledger") == "mysql://u@db/ledger"
    assert normalize_database_url("  ") == ""


def test_resolve_prefers_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://env/ledger")
    assert resolve_database_url("postgres://fallback/ledger") == "postgresql+psycopg://env/ledger"

    monkeypatch.setenv("DATABASE_URL", "")
    assert resolve_database_url("postgres://fallback/ledger") == "postgresql+psycopg://fallback/ledger"
