from sqlalchemy import text

from app.database import engine

PAYMENT_COLUMNS = {
    "provider_id": "INTEGER",
    "provider_signature": "VARCHAR",
    "payment_method": "VARCHAR",
    "error_message": "TEXT",
}


def _get_table_columns(conn, table_name: str):
    if engine.dialect.name == "sqlite":
        result = conn.execute(text(f"PRAGMA table_info({table_name})"))
        return {row[1] for row in result}

    result = conn.execute(
        text(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = :table_name
            """
        ),
        {"table_name": table_name},
    )
    return {row[0] for row in result}


def ensure_payment_columns():
    """
    Patch payments table in-place for databases created before provider failover.
    """
    with engine.begin() as conn:
        columns = _get_table_columns(conn, "payments")
        if not columns:
            return
        for column_name, column_type in PAYMENT_COLUMNS.items():
            if column_name not in columns:
                conn.execute(text(f"ALTER TABLE payments ADD COLUMN {column_name} {column_type}"))


def ensure_plan_recurring_column():
    with engine.begin() as conn:
        columns = _get_table_columns(conn, "plans")
        if columns and "provider_plan_id" not in columns:
            conn.execute(text("ALTER TABLE plans ADD COLUMN provider_plan_id VARCHAR"))


def apply_schema_patches():
    ensure_payment_columns()
    ensure_plan_recurring_column()
