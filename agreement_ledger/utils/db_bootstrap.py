import logging

from sqlalchemy import inspect, text

# Partial unique indexes that hold the one-active-version and one-open-acceptance invariants.
# Databases created before the migration that introduced them are patched at boot.
CONSENT_INDEXES = (
    {
        "name": "uq_agreement_versions_one_active",
        "table": "agreement_versions",
        "columns": "agreement_type",
        "where": {"postgresql": "is_active = true", "sqlite": "is_active = 1"},
    },
    {
        "name": "uq_legal_agreements_open_acceptance",
        "table": "legal_agreements",
        "columns": "member_id, agreement_type, agreement_version",
        "where": {
            "postgresql": "is_withdrawn = false AND record_kind = 'acceptance'",
            "sqlite": "is_withdrawn = 0 AND record_kind = 'acceptance'",
        },
    },
)


def find_duplicate_active_versions(conn):
    rows = conn.execute(
        text(
            "SELECT agreement_type, COUNT(*) FROM agreement_versions "
            "WHERE is_active = :active GROUP BY agreement_type HAVING COUNT(*) > 1"
        ),
        {"active": True},
    ).all()
    return {row[0]: row[1] for row in rows}


def ensure_consent_indexes(engine, logger=None):
    """
    Runtime check that the consent partial unique indexes exist.
    Safe to run multiple times. Skips tables that do not exist yet, and refuses to build
    the one-active index while duplicate active rows would violate it.
    """
    logger = logger or logging.getLogger(__name__)
    dialect = engine.dialect.name if engine else ""
    if dialect not in ("postgresql", "sqlite"):
        logger.info("[DB] consent index ensure skipped for dialect=%s", dialect or "unknown")
        return []

    created = []
    inspector = inspect(engine)
    with engine.begin() as conn:
        for index in CONSENT_INDEXES:
            table = index["table"]
            if not inspector.has_table(table):
                logger.warning("[DB] %s table missing; skipping %s", table, index["name"])
                continue
            existing = {ix["name"] for ix in inspector.get_indexes(table)}
            if index["name"] in existing:
                continue
            if table == "agreement_versions":
                duplicates = find_duplicate_active_versions(conn)
                if duplicates:
                    logger.error(
                        "[DB] multiple active agreement versions %s; not creating %s",
                        duplicates,
                        index["name"],
                    )
                    continue
            logger.info("[DB] creating %s on %s", index["name"], table)
            conn.execute(
                text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {index['name']} "
                    f"ON {table} ({index['columns']}) WHERE {index['where'][dialect]}"
                )
            )
            created.append(index["name"])
    logger.info("[DB] consent index ensure completed; created=%s", created)
    return created
