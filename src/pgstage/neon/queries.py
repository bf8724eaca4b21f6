"""SQL used by the inspection tools."""

LIST_TABLES = """
SELECT table_schema, table_name, table_type
FROM information_schema.tables
WHERE table_schema NOT IN ('pg_catalog', 'information_schema')
ORDER BY table_schema, table_name
"""

DESCRIBE_TABLE = """
SELECT column_name, data_type, character_maximum_length, is_nullable, column_default
FROM information_schema.columns
WHERE table_name = '{table_name}'
ORDER BY ordinal_position
"""

# Installs a helper on the branch, then reads it; run as one batch.
DESCRIBE_BRANCH_STATEMENTS = [
    """
CREATE OR REPLACE FUNCTION public.show_db_tree()
RETURNS TABLE (tree_structure text) AS
$$
BEGIN
    RETURN QUERY
    SELECT datname || ' (DATABASE)'
    FROM pg_database
    WHERE datistemplate = false;

    RETURN QUERY
    WITH RECURSIVE
    schemas AS (
        SELECT n.nspname AS object_name, 1 AS level, n.nspname AS path,
               'SCHEMA' AS object_type
        FROM pg_namespace n
        WHERE n.nspname NOT LIKE 'pg_%'
        AND n.nspname != 'information_schema'
    ),
    objects AS (
        SELECT c.relname AS object_name, 2 AS level,
               s.path || '.' || c.relname AS path,
               CASE c.relkind
                   WHEN 'r' THEN 'TABLE'
                   WHEN 'v' THEN 'VIEW'
                   WHEN 'm' THEN 'MATERIALIZED VIEW'
                   WHEN 'i' THEN 'INDEX'
                   WHEN 'S' THEN 'SEQUENCE'
                   WHEN 'f' THEN 'FOREIGN TABLE'
               END AS object_type
        FROM pg_class c
        JOIN pg_namespace n ON n.oid = c.relnamespace
        JOIN schemas s ON n.nspname = s.object_name
        WHERE c.relkind IN ('r', 'v', 'm', 'i', 'S', 'f')

        UNION ALL

        SELECT p.proname AS object_name, 2 AS level,
               s.path || '.' || p.proname AS path,
               'FUNCTION' AS object_type
        FROM pg_proc p
        JOIN pg_namespace n ON n.oid = p.pronamespace
        JOIN schemas s ON n.nspname = s.object_name
    ),
    combined AS (
        SELECT * FROM schemas
        UNION ALL
        SELECT * FROM objects
    )
    SELECT REPEAT('    ', level) || object_name || ' (' || object_type || ')'
    FROM combined
    ORDER BY path;
END;
$$ LANGUAGE plpgsql
""",
    "SELECT * FROM public.show_db_tree()",
]


def escape_sql_string(value: str) -> str:
    """Escape single quotes for SQL string literals."""
    return value.replace("'", "''")
