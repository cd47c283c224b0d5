"""
Legacy Schema to PostgreSQL Record Migration DAG

Triggered manually (or through the Airflow REST API) with a table name or
"all". It handles:
1. Validating the requested table against the migration registry
2. Migrating one table, or every table in dependency order
3. Failing the run when any table fails, after the summary is logged

In transactional mode all work lands in one PostgreSQL transaction and a
failure rolls it back. In independent mode each table commits on its own and
the remaining tables still run after a failure.
"""

from airflow.sdk import dag, task
from airflow.models.param import Param
from airflow.exceptions import AirflowException
from pendulum import datetime
from datetime import timedelta
from typing import Any, Dict
import logging

from legacy_pg_migration import coordinator
from legacy_pg_migration.tables import TABLE_MAPPINGS, migration_order

logger = logging.getLogger(__name__)

ALL_TABLES = "all"


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or trigger via API
    catchup=False,
    max_active_runs=1,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        # A migration run is not retried per table; rerun the DAG instead
        "retries": 0,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="mssql_source",
            type="string",
            description="Legacy SQL Server connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="PostgreSQL connection ID"
        ),
        "table": Param(
            default=ALL_TABLES,
            type="string",
            enum=[ALL_TABLES] + migration_order(),
            description="Table to migrate, or 'all' for every table in dependency order"
        ),
        "transactional": Param(
            default=True,
            type="boolean",
            description="Run inside one target transaction and roll back on any failure"
        ),
    },
    tags=["migration", "legacy", "postgres", "etl"],
)
def legacy_table_migration():
    """
    Run the record migration for one table or all tables.
    """

    @task
    def validate_request(**context) -> Dict[str, Any]:
        params = context["params"]
        table = params["table"].lower()
        if table != ALL_TABLES and table not in TABLE_MAPPINGS:
            raise AirflowException(f"Unknown table '{params['table']}'")
        for name in ([table] if table != ALL_TABLES else migration_order()):
            TABLE_MAPPINGS[name].validate()
        logger.info(f"Request validated: table={table}, transactional={params['transactional']}")
        return {"table": table, "transactional": params["transactional"]}

    @task
    def migrate(request: Dict[str, Any], **context) -> Dict[str, Any]:
        """
        Run the migration and return the result dictionary.
        """
        params = context["params"]
        if request["table"] == ALL_TABLES:
            result = coordinator.run_all_migrations(
                transactional=request["transactional"],
                source_conn_id=params["source_conn_id"],
                target_conn_id=params["target_conn_id"],
            )
        else:
            result = coordinator.run_migration(
                request["table"],
                source_conn_id=params["source_conn_id"],
                target_conn_id=params["target_conn_id"],
                transactional=request["transactional"],
            )
            result = {
                "success": result["success"],
                "per_table_results": {request["table"]: result},
                "total_inserted": result.get("records_inserted", 0) if result["success"] else 0,
                "errors": result.get("errors", []),
            }
        return result

    @task
    def summarize(result: Dict[str, Any]) -> str:
        for name, table_result in result["per_table_results"].items():
            if table_result["success"]:
                logger.info(
                    f"✓ {name}: processed {table_result['records_processed']:,}, "
                    f"inserted {table_result['records_inserted']:,}, "
                    f"skipped {table_result['records_skipped']:,}, "
                    f"errored {table_result['records_errored']:,} "
                    f"in {table_result['elapsed_time_seconds']:.2f}s"
                )
            else:
                logger.error(f"✗ {name}: failed. Errors: {table_result.get('errors', [])}")

        logger.info(f"Total inserted: {result['total_inserted']:,}")
        if not result["success"]:
            raise AirflowException(f"Migration failed: {result.get('errors') or 'see table results'}")
        return f"Migration complete: {result['total_inserted']:,} records inserted"

    summarize(migrate(validate_request()))


legacy_table_migration()
