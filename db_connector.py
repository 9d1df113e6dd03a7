import logging
from typing import List, Optional

import duckdb
import pandas as pd
import psycopg2

logger = logging.getLogger(__name__)

TABLES_SQL = """
SELECT table_name
FROM information_schema.tables
WHERE lower(table_schema) = lower({ph})
ORDER BY table_name;
"""


class PostgresConnector:
    dialect = "postgresql"

    def __init__(self, db_params: dict):
        if not db_params:
            raise ValueError("Database settings (db_params) are required.")

        self.db_params = db_params
        self.connection = None
        self.cursor = None
        logger.info("Connector initialized with database settings.")

    def connect(self):
        if self.connection and not self.connection.closed:
            logger.info("Already connected to the database.")
            return

        try:
            logger.info(f"Connecting to database at {self.db_params.get('host')}:{self.db_params.get('port')}.")
            self.connection = psycopg2.connect(**self.db_params)
            self.cursor = self.connection.cursor()
            logger.info("Database connection established.")
        except psycopg2.OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            self.connection = None
            self.cursor = None
            raise

    def close(self):
        if self.cursor:
            self.cursor.close()
        if self.connection:
            self.connection.close()
        logger.info("Database connection closed.")
        self.connection = None
        self.cursor = None

    def execute_query(self, query: str, params: tuple = None) -> pd.DataFrame:
        if not self.connection or self.connection.closed:
            logger.warning("Not connected to the database. Reconnecting.")
            self.connect()

        try:
            logger.info(f"Executing query: {query}")
            self.cursor.execute(query, params)

            if self.cursor.description:
                columns = [desc[0] for desc in self.cursor.description]
                results = self.cursor.fetchall()
                df = pd.DataFrame(results, columns=columns)
                logger.info(f"Fetched {len(df)} records.")
                return df
            else:
                self.connection.commit()
                logger.info(f"Query executed. Rows affected: {self.cursor.rowcount}")
                return pd.DataFrame()

        except psycopg2.Error as e:
            logger.error(f"Query execution failed: {e}")
            if self.connection:
                self.connection.rollback()
            raise

    def list_tables(self, schema: str) -> List[str]:
        df = self.execute_query(TABLES_SQL.format(ph="%s"), (schema,))
        return df["table_name"].tolist() if not df.empty else []


class DuckDBConnector:
    dialect = "duckdb"

    def __init__(self, database: str = ":memory:", read_only: bool = False, connection=None):
        self.database = database
        self.read_only = read_only
        self.connection: Optional[duckdb.DuckDBPyConnection] = connection
        logger.info(f"DuckDB connector initialized for {database}.")

    def connect(self):
        if self.connection is not None:
            logger.info("Already connected to DuckDB.")
            return
        logger.info(f"Opening DuckDB database {self.database} (read_only={self.read_only}).")
        self.connection = duckdb.connect(database=self.database, read_only=self.read_only)

    def close(self):
        if self.connection is not None:
            self.connection.close()
        logger.info("DuckDB connection closed.")
        self.connection = None

    def execute_query(self, query: str, params: tuple = None) -> pd.DataFrame:
        if self.connection is None:
            logger.warning("Not connected to DuckDB. Connecting.")
            self.connect()

        try:
            logger.info(f"Executing query: {query}")
            if params:
                cur = self.connection.execute(query, list(params))
            else:
                cur = self.connection.execute(query)
            if cur.description is None:
                return pd.DataFrame()
            df = cur.df()
            logger.info(f"Fetched {len(df)} records.")
            return df
        except duckdb.Error as e:
            logger.error(f"Query execution failed: {e}")
            raise

    def list_tables(self, schema: str) -> List[str]:
        df = self.execute_query(TABLES_SQL.format(ph="?"), (schema,))
        return df["table_name"].tolist() if not df.empty else []


def load_connector(db_cfg: dict):
    dialect = (db_cfg or {}).get("dialect", "postgresql")
    if dialect == "postgresql":
        return PostgresConnector(db_cfg.get("postgresql") or {})
    if dialect == "duckdb":
        duck = db_cfg.get("duckdb") or {}
        return DuckDBConnector(duck.get("path", ":memory:"), read_only=bool(duck.get("read_only", False)))
    raise ValueError(f"Unsupported database dialect: {dialect}")
