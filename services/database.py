import sqlite3
from flask import current_app
from flask.cli import with_appcontext
import click
import logging


# Configure logging
logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception raised for database-related errors."""
    pass


class DatabaseManager:
    def __init__(self, connection):
        """
        Wrap an open database connection.

        :param connection: A sqlite3 connection (or anything with the same API).
        """
        self.connection = connection

    def close(self):
        """
        Close the database connection.

        :raises DatabaseError: If closing the connection fails.
        """
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                raise DatabaseError(f"Failed to close the database connection: {e}")

    def execute_query(self, query, params=None, auto_commit=False):
        """
        Execute a single SQL statement.

        :param query: The SQL statement to execute.
        :type query: str
        :param params: Statement parameters, defaults to None.
        :type params: list | tuple, optional
        :param auto_commit: Commit straight after executing.
        :return: The cursor after executing the query.
        :rtype: sqlite3.Cursor
        :raises DatabaseError: If an error occurs during query execution.
        """
        if params is None:
            params = []
        try:
            cursor = self.connection.cursor()
            cursor.execute(query, params)

            if auto_commit:
                self.commit()

            return cursor
        except Exception as e:
            raise DatabaseError(f"Database query failed: {e}")

    def commit(self):
        """
        Commit the current database transaction.

        :raises DatabaseError: If an error occurs during the commit operation.
        """
        try:
            self.connection.commit()
        except Exception as e:
            raise DatabaseError(f"Commit failed: {e}")

    def rollback(self):
        """
        Roll back the current transaction.

        :raises DatabaseError: If the rollback operation fails.
        """
        try:
            self.connection.rollback()
            logger.info("Transaction rolled back successfully.")
        except Exception as e:
            raise DatabaseError(f"Rollback failed: {e}")

    def upsert(self, table, data, conflict_columns):
        """
        Insert a row, replacing the non-key columns when the key already exists.

        :param table: Table to write to.
        :param data: Column-value pairs.
        :type data: dict
        :param conflict_columns: Columns of the unique key.
        :type conflict_columns: list[str]
        :raises DatabaseError: If the write fails.
        """
        columns = ", ".join(data.keys())
        placeholders = ", ".join(["?"] * len(data))
        updates = ", ".join(f"{k}=excluded.{k}" for k in data.keys() if k not in conflict_columns)
        query = (
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(conflict_columns)}) DO UPDATE SET {updates}"
        )
        try:
            self.execute_query(query, tuple(data.values()))
        except DatabaseError as e:
            raise DatabaseError(f"Upsert into {table} failed: {e}")

    def get_item(self, table, criteria):
        """
        Retrieve rows from a table matching every criterion.

        :param table: The name of the table to query.
        :type table: str
        :param criteria: Column-value pairs to filter on.
        :type criteria: dict
        :return: A list of matching rows.
        :rtype: list
        :raises DatabaseError: If the retrieval fails.
        """
        query = f"SELECT * FROM {table} WHERE " + " AND ".join(f"{k}=?" for k in criteria.keys())
        try:
            cursor = self.execute_query(query, tuple(criteria.values()))
            return cursor.fetchall()
        except DatabaseError as e:
            raise DatabaseError(f"Retrieval failed: {e}")

    def delete_item(self, table, criteria):
        """
        Delete rows from a table matching every criterion. Does not commit.

        :param table: The name of the table to delete from.
        :type table: str
        :param criteria: Column-value pairs selecting the rows to delete.
        :type criteria: dict
        :raises DatabaseError: If the deletion fails.
        """
        query = f"DELETE FROM {table} WHERE " + " AND ".join(f"{k}=?" for k in criteria.keys())
        try:
            self.execute_query(query, tuple(criteria.values()))
        except DatabaseError as e:
            raise DatabaseError(f"Deletion failed: {e}")


SESSION_TABLES = [
    "session_events",
    "transfer_log",
    "completed_transfers",
    "supplementary_data",
    "sessions",
]


def clear_session_tables(db_manager: DatabaseManager, session_id: str):
    """
    Remove every row belonging to a session.

    :param db_manager: An instance of DatabaseManager.
    :param session_id: Session whose rows are removed.
    """
    for table in SESSION_TABLES:
        column = "id" if table == "sessions" else "session_id"
        logger.info(f"Clearing {table} for session {session_id}")
        db_manager.delete_item(table, {column: session_id})
    db_manager.commit()


def create_db_manager(db_file: str):
    """
    Creates a DatabaseManager instance with a static SQLite connection.
    """
    connection = sqlite3.connect(
        db_file,
        timeout=30.0,
        detect_types=sqlite3.PARSE_DECLTYPES,
        check_same_thread=False
    )
    connection.execute("PRAGMA journal_mode=WAL;")
    connection.execute("PRAGMA synchronous=NORMAL;")
    connection.execute("PRAGMA foreign_keys=ON;")
    connection.row_factory = sqlite3.Row
    return DatabaseManager(connection)


@click.command('init-db')
@with_appcontext
def init_db_command():
    """
    Create the session tables.
    """
    db_manager = create_db_manager(current_app.config["database"])
    try:
        init_db(db_manager)
        click.echo("Initialized the database.")
    finally:
        db_manager.close()


def init_db(db_manager: DatabaseManager):
    """
    Create all tables used by the shared transfer session (if required).

    :raises DatabaseError: If a table cannot be created.
    """
    logger.info("Initializing the database...")
    tables = {
        "sessions": '''
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                name TEXT,
                records TEXT NOT NULL DEFAULT '[]',          -- JSON array of live records
                uploaded_records TEXT NOT NULL DEFAULT '[]', -- JSON array, as uploaded
                data_uploaded INTEGER NOT NULL DEFAULT 0,
                source_filename TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_modified TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_modified_by TEXT
            );
        ''',
        "completed_transfers": '''
            CREATE TABLE IF NOT EXISTS completed_transfers (
                session_id TEXT NOT NULL,
                dfu_code TEXT NOT NULL,
                entry TEXT NOT NULL,                         -- JSON CompletedTransfer
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (session_id, dfu_code)
            );
        ''',
        "transfer_log": '''
            CREATE TABLE IF NOT EXISTS transfer_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                dfu_code TEXT NOT NULL,
                operation TEXT NOT NULL,                     -- 'bulk', 'individual', 'granular', 'undo', 'add_variant'
                payload TEXT,
                completed_by TEXT,
                completed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
        ''',
        "session_events": '''
            CREATE TABLE IF NOT EXISTS session_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                dfu_code TEXT,
                user_name TEXT,
                payload TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
        ''',
        "supplementary_data": '''
            CREATE TABLE IF NOT EXISTS supplementary_data (
                session_id TEXT NOT NULL,
                dataset TEXT NOT NULL,                       -- 'cycle', 'stock', 'supply', 'transit'
                payload TEXT NOT NULL,
                uploaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (session_id, dataset)
            );
        ''',
        "session_events_index": '''
            CREATE INDEX IF NOT EXISTS idx_session_events_session
                ON session_events (session_id, id);
        ''',
    }

    for name, schema in tables.items():
        logger.info(f"Creating table: {name} (if required)")
        db_manager.execute_query(schema)

    db_manager.commit()
    logger.info("Database initialized successfully!")
