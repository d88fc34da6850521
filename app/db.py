import pymysql
from pymysql.constants import CLIENT

from app.config import DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME


class ConnectionWrapper:
    def __init__(self, conn):
        self._conn = conn

    def cursor(self, dictionary=False):
        if dictionary:
            return self._conn.cursor(pymysql.cursors.DictCursor)
        return self._conn.cursor()

    def commit(self):
        return self._conn.commit()

    def rollback(self):
        return self._conn.rollback()

    def close(self):
        return self._conn.close()


def get_db_connection():
    """
    Get MySQL connection with dictionary cursor support.

    Sessions run at READ COMMITTED so that a read issued after a conditional
    UPDATE has locked a row sees the latest committed state of related rows
    (waitlist heads, token flags) rather than the transaction's first snapshot.
    FOUND_ROWS makes rowcount report matched rows, which the conditional
    updates rely on.
    """
    conn = pymysql.connect(
        host=DB_HOST,
        port=DB_PORT,
        user=DB_USER,
        password=DB_PASSWORD,
        database=DB_NAME,
        charset="utf8mb4",
        cursorclass=pymysql.cursors.DictCursor,
        autocommit=False,
        client_flag=CLIENT.FOUND_ROWS,
        init_command="SET SESSION TRANSACTION ISOLATION LEVEL READ COMMITTED",
    )
    return ConnectionWrapper(conn)
