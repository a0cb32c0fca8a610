import pytest
from sqlalchemy import create_engine

from db import RowStore, bootstrap_sqlite, exec_sql


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite file with every table created."""
    eng = create_engine(f"sqlite:///{tmp_path / 'coaltrack.db'}")
    bootstrap_sqlite(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return RowStore(engine, page_size=3)


@pytest.fixture
def broken_store(tmp_path):
    """A store whose tables were never created: every query fails."""
    eng = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    yield RowStore(eng)
    eng.dispose()


@pytest.fixture
def hide_table(engine):
    """
    Rename a table away so every write to it fails. Returns a function that
    puts it back; anything still hidden is restored on teardown.
    """
    hidden = []

    def restore(table):
        if table in hidden:
            exec_sql(engine, f"ALTER TABLE {table}_hidden RENAME TO {table}")
            hidden.remove(table)

    def hide(table):
        exec_sql(engine, f"ALTER TABLE {table} RENAME TO {table}_hidden")
        hidden.append(table)
        return lambda: restore(table)

    yield hide
    for table in list(hidden):
        restore(table)
