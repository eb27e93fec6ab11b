import pytest

from routectl.db import connect_db, init_db
from routectl.jobqueue import JobQueue


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    path = str(tmp_path / "routectl-test.db")
    monkeypatch.setenv("ROUTECTL_DB", path)
    init_db(path)
    return path


@pytest.fixture
def conn(db_file):
    c = connect_db(db_file)
    yield c
    c.close()


@pytest.fixture
def queue(conn):
    return JobQueue(conn, worker_name="test-worker")


def make_eligible(conn, job_id):
    """Pull a job's run_at into the past so the next poll picks it up."""
    with conn:
        conn.execute(
            "UPDATE jobs SET run_at='2000-01-01T00:00:00.000000Z' WHERE id=?", (job_id,)
        )
