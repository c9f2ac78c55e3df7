from pathlib import Path

import allure
from sqlalchemy import inspect, text

import jobflow
from jobflow.jobs.repository import JobRepository
from jobflow.storage.alembic_runner import MIGRATIONS_DIR

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261018_0002"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(repository.engine)
    assert {"jobs", "job_events", "workflow_controls"} <= set(inspector.get_table_names())
    indexes = {index["name"]: index for index in inspector.get_indexes("jobs")}
    assert indexes["uq_jobs_workflow_stage"]["unique"]
    assert indexes["idx_jobs_queue"]["column_names"] == ["status", "priority", "run_after"]
    repository.close()


def test_migrations_ship_inside_the_package() -> None:
    package_dir = Path(jobflow.__file__).resolve().parent

    assert MIGRATIONS_DIR.is_relative_to(package_dir)
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert (MIGRATIONS_DIR / "script.py.mako").is_file()
    assert sorted(path.name for path in (MIGRATIONS_DIR / "versions").glob("*.py")) == [
        "20261018_0001_initial_jobs.py",
        "20261018_0002_workflow_controls.py",
    ]
