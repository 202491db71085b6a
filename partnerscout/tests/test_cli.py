"""Tests for the typer CLI and the store-maintenance services behind it."""
from __future__ import annotations

import json
import logging

import pytest
import yaml
from sqlalchemy import func, select
from typer.testing import CliRunner

from partnerscout import services
from partnerscout.cli import app
from partnerscout.config import get_settings
from partnerscout.discovery import DiscoveryClient
from partnerscout.errors import InvalidInputError
from partnerscout.models import CompanyProfile

runner = CliRunner()


def _json(result):
    # log lines may precede the payload on older click versions
    text = result.stdout
    return json.loads(text[text.index("{"):])


COURSE = {
    "owner_id": "prof-1",
    "title": "Applied Machine Learning",
    "level": "Graduate",
    "outcomes": ["Apply time series forecasting to operational data"],
    "weeks": 14,
    "hours_per_week": 10,
    "location": "Kansas City, MO 64110",
}

COMPANIES = [
    {"name": "Prairie Health", "sector": "Healthcare", "zip": "64110", "inferred_needs": ["demand forecasting"]},
    {"name": "Metro Transit", "sector": "Transportation", "zip": "64110"},
    {"sector": "Nameless"},
]


@pytest.fixture()
def home(tmp_path, monkeypatch):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setenv("PARTNERSCOUT_HOME", str(tmp_path))
    monkeypatch.delenv("PARTNERSCOUT_DB_URL", raising=False)
    monkeypatch.delenv("PARTNERSCOUT_CONFIG", raising=False)
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()
    # the CLI callback reconfigures root logging
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture()
def scripted_pipeline(settings, llm, monkeypatch):
    build = services.build_orchestrator
    monkeypatch.setattr(
        services, "build_orchestrator",
        lambda factory: build(factory, settings, client=llm, discovery=DiscoveryClient()),
    )


class TestCLI:
    def test_add_import_generate(self, home, scripted_pipeline):
        course_file = home / "course.yaml"
        course_file.write_text(yaml.safe_dump(COURSE), encoding="utf-8")
        companies_file = home / "companies.json"
        companies_file.write_text(json.dumps({"companies": COMPANIES}), encoding="utf-8")

        result = runner.invoke(app, ["--home", str(home), "--json", "add-course", str(course_file)])
        assert result.exit_code == 0, result.output
        course_id = _json(result)["id"]
        assert (home / "data" / "partnerscout.db").exists()

        result = runner.invoke(app, ["--json", "import-companies", str(companies_file), "--batch-id", "b1"])
        assert result.exit_code == 0, result.output
        assert _json(result) == {"imported": 2, "skipped": 1}

        result = runner.invoke(app, [
            "--json", "generate", str(course_id), "--principal", "prof-1", "--batch-id", "b1", "--count", "2",
        ])
        assert result.exit_code == 0, result.output
        payload = _json(result)
        assert len(payload["project_ids"]) == 2
        assert payload["using_real_data"] is True

    def test_generate_for_foreign_course_fails(self, home, scripted_pipeline):
        course_file = home / "course.json"
        course_file.write_text(json.dumps(COURSE), encoding="utf-8")
        course_id = _json(runner.invoke(app, ["--json", "add-course", str(course_file)]))["id"]

        result = runner.invoke(app, ["--json", "generate", str(course_id), "--principal", "someone-else"])
        assert result.exit_code == 1
        assert _json(result)["code"] == "PERMISSION_DENIED"

    def test_invalid_course_file(self, home):
        course_file = home / "course.yaml"
        course_file.write_text(yaml.safe_dump({"title": "No owner"}), encoding="utf-8")
        result = runner.invoke(app, ["--json", "add-course", str(course_file)])
        assert result.exit_code == 1
        assert _json(result)["code"] == "VALIDATION_ERROR"

    def test_purge_cache(self, home):
        result = runner.invoke(app, ["--json", "purge-cache"])
        assert result.exit_code == 0, result.output
        assert _json(result) == {"removed": 0}


class TestStoreServices:
    def test_create_course_requires_owner_title_outcomes(self, session_factory):
        with session_factory() as session:
            with pytest.raises(InvalidInputError):
                services.create_course(session, {"owner_id": "prof-1", "title": "No outcomes"})

    def test_import_is_an_upsert(self, session_factory):
        with session_factory() as session:
            services.import_companies(session, COMPANIES[:1])
            result = services.import_companies(
                session, [{"name": "prairie health", "technologies": ["Python"]}], enrichment_batch_id="b2",
            )
            assert result == {"imported": 1, "skipped": 0}
            assert session.scalar(select(func.count()).select_from(CompanyProfile)) == 1
            row = session.scalars(select(CompanyProfile)).one()
            assert row.enrichment_batch_id == "b2"
            assert row.sector == "Healthcare"
            assert json.loads(row.technologies_json) == ["Python"]
