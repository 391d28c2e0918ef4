import json

import httpx
import pytest
from click.testing import CliRunner

import bcsync_settings
from bcsync import cli
from conftest import FakeCredentials

CONFIG = {
    "companies": {
        "TEST": {
            "company_id": "c1",
            "entities": {
                "items": {
                    "destination_api_url": "companies({company})/items",
                    "fields_to_exclude_from_update": ["skipDuplicateCheck"],
                }
            },
        }
    }
}


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.setenv("BC_API_BASE", "https://bc.test/api/v2.0")
    monkeypatch.setenv("BC_TOKEN_URL", "https://login.test/token")
    monkeypatch.setenv("BC_CLIENT_ID", "client")
    monkeypatch.setenv("BC_CLIENT_SECRET", "secret")
    monkeypatch.setenv("BC_BACKOFF_SECONDS", "0")
    monkeypatch.setattr(bcsync_settings, "_cache", None)
    config = tmp_path / "bcsync.config.json"
    config.write_text(json.dumps(CONFIG))
    return tmp_path


def run(backend, *args):
    obj = {"transport": httpx.MockTransport(backend.handler), "credentials": FakeCredentials()}
    return CliRunner().invoke(cli, list(args), obj=obj)


def test_upsert_prints_summary(workspace, backend):
    backend.add({"no": "A", "description": "Old"})
    payloads = workspace / "items.json"
    payloads.write_text(json.dumps([{"no": "A", "description": "New"}, {"no": "B", "description": "x"}]))

    result = run(backend, "--config", str(workspace / "bcsync.config.json"), "upsert", "TEST", "items", str(payloads))

    assert result.exit_code == 0, result.output
    assert "Created: 1" in result.output
    assert "Patched: 1" in result.output
    assert "Sync completed!" in result.output
    assert str(backend.calls("POST")[0].url) == "https://bc.test/api/v2.0/companies(c1)/items"
    assert backend.calls("GET")[0].headers["Authorization"] == "Bearer initial"


def test_upsert_exits_nonzero_on_failures(workspace, backend):
    payloads = workspace / "items.json"
    payloads.write_text(json.dumps([{"no": "A"}, {"description": "no key"}]))

    result = run(backend, "--config", str(workspace / "bcsync.config.json"), "upsert", "TEST", "items", str(payloads))

    assert result.exit_code == 1
    assert "Errors: 1" in result.output
    assert len(backend.records) == 1


def test_upsert_dry_run(workspace, backend):
    payloads = workspace / "items.json"
    payloads.write_text(json.dumps({"no": "A"}))

    result = run(
        backend, "--config", str(workspace / "bcsync.config.json"), "upsert", "TEST", "items", str(payloads), "--dry-run"
    )

    assert result.exit_code == 0, result.output
    assert "DRY RUN" in result.output
    assert backend.records == {}


def test_fetch_writes_records(workspace, backend):
    backend.add({"no": "A"})
    backend.add({"no": "B"})
    output = workspace / "out.json"

    result = run(backend, "--config", str(workspace / "bcsync.config.json"), "fetch", "TEST", "items", "--output", str(output))

    assert result.exit_code == 0, result.output
    assert sorted(json.loads(output.read_text())) == ["A", "B"]


def test_delete_command(workspace, backend):
    backend.add({"no": "A"})

    result = run(backend, "--config", str(workspace / "bcsync.config.json"), "delete", "TEST", "items", "A")

    assert result.exit_code == 0, result.output
    assert backend.records == {}


def test_unknown_entity_is_a_usage_error(workspace, backend):
    result = run(backend, "--config", str(workspace / "bcsync.config.json"), "delete", "TEST", "bins", "A")

    assert result.exit_code == 1
    assert "Unknown entity" in result.output
    assert backend.requests == []


def test_missing_env_is_reported(workspace, backend, monkeypatch):
    monkeypatch.delenv("BC_CLIENT_SECRET")

    result = run(backend, "--config", str(workspace / "bcsync.config.json"), "delete", "TEST", "items", "A")

    assert result.exit_code == 1
    assert "BC_CLIENT_SECRET" in result.output
