import os
import sqlite3
import sys


sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from carematch.services.entity_store import EntityStore
from carematch.services.orchestrator import ERROR_REPLY, CareMatchOrchestrator


def _clear_openai_env(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY_FILE", raising=False)


def test_invalid_numeric_env_values_fall_back(monkeypatch, tmp_path):
    monkeypatch.setenv("MODEL_TIMEOUT_SECONDS", "not-a-number")
    monkeypatch.setenv("MAX_HISTORY", "0")
    store = EntityStore(db_path=str(tmp_path / "carematch.sqlite3"))
    orchestrator = CareMatchOrchestrator(store=store, client=object())
    assert orchestrator.timeout_seconds == 30.0
    assert orchestrator.max_history == 100


def test_model_env_value_is_unquoted(monkeypatch, tmp_path):
    monkeypatch.setenv("OPENAI_MODEL", '"gpt-4o"')
    store = EntityStore(db_path=str(tmp_path / "carematch.sqlite3"))
    assert CareMatchOrchestrator(store=store, client=object()).model == "gpt-4o"


def test_placeholder_api_key_disables_llm(monkeypatch, tmp_path):
    _clear_openai_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "replace-with-openai-key")
    store = EntityStore(db_path=str(tmp_path / "carematch.sqlite3"))
    orchestrator = CareMatchOrchestrator(store=store)

    assert orchestrator.client is None
    assert orchestrator.llm_available is False

    response = orchestrator.handle_message("Hello", email="patient1@example.com")
    assert response.status == "error"
    assert response.answer == ERROR_REPLY
    assert [turn.role for turn in response.conversation] == ["system", "user"]


def test_quoted_api_key_file_is_loaded(monkeypatch, tmp_path):
    _clear_openai_env(monkeypatch)
    key_file = tmp_path / "openai.key"
    key_file.write_text('"sk-test-key"\n', encoding="utf-8")
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(key_file))
    store = EntityStore(db_path=str(tmp_path / "carematch.sqlite3"))

    orchestrator = CareMatchOrchestrator(store=store, client=object())
    assert orchestrator._load_openai_api_key() == "sk-test-key"


def test_missing_api_key_file_is_tolerated(monkeypatch, tmp_path):
    _clear_openai_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(tmp_path / "missing.key"))
    store = EntityStore(db_path=str(tmp_path / "carematch.sqlite3"))
    assert CareMatchOrchestrator(store=store).client is None


def test_store_reads_rows_written_by_an_older_process(tmp_path):
    db_path = tmp_path / "carematch.sqlite3"
    store = EntityStore(db_path=str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            "INSERT INTO providers (email, location, rate_expectations, created_at) VALUES (?, ?, ?, ?)",
            ("legacy@example.com", "Austin, TX", 30, "2025-01-01T00:00:00+00:00"),
        )
        conn.commit()

    provider = store.get_provider("legacy@example.com")
    assert provider.name == ""
    assert provider.rate_expectations == 30.0
    assert provider.created_at == "2025-01-01T00:00:00+00:00"
