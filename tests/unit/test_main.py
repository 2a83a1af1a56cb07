"""
Unit tests for the main.py CLI (import / export / env).
"""
import pytest

import main
from infrastructure.config import Settings, set_settings
from infrastructure.persistence import SQLiteBackend


@pytest.fixture
def sqlite_settings(tmp_path):
    settings = Settings(persistence="sqlite", db_path=str(tmp_path / "cli.db"), rest_key="hunter2")
    set_settings(settings)
    return settings


def test_import_sample_then_export_csv(sqlite_settings, tmp_path, capsys):
    main.main(["import", "--sample"])

    backend = SQLiteBackend(sqlite_settings.db_path)
    assert len(backend.load_nodes("local")) == 3
    assert len(backend.load_edges("local")) == 2

    out_dir = tmp_path / "export"
    main.main(["export", "--format", "csv", "--output", str(out_dir)])

    assert "Exported 3 nodes, 2 edges" in capsys.readouterr().out
    assert (out_dir / "nodes.csv").read_text().startswith("id,title,type")


def test_import_files(sqlite_settings, tmp_path):
    nodes = tmp_path / "nodes.csv"
    nodes.write_text("id,title,type\na,Alpha,Concept\nb,Beta,Method\n")
    edges = tmp_path / "edges.csv"
    edges.write_text("source_id,target_id\na,b\n")

    main.main(["import", str(nodes), "--edges", str(edges)])

    backend = SQLiteBackend(sqlite_settings.db_path)
    assert [n.title for n in backend.load_nodes("local")] == ["Alpha", "Beta"]


def test_import_invalid_file_exits(sqlite_settings, tmp_path, capsys):
    nodes = tmp_path / "nodes.csv"
    nodes.write_text("id,title,type\na,Alpha,Hypothesis\n")

    with pytest.raises(SystemExit):
        main.main(["import", str(nodes)])

    assert "Import failed" in capsys.readouterr().out
    assert SQLiteBackend(sqlite_settings.db_path).load_nodes("local") == []


def test_import_without_source_exits(sqlite_settings):
    with pytest.raises(SystemExit):
        main.main(["import"])


def test_env_masks_secret(sqlite_settings, capsys):
    main.main(["env"])

    out = capsys.readouterr().out
    assert "hunter2" not in out
    assert "***" in out
    assert "sqlite" in out


def test_serve_uses_settings(monkeypatch):
    set_settings(Settings(host="0.0.0.0", port=9123))
    calls = []
    monkeypatch.setattr(main, "run_server", lambda *args, **kwargs: calls.append((args, kwargs)))

    main.main(["serve", "--prod", "--workers", "2"])

    assert calls == [(("0.0.0.0", 9123), {"workers": 2, "reload": False})]
