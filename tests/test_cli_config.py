import json
import sys
import types
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import uam  # noqa: E402
import uam_cli  # noqa: E402


def _install_config(monkeypatch, tmp_path, *, loaded=None, load_error=None):
    state = {"saved": [], "deleted": 0}
    config_path = tmp_path / "uamcli" / "config.yml"

    class DummyConfiguration:
        def __init__(
            self,
            organization_id="",
            project_id="",
            environment_id="",
            client_id=None,
            client_secret=None,
        ):
            self.organization_id = organization_id
            self.project_id = project_id
            self.environment_id = environment_id
            self.client_id = client_id
            self.client_secret = client_secret

        @classmethod
        def load_default(cls, require_secret=True):
            if load_error is not None:
                raise load_error
            return loaded or cls("org", "proj", "env", "cid", "secret")

        @classmethod
        def load_default_or_empty(cls):
            return loaded or cls()

        def to_dict(self):
            return {
                "organization_id": self.organization_id,
                "project_id": self.project_id,
                "environment_id": self.environment_id,
                "client_id": self.client_id,
            }

        def write(self, fh):
            for k, v in self.to_dict().items():
                fh.write(f"{k}: {v}\n")

        def save_to_default(self):
            state["saved"].append(self)
            return config_path

        def delete(self):
            state["deleted"] += 1

    fake = types.SimpleNamespace(
        Configuration=DummyConfiguration,
        get_default_configuration_file_path=lambda: config_path,
        find_dotenv_path=lambda: "",
    )
    monkeypatch.setitem(sys.modules, "uam_config", fake)
    state["path"] = config_path
    return state


def test_config_client_set_saves_all_settings(monkeypatch, tmp_path, capsys):
    state = _install_config(monkeypatch, tmp_path)

    rc = uam_cli.main(
        [
            "config",
            "client",
            "set",
            "--organization",
            "org",
            "--project",
            "proj",
            "--environment",
            "env",
            "--client-id",
            "cid",
            "--client-secret",
            "s3cret",
        ]
    )
    assert rc == 0

    out = capsys.readouterr().out
    assert json.loads(out) == {"saved": str(state["path"])}
    assert "s3cret" not in out
    saved = state["saved"][0]
    assert (saved.organization_id, saved.project_id, saved.environment_id) == (
        "org",
        "proj",
        "env",
    )
    assert (saved.client_id, saved.client_secret) == ("cid", "s3cret")


def test_config_client_get_never_prints_secret(monkeypatch, tmp_path, capsys):
    _install_config(monkeypatch, tmp_path)

    rc = uam_cli.main(["config", "client", "get"])
    assert rc == 0

    out = capsys.readouterr().out
    payload = json.loads(out)
    assert payload["project_id"] == "proj"
    assert payload["client_secret"] == {"set": True}
    assert '"secret"' not in out


def test_config_client_get_without_file(monkeypatch, tmp_path, capsys):
    _install_config(
        monkeypatch,
        tmp_path,
        load_error=uam.ConfigurationError("failed to load configuration data: missing"),
    )

    rc = uam_cli.main(["config", "client", "get"])
    assert rc == 1
    assert "config client failed: failed to load configuration data" in capsys.readouterr().err


def test_config_path_get(monkeypatch, tmp_path, capsys):
    state = _install_config(monkeypatch, tmp_path)

    rc = uam_cli.main(["config", "path", "get"])
    assert rc == 0
    assert capsys.readouterr().out == f"{state['path']}\n"


def test_config_export_writes_yaml_file(monkeypatch, tmp_path, capsys):
    _install_config(monkeypatch, tmp_path)
    target = tmp_path / "exported.yml"

    rc = uam_cli.main(["config", "export", "--output", str(target)])
    assert rc == 0
    assert json.loads(capsys.readouterr().out) == {"exported": str(target)}
    text = target.read_text(encoding="utf-8")
    assert "organization_id: org" in text
    assert "secret" not in text


def test_config_export_into_missing_directory_reports_failure(monkeypatch, tmp_path, capsys):
    _install_config(monkeypatch, tmp_path)
    target = tmp_path / "nope" / "c.yml"

    rc = uam_cli.main(["config", "export", "--output", str(target)])
    assert rc == 2
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("config export failed: ")
    assert "Traceback" not in captured.err
    assert not (tmp_path / "nope").exists()


def test_config_path_get_out_into_missing_directory(monkeypatch, tmp_path, capsys):
    _install_config(monkeypatch, tmp_path)

    rc = uam_cli.main(["config", "path", "get", "--out", str(tmp_path / "nope" / "p.txt")])
    assert rc == 2
    assert "config path failed: " in capsys.readouterr().err


def test_config_delete(monkeypatch, tmp_path, capsys):
    state = _install_config(monkeypatch, tmp_path)

    rc = uam_cli.main(["config", "delete"])
    assert rc == 0
    assert state["deleted"] == 1
    assert json.loads(capsys.readouterr().out) == {"deleted": True}
