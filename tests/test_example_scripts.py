import sys
import types
from pathlib import Path
from unittest import mock


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))


class DummyConfiguration:
    @classmethod
    def load_default(cls, require_secret=True):
        return cls()


def test_publish_asset_main_walks_workflow(monkeypatch, capsys):
    import uam
    import publish_asset

    monkeypatch.setitem(
        sys.modules, "uam_config", types.SimpleNamespace(Configuration=DummyConfiguration)
    )
    calls = []

    class DummyApi:
        def __init__(self, configuration):
            pass

        def publish_asset(self, identity):
            calls.append(identity)

    with mock.patch.object(uam, "Api", DummyApi):
        assert publish_asset.main(["a1", "2"]) == 0

    assert calls == [uam.AssetIdentity("a1", "2")]
    assert capsys.readouterr().out == "published id=a1, version=2\n"


def test_publish_asset_main_reports_refused_transition(monkeypatch, capsys):
    import uam
    import publish_asset

    monkeypatch.setitem(
        sys.modules, "uam_config", types.SimpleNamespace(Configuration=DummyConfiguration)
    )

    class DummyApi:
        def __init__(self, configuration):
            pass

        def publish_asset(self, identity):
            raise uam.AssetPipelineError(
                "publishing stopped at status approved", step="set_status:approved"
            )

    with mock.patch.object(uam, "Api", DummyApi):
        assert publish_asset.main(["a1"]) == 1

    assert "publish failed: publishing stopped at status approved" in capsys.readouterr().err


def test_publish_asset_main_requires_asset_id(capsys):
    import publish_asset

    assert publish_asset.main([]) == 2
    assert "usage:" in capsys.readouterr().err
