import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import uam  # noqa: E402


def _full_asset_payload():
    return {
        "assetId": "a1",
        "assetVersion": "2",
        "name": "Chair",
        "description": "wooden",
        "tags": ["furniture"],
        "systemTags": ["sys"],
        "labels": ["latest"],
        "primaryType": "3D Model",
        "status": "Draft",
        "sourceProjectId": "proj",
        "projectIds": ["proj"],
        "previewFile": "preview.png",
        "previewFileDatasetId": "ds-preview",
        "isFrozen": False,
        "datasets": [{"datasetId": "ds1", "name": "Source", "primaryType": "3D Model"}],
        "metadata": {"color": "red"},
    }


def test_asset_identity_is_hashable_and_defaults_to_version_one():
    a = uam.AssetIdentity("a1")
    b = uam.AssetIdentity("a1", "1")
    assert a == b
    assert len({a, b}) == 1
    assert str(a) == "id=a1, version=1"
    assert a.to_dict() == {"id": "a1", "version": "1"}


def test_asset_status_parse_is_case_insensitive_and_str_is_wire_value():
    assert uam.AssetStatus.parse("InReview") is uam.AssetStatus.IN_REVIEW
    assert uam.AssetStatus.parse(" PUBLISHED ") is uam.AssetStatus.PUBLISHED
    assert str(uam.AssetStatus.IN_REVIEW) == "inreview"
    assert uam.AssetStatus.parse(uam.AssetStatus.DRAFT) is uam.AssetStatus.DRAFT


def test_asset_status_parse_rejects_unknown_values():
    with pytest.raises(uam.AssetStatusParseError) as excinfo:
        uam.AssetStatus.parse("archived")
    assert isinstance(excinfo.value, ValueError)
    assert "archived" in str(excinfo.value)


def test_asset_response_survives_parse_and_serialize():
    payload = _full_asset_payload()
    asset = uam.Asset.from_response(payload)

    assert asset.identity == uam.AssetIdentity("a1", "2")
    assert asset.datasets == [uam.Dataset("ds1", "Source", "3D Model")]
    assert asset.frozen is False
    assert asset.to_response() == payload


def test_asset_metadata_is_tri_state():
    base = {k: v for k, v in _full_asset_payload().items() if k != "metadata"}

    absent = uam.Asset.from_response(base)
    assert absent.metadata is uam.METADATA_UNSET
    assert "metadata" not in absent.to_response()
    assert "metadata" not in absent.to_update_request()

    explicit_null = uam.Asset.from_response({**base, "metadata": None})
    assert explicit_null.metadata is None
    assert explicit_null.to_response()["metadata"] is None
    assert explicit_null.to_update_request()["metadata"] is None

    empty = uam.Asset.from_response({**base, "metadata": {}})
    assert empty.to_update_request()["metadata"] == {}


def test_asset_from_response_requires_identity_fields():
    with pytest.raises(uam.ValidationError):
        uam.Asset.from_response({"name": "no id"})


def test_update_request_carries_only_mutable_fields():
    asset = uam.Asset.from_response(_full_asset_payload())
    assert asset.to_update_request() == {
        "name": "Chair",
        "primaryType": "3D Model",
        "description": "wooden",
        "metadata": {"color": "red"},
    }


def test_build_search_request_without_filter():
    body = uam.build_search_request("proj")
    assert body["projectIds"] == ["proj"]
    assert body["includeFields"] == {"assetFields": ["*"], "datasetFields": ["*"]}
    assert body["pagination"] == {
        "limit": 50,
        "sortingField": "name",
        "sortingOrder": "Ascending",
    }
    assert "filter" not in body


def test_build_search_request_with_identity_name_and_token():
    body = uam.build_search_request(
        "proj", uam.AssetIdentity("a1", "3"), name="Chair", token="tok"
    )
    assert body["pagination"]["token"] == "tok"
    assert body["filter"]["include"] == {
        "assetId": {"type": "ExactMatch", "value": "a1"},
        "assetVersion": {"type": "ExactMatch", "value": "3"},
        "name": {"type": "WildcardMatch", "value": "*Chair*"},
    }


def test_read_metadata_entries_and_collect(tmp_path):
    csv_path = tmp_path / "meta.csv"
    csv_path.write_text(
        "Name, Value\ncolor, red\nsize,\nmaterial, oak\ncolor, blue\n", encoding="utf-8"
    )

    entries = uam.read_metadata_entries(csv_path)
    assert entries == [
        uam.MetadataEntry("color", "red"),
        uam.MetadataEntry("size", None),
        uam.MetadataEntry("material", "oak"),
        uam.MetadataEntry("color", "blue"),
    ]
    assert uam.collect_metadata(entries) == {"color": "blue", "material": "oak"}


def test_read_metadata_entries_header_is_case_insensitive(tmp_path):
    csv_path = tmp_path / "meta.csv"
    csv_path.write_text("NAME,VALUE\nk,v\n", encoding="utf-8")
    assert uam.read_metadata_entries(csv_path) == [uam.MetadataEntry("k", "v")]


def test_read_metadata_entries_rejects_bad_input(tmp_path):
    no_header = tmp_path / "bad.csv"
    no_header.write_text("key,val\nk,v\n", encoding="utf-8")
    with pytest.raises(uam.ValidationError, match="Name and Value"):
        uam.read_metadata_entries(no_header)

    with pytest.raises(uam.ValidationError, match="failed to read"):
        uam.read_metadata_entries(tmp_path / "missing.csv")


def test_collect_metadata_later_empty_value_drops_name():
    entries = [uam.MetadataEntry("color", "red"), uam.MetadataEntry("color", None)]
    assert uam.collect_metadata(entries) == {}


def test_redact_sensitive_text_masks_credentials_and_signed_urls():
    raw = (
        "Authorization: Basic Y2lkOnNlY3JldA== "
        "Authorization: Bearer abc.def.ghi "
        "client_secret=supersecret "
        '{"accessToken":"tok123"} '
        "https://blob.test/file.fbx?sv=2023-01-01&se=2026-01-01&sig=verysecret"
    )
    cooked = uam.redact_sensitive_text(raw)
    assert "Y2lkOnNlY3JldA==" not in cooked
    assert "abc.def.ghi" not in cooked
    assert "supersecret" not in cooked
    assert "tok123" not in cooked
    assert "verysecret" not in cooked
    assert "sv=2023-01-01" in cooked


def test_api_request_error_message_shape():
    e = uam.ApiRequestError("get_asset", 403, "Authorization: Bearer abc")
    assert e.status_code == 403
    assert str(e).startswith("called by: get_asset -- last_status: 403 -- last_text: ")
    assert "abc" not in str(e)


def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ValueError):
        uam.configure_logging("LOUD")


def test_configure_logging_installs_single_handler(monkeypatch):
    monkeypatch.setattr(uam.logger, "handlers", [])
    previous = uam.logger.level
    try:
        uam.configure_logging("INFO", force=True)
        uam.configure_logging("DEBUG")

        ours = [h for h in uam.logger.handlers if getattr(h, "_uam_handler", False)]
        assert len(ours) == 1
        assert uam.logger.level == uam.logging.DEBUG
    finally:
        uam.logger.setLevel(previous)


def test_resolve_download_directory_prefers_explicit_dir(tmp_path):
    target = tmp_path / "out" / "nested"
    assert uam.resolve_download_directory(target) == target
    assert target.is_dir()


def test_resolve_download_directory_without_os_downloads(monkeypatch, tmp_path):
    monkeypatch.setattr(
        uam.platformdirs, "user_downloads_path", lambda: tmp_path / "does-not-exist"
    )
    with pytest.raises(uam.NoDownloadDirectoryError):
        uam.resolve_download_directory()
