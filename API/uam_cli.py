#!/usr/bin/python3
import argparse
import io
import json
import math
import os
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

_DEFAULT_CONNECT_TIMEOUT_S = 30.0
_CONFIG_REQUIRED = ("organization_id", "project_id", "environment_id", "client_id")


def _json_default(obj):
    # Models expose their wire shape; anything else falls back to its attributes.
    for attr in ("to_response", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    if isinstance(obj, Path):
        return str(obj)
    try:
        return dict(vars(obj))
    except TypeError:
        return str(obj)


def _parse_http_timeout(value: str) -> tuple[float, float]:
    """
    Parse `--http-timeout` as either:
      - "read" (seconds) -> (30, read)
      - "connect,read" (seconds) -> (connect, read)
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty timeout")

    if "," in raw:
        parts = [p.strip() for p in raw.split(",", 1)]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"invalid timeout format: {value!r}")
        connect_s = float(parts[0])
        read_s = float(parts[1])
    else:
        connect_s = _DEFAULT_CONNECT_TIMEOUT_S
        read_s = float(raw)

    if not math.isfinite(connect_s) or not math.isfinite(read_s):
        raise ValueError("timeouts must be finite")
    if connect_s <= 0 or read_s <= 0:
        raise ValueError("timeouts must be > 0")
    return (connect_s, read_s)


def _parse_meta_keys(values: list[str] | None) -> list[str]:
    keys: list[str] = []
    for raw in values or []:
        for part in str(raw).split(","):
            key = part.strip()
            if key and key not in keys:
                keys.append(key)
    return keys


def _cli_version() -> str:
    # Prefer the installed distribution version, but fall back to the helper's
    # `_VERSION` when running directly from a checkout.
    try:
        return pkg_version("uamcli")
    except PackageNotFoundError:
        try:
            import uam  # type: ignore

            v = getattr(uam, "_VERSION", None)
            if v is not None:
                return str(v)
        except ImportError:
            pass
        return "unknown"


def _atomic_write_text(path: Path, data: str, *, encoding: str = "utf-8") -> None:
    """
    Write to a temp file in the destination directory, then replace the final path.
    """
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        newline="\n",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_fh.name)
    try:
        with tmp_fh:
            tmp_fh.write(data)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                # Some filesystems do not support fsync.
                pass
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_json(path: Path | None, payload, *, pretty: bool) -> None:
    if pretty:
        data = json.dumps(payload, indent=2, default=_json_default, sort_keys=True)
    else:
        data = json.dumps(payload, default=_json_default, sort_keys=True, separators=(",", ":"))
    if path is None:
        sys.stdout.write(data + "\n")
    else:
        _atomic_write_text(path, data + "\n", encoding="utf-8")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    if path is None:
        out_fh = sys.stdout
        for line in lines:
            out_fh.write(str(line) + "\n")
        return
    data = "".join(f"{line}\n" for line in lines)
    _atomic_write_text(path, data, encoding="utf-8")


def _out_path(args) -> Path | None:
    out = getattr(args, "out", "")
    return None if (not out or out == "-") else Path(out)


def _resolve_log_level(args) -> str:
    if getattr(args, "log_level", ""):
        return args.log_level
    verbose = getattr(args, "verbose", 0) or 0
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return os.getenv("UAM_LOG_LEVEL", "").strip()


def _configure_logging(uam, args) -> bool:
    level = _resolve_log_level(args)
    if not level or not hasattr(uam, "configure_logging"):
        return True
    try:
        uam.configure_logging(level)
    except ValueError as e:
        sys.stderr.write(f"invalid --log-level: {e}\n")
        return False
    return True


def _report_failure(uam, command: str, e: Exception) -> int:
    redactor = getattr(uam, "redact_sensitive_text", None)
    msg = redactor(str(e)) if callable(redactor) else str(e)
    status = getattr(e, "status_code", None)
    if status is not None:
        sys.stderr.write(f"{command} failed: status={status} error={msg}\n")
    else:
        sys.stderr.write(f"{command} failed: {msg}\n")
    return 2 if isinstance(e, (uam.ValidationError, OSError)) else 1


def _add_common_args(p: argparse.ArgumentParser, *, network: bool = True) -> None:
    p.add_argument("--out", default="", help="Output path (default: stdout)")
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; maps to INFO/DEBUG)",
    )
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/--verbose.",
    )
    if network:
        p.add_argument(
            "--http-timeout",
            type=_parse_http_timeout,
            default=None,
            help="HTTP timeouts in seconds: 'read' or 'connect,read' (default: 30,30)",
        )


def _add_identity_args(p: argparse.ArgumentParser, *, required: bool = True) -> None:
    p.add_argument("--asset-id", required=required, default="", help="Asset ID")
    p.add_argument("--asset-version", default="", help="Asset version (default: 1)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="uamcli",
        description="Small CLI for Unity Asset Manager workflows (create/upload/publish/metadata).",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    doctor = sub.add_parser("doctor", help="Configuration/auth sanity checks (non-destructive)")
    doctor.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    doctor.add_argument(
        "--probe",
        action="store_true",
        help="Run a single search page against the configured project.",
    )
    _add_common_args(doctor)

    config = sub.add_parser("config", help="Local configuration")
    config_sub = config.add_subparsers(dest="config_cmd", required=True)

    client = config_sub.add_parser("client", help="Service-account settings")
    client_sub = client.add_subparsers(dest="client_cmd", required=True)
    client_set = client_sub.add_parser("set", help="Save settings (secret goes to the OS keyring)")
    client_set.add_argument("--organization", required=True, help="Organization ID")
    client_set.add_argument("--project", required=True, help="Project ID")
    client_set.add_argument("--environment", required=True, help="Environment ID")
    client_set.add_argument("--client-id", required=True, help="Service account key ID")
    client_set.add_argument("--client-secret", required=True, help="Service account secret key")
    _add_common_args(client_set, network=False)
    client_get = client_sub.add_parser("get", help="Show saved settings (secret shown as set/unset)")
    _add_common_args(client_get, network=False)

    path = config_sub.add_parser("path", help="Configuration file location")
    path_sub = path.add_subparsers(dest="path_cmd", required=True)
    path_get = path_sub.add_parser("get", help="Print the configuration file path")
    _add_common_args(path_get, network=False)

    export = config_sub.add_parser("export", help="Export the configuration (without the secret)")
    export.add_argument("--output", required=True, help="Destination YAML file")
    _add_common_args(export, network=False)

    delete = config_sub.add_parser("delete", help="Delete the configuration file and keyring entry")
    _add_common_args(delete, network=False)

    asset = sub.add_parser("asset", help="Asset operations")
    asset_sub = asset.add_subparsers(dest="asset_cmd", required=True)

    search = asset_sub.add_parser("search", help="Search assets in the configured project")
    _add_identity_args(search, required=False)
    search.add_argument("--asset-name", default="", help="Name substring to match")
    search.add_argument(
        "--format",
        choices=["json", "lines"],
        default="json",
        help="Output format (default: json)",
    )
    _add_common_args(search)

    get = asset_sub.add_parser("get", help="Get a single asset")
    _add_identity_args(get)
    _add_common_args(get)

    create = asset_sub.add_parser("create", help="Create an asset and upload its files")
    create.add_argument("--name", required=True, help="Asset name")
    create.add_argument("--description", default=None, help="Asset description")
    create.add_argument(
        "--data",
        action="append",
        required=True,
        help="File to upload into the Source dataset (repeatable)",
    )
    create.add_argument(
        "--publish",
        action="store_true",
        help="Move the asset through InReview -> Approved -> Published after upload",
    )
    _add_common_args(create)

    download = asset_sub.add_parser("download", help="Download every file of an asset")
    _add_identity_args(download)
    download.add_argument(
        "--download-dir",
        default=None,
        help="Target directory (default: the OS downloads directory)",
    )
    _add_common_args(download)

    status = asset_sub.add_parser("status", help="Asset status")
    status_sub = status.add_subparsers(dest="status_cmd", required=True)
    status_set = status_sub.add_parser("set", help="Set the asset status")
    _add_identity_args(status_set)
    status_set.add_argument(
        "--status",
        required=True,
        help="draft, inreview, approved, published, rejected or withdrawn",
    )
    _add_common_args(status_set)

    metadata = asset_sub.add_parser("metadata", help="Asset metadata")
    metadata_sub = metadata.add_subparsers(dest="metadata_cmd", required=True)
    md_upload = metadata_sub.add_parser(
        "upload", help="Replace asset metadata with a Name,Value CSV file"
    )
    _add_identity_args(md_upload)
    md_upload.add_argument("--data", required=True, help="CSV file with a `Name, Value` header")
    _add_common_args(md_upload)
    md_delete = metadata_sub.add_parser("delete", help="Delete metadata keys from an asset")
    _add_identity_args(md_delete)
    md_delete.add_argument(
        "--meta",
        action="append",
        required=True,
        help="Metadata key(s) to delete (repeatable or comma-separated)",
    )
    _add_common_args(md_delete)

    thumbnail = asset_sub.add_parser(
        "generate-thumbnail", help="Start thumbnail generation for assets without a preview"
    )
    _add_identity_args(thumbnail, required=False)
    _add_common_args(thumbnail)

    return p


def _doctor(args) -> int:
    import uam
    import uam_config

    if not _configure_logging(uam, args):
        return 2

    config_path = ""
    path_error = ""
    try:
        config_path = str(uam_config.get_default_configuration_file_path())
    except uam.ConfigurationError as e:
        path_error = str(e)

    configuration = uam_config.Configuration.load_default_or_empty()
    values = {}
    missing_required: list[str] = []
    for name in _CONFIG_REQUIRED:
        v = getattr(configuration, name, None) or ""
        values[name] = {"set": bool(v), "value": v}
        if not v:
            missing_required.append(name)
    values["client_secret"] = {"set": bool(configuration.client_secret)}
    if not configuration.client_secret:
        missing_required.append("client_secret")

    dotenv_path = uam_config.find_dotenv_path()
    payload = {
        "ok": len(missing_required) == 0 and not path_error,
        "cwd": str(Path.cwd()),
        "dotenv": str(dotenv_path) if dotenv_path else "",
        "checks": {
            "config": {
                "path": config_path,
                "exists": bool(config_path) and Path(config_path).is_file(),
                "missing_required": missing_required,
                "values": values,
            }
        },
    }
    if path_error:
        payload["checks"]["config"]["error"] = path_error

    if args.probe and not missing_required:
        try:
            api = uam.Api(configuration, http_timeout=args.http_timeout)
            assets, next_token = api.client.search_assets_page()
            payload["checks"]["probe"] = {
                "ok": True,
                "assets": {"count": len(assets), "more": bool(next_token)},
            }
        except uam.UamError as e:
            payload["ok"] = False
            payload["checks"]["probe"] = {
                "ok": False,
                "error": uam.redact_sensitive_text(str(e)),
            }

    out_path = _out_path(args)
    try:
        _write_doctor_report(out_path, args, payload)
    except OSError as e:
        return _report_failure(uam, "doctor", e)
    return 0 if payload["ok"] else 1


def _write_doctor_report(out_path: Path | None, args, payload: dict) -> None:
    config = payload["checks"]["config"]
    config_path = config["path"]
    path_error = config.get("error", "")
    missing_required = config["missing_required"]
    if args.format == "json":
        _write_json(out_path, payload, pretty=True)
    else:
        lines: list[str] = ["ok: true" if payload["ok"] else "ok: false"]
        if config_path:
            lines.append(f"config: {config_path}")
        if path_error:
            lines.append(f"config error: {path_error}")
        if payload.get("dotenv"):
            lines.append(f"dotenv: {payload['dotenv']}")
        if missing_required:
            lines.append("missing settings: " + ", ".join(missing_required))
        if args.probe:
            probe = payload["checks"].get("probe") or {}
            if probe.get("ok"):
                lines.append(f"probe: ok (assets={probe['assets']['count']})")
            elif probe:
                lines.append(f"probe: failed ({probe.get('error', '')})")
            else:
                lines.append("probe: skipped (missing settings)")
        _write_lines(out_path, lines)


def _config(args) -> int:
    import uam
    import uam_config

    if not _configure_logging(uam, args):
        return 2
    out_path = _out_path(args)

    try:
        if args.config_cmd == "client" and args.client_cmd == "set":
            configuration = uam_config.Configuration(
                organization_id=args.organization,
                project_id=args.project,
                environment_id=args.environment,
                client_id=args.client_id,
                client_secret=args.client_secret,
            )
            saved = configuration.save_to_default()
            _write_json(out_path, {"saved": str(saved)}, pretty=True)
            return 0

        if args.config_cmd == "client" and args.client_cmd == "get":
            configuration = uam_config.Configuration.load_default(require_secret=False)
            payload = configuration.to_dict()
            payload["client_secret"] = {"set": bool(configuration.client_secret)}
            _write_json(out_path, payload, pretty=True)
            return 0

        if args.config_cmd == "path" and args.path_cmd == "get":
            _write_lines(out_path, [str(uam_config.get_default_configuration_file_path())])
            return 0

        if args.config_cmd == "export":
            configuration = uam_config.Configuration.load_default(require_secret=False)
            buf = io.StringIO()
            configuration.write(buf)
            target = Path(args.output)
            _atomic_write_text(target, buf.getvalue(), encoding="utf-8")
            _write_json(out_path, {"exported": str(target)}, pretty=True)
            return 0

        if args.config_cmd == "delete":
            configuration = uam_config.Configuration.load_default_or_empty()
            configuration.delete()
            _write_json(out_path, {"deleted": True}, pretty=True)
            return 0
    except (uam.UamError, OSError) as e:
        return _report_failure(uam, f"config {args.config_cmd}", e)

    sys.stderr.write("unknown config command\n")
    return 2


def _thumbnail_state(asset) -> str:
    if asset.preview_file:
        return "present"
    if not asset.preview_file_dataset_id:
        return "skipped"
    return "started"


def _asset(args) -> int:
    import uam
    import uam_config

    if not _configure_logging(uam, args):
        return 2
    out_path = _out_path(args)

    identity = None
    if args.asset_cmd in ("search", "generate-thumbnail"):
        if args.asset_version and not args.asset_id:
            sys.stderr.write("invalid --asset-version: requires --asset-id\n")
            return 2
        if args.asset_id:
            identity = uam.AssetIdentity(args.asset_id, args.asset_version or "1")
    elif args.asset_cmd != "create":
        identity = uam.AssetIdentity(args.asset_id, args.asset_version or "1")

    status = None
    if args.asset_cmd == "status":
        try:
            status = uam.AssetStatus.parse(args.status)
        except ValueError as e:
            sys.stderr.write(f"invalid --status: {e}\n")
            return 2

    meta_keys: list[str] = []
    if args.asset_cmd == "metadata" and args.metadata_cmd == "delete":
        meta_keys = _parse_meta_keys(args.meta)
        if not meta_keys:
            sys.stderr.write("invalid --meta: no metadata keys given\n")
            return 2

    command = f"asset {args.asset_cmd}"
    try:
        configuration = uam_config.Configuration.load_default()
        api = uam.Api(configuration, http_timeout=args.http_timeout)

        if args.asset_cmd == "search":
            assets = api.search_assets(identity, args.asset_name or None)
            if args.format == "json":
                _write_json(out_path, [a.to_response() for a in assets], pretty=True)
            else:
                lines = [
                    f"{a.identity.id}\t{a.identity.version}\t{a.name}\t{a.status}" for a in assets
                ]
                _write_lines(out_path, lines)
            return 0

        if args.asset_cmd == "get":
            asset = api.get_asset(identity)
            if asset is None:
                sys.stderr.write(f"{command} failed: asset not found: {identity}\n")
                return 1
            _write_json(out_path, asset.to_response(), pretty=True)
            return 0

        if args.asset_cmd == "create":
            created = api.create_asset(
                args.name,
                args.description,
                [Path(p) for p in args.data],
                publish=args.publish,
            )
            _write_json(out_path, created.to_dict(), pretty=True)
            return 0

        if args.asset_cmd == "download":
            written = api.download_asset(identity, args.download_dir)
            _write_json(out_path, {"files": [str(p) for p in written]}, pretty=True)
            return 0

        if args.asset_cmd == "status" and args.status_cmd == "set":
            api.set_asset_status(identity, status)
            _write_json(
                out_path, {"asset": identity.to_dict(), "status": str(status)}, pretty=True
            )
            return 0

        if args.asset_cmd == "metadata" and args.metadata_cmd == "upload":
            metadata = api.upload_asset_metadata(identity, Path(args.data))
            _write_json(out_path, {"asset": identity.to_dict(), "metadata": metadata}, pretty=True)
            return 0

        if args.asset_cmd == "metadata" and args.metadata_cmd == "delete":
            api.delete_asset_metadata(identity, meta_keys)
            _write_json(out_path, {"asset": identity.to_dict(), "deleted": meta_keys}, pretty=True)
            return 0

        if args.asset_cmd == "generate-thumbnail":
            assets = api.generate_asset_thumbnails(identity)
            rows = [
                {**a.identity.to_dict(), "thumbnail": _thumbnail_state(a)} for a in assets
            ]
            _write_json(out_path, rows, pretty=True)
            return 0
    except uam.AssetPipelineError as e:
        code = _report_failure(uam, command, e)
        if e.identity is not None:
            sys.stderr.write(f"partially created asset left behind: {e.identity} (step={e.step})\n")
        return code
    except (uam.UamError, OSError) as e:
        return _report_failure(uam, command, e)

    sys.stderr.write("unknown asset command\n")
    return 2


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "doctor":
        return _doctor(args)
    if args.cmd == "config":
        return _config(args)
    if args.cmd == "asset":
        return _asset(args)

    sys.stderr.write("unknown command\n")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
