#!/usr/bin/python3
"""
Unity Asset Manager helper.

Two layers live here:

  - `Client` talks to the Asset Manager REST endpoints. Every call is a single
    authenticated HTTP request; nothing is retried and the first failure is
    raised to the caller.
  - `Api` wraps a `Client` built from a saved configuration and composes the
    multi-call workflows (create + upload + publish, metadata upsert, etc.).

Requests are strictly sequential. There is no local cache and no rollback: a
pipeline that fails half-way leaves the remote asset in whatever state the last
successful call produced.
"""

import csv
import enum
import logging
import os
import re
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterable
from urllib.parse import quote

import jwt
import platformdirs
import requests

_VERSION = "0.2.0"

UNITY_SERVICES_BASE_URL = "https://services.unity.com/api"
UNITY_SERVICES_ORGANIZATION_BASE_URL = "https://services.api.unity.com"
UNITY_TOKEN_EXCHANGE_URL = "https://services.api.unity.com/auth/v1/token-exchange"
ASSETS_API_URL = f"{UNITY_SERVICES_BASE_URL}/assets/v1"
ORGANIZATION_ASSETS_API_URL = f"{UNITY_SERVICES_ORGANIZATION_BASE_URL}/assets/v1"

DEFAULT_CONNECT_TIMEOUT_S = 30.0
DEFAULT_REQUEST_TIMEOUT_S = 30.0
DEFAULT_TRANSFER_TIMEOUT_S = 120.0

SEARCH_PAGE_SIZE = 50
DEFAULT_PRIMARY_TYPE = "3D Model"
SOURCE_DATASET_NAME = "Source"
METADATA_FIELD_TYPE = "text"
THUMBNAIL_WORKFLOW = "thumbnail-generator"

_TOKEN_REFRESH_MARGIN_S = 60
_DOWNLOAD_CHUNK_SIZE = 64 * 1024
_ERROR_TEXT_LIMIT = 500
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("uam")


def configure_logging(level="WARNING", force=False) -> None:
    """
    Route this module's log records to stderr at `level`.

    Calling it again only changes the level unless `force` is set, in which case
    the handler is replaced (useful when stderr was swapped, e.g. under pytest).
    """
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if not isinstance(numeric, int):
            raise ValidationError(f"invalid log level: {level!r}")
        level = numeric

    ours = [h for h in logger.handlers if getattr(h, "_uam_handler", False)]
    if force:
        for handler in ours:
            logger.removeHandler(handler)
        ours = []
    if not ours:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._uam_handler = True
        logger.addHandler(handler)
    logger.setLevel(level)


_REDACTIONS = (
    (re.compile(r"(?i)\b(basic|bearer)\s+[A-Za-z0-9._~+/=-]+"), r"\1 [REDACTED]"),
    (
        re.compile(
            r"(?i)(\"?(?:access_?token|refresh_?token|client_?secret|password)\"?\s*[:=]\s*\"?)"
            r"[^\"&\s,}]+"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)([?&](?:sig|se|sp|signature|token|x-amz-signature|x-amz-credential"
            r"|x-goog-signature|x-goog-credential)=)[^&\s\"']+"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(text) -> str:
    """Mask credentials and signed-URL secrets before text reaches logs or stderr."""
    cooked = str(text if text is not None else "")
    for pattern, replacement in _REDACTIONS:
        cooked = pattern.sub(replacement, cooked)
    return cooked


class UamError(Exception):
    """Base class for every error raised by this module."""


class ConfigurationError(UamError):
    """Missing or unusable local configuration."""


class KeyringAccessError(ConfigurationError):
    """The OS credential vault could not be read or written."""


class ValidationError(UamError, ValueError):
    """Bad local input (files, CSV content, paths, option values)."""


class AssetStatusParseError(ValidationError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"failed to parse status value of {value!r}")


class TransportError(UamError):
    """The request never produced an HTTP response (connection, timeout, ...)."""

    def __init__(self, calling_func: str, cause: Exception):
        self.calling_func = calling_func
        super().__init__(
            f"called by: {calling_func} -- transport error: {redact_sensitive_text(cause)}"
        )


class ApiRequestError(UamError):
    """The service answered with an unexpected (non-2xx) status."""

    def __init__(self, calling_func: str, status_code: int, text: str = ""):
        self.calling_func = calling_func
        self.status_code = status_code
        self.text = redact_sensitive_text(text)[:_ERROR_TEXT_LIMIT]
        super().__init__(
            f"called by: {calling_func} -- last_status: {status_code} -- last_text: {self.text}"
        )


class AssetNotFoundError(UamError):
    def __init__(self, identity):
        self.identity = identity
        super().__init__(f"asset not found: {identity}")


class AssetPipelineError(UamError):
    """A step of a multi-call asset workflow failed; later steps were not attempted."""

    def __init__(self, message: str, *, step: str, identity=None, file=None):
        self.step = step
        self.identity = identity
        self.file = file
        super().__init__(message)

    @property
    def status_code(self) -> int | None:
        return getattr(self.__cause__, "status_code", None)


class NoSourceDatasetError(AssetPipelineError):
    def __init__(self, identity):
        super().__init__(
            f"no source dataset for asset {identity}",
            step="locate_source_dataset",
            identity=identity,
        )


class NoDownloadDirectoryError(UamError):
    pass


class DownloadError(UamError):
    """A downloaded file could not be written under the target directory."""

    def __init__(self, file_path: str, message: str):
        self.file_path = file_path
        super().__init__(f"failed to write {file_path}: {message}")


class AssetStatus(enum.Enum):
    DRAFT = "draft"
    IN_REVIEW = "inreview"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value) -> "AssetStatus":
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        try:
            return cls(raw)
        except ValueError:
            raise AssetStatusParseError(raw) from None


# The service owns the transition rules; this is only the order used by auto-publish.
PUBLISH_WORKFLOW = (AssetStatus.IN_REVIEW, AssetStatus.APPROVED, AssetStatus.PUBLISHED)


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "METADATA_UNSET"


# Asset.metadata is tri-state: METADATA_UNSET (omitted), None (explicit null), dict.
METADATA_UNSET = _Unset()


@dataclass(frozen=True)
class AssetIdentity:
    id: str
    version: str = "1"

    def __str__(self) -> str:
        return f"id={self.id}, version={self.version}"

    def to_dict(self) -> dict:
        return {"id": self.id, "version": self.version}


@dataclass
class Dataset:
    id: str
    name: str
    primary_type: str | None = None

    @classmethod
    def from_response(cls, payload: dict) -> "Dataset":
        return cls(
            id=str(payload.get("datasetId") or ""),
            name=str(payload.get("name") or ""),
            primary_type=payload.get("primaryType"),
        )

    def to_dict(self) -> dict:
        out = {"datasetId": self.id, "name": self.name}
        if self.primary_type is not None:
            out["primaryType"] = self.primary_type
        return out


# (attribute, wire name) for optional scalar/list fields omitted when None.
_ASSET_OPTIONAL_FIELDS = (
    ("description", "description"),
    ("tags", "tags"),
    ("system_tags", "systemTags"),
    ("preview_file", "previewFile"),
    ("preview_file_dataset_id", "previewFileDatasetId"),
    ("frozen", "isFrozen"),
)


@dataclass
class Asset:
    identity: AssetIdentity
    name: str
    primary_type: str = DEFAULT_PRIMARY_TYPE
    status: str = ""
    source_project_id: str = ""
    labels: list[str] = field(default_factory=list)
    project_ids: list[str] = field(default_factory=list)
    description: str | None = None
    tags: list[str] | None = None
    system_tags: list[str] | None = None
    preview_file: str | None = None
    preview_file_dataset_id: str | None = None
    frozen: bool | None = None
    datasets: list[Dataset] | None = None
    metadata: Any = METADATA_UNSET

    @classmethod
    def from_response(cls, payload: dict) -> "Asset":
        if not isinstance(payload, dict):
            raise ValidationError("asset payload must be a JSON object")
        try:
            identity = AssetIdentity(str(payload["assetId"]), str(payload["assetVersion"]))
        except KeyError as e:
            raise ValidationError(f"asset payload is missing {e}") from e

        datasets = payload.get("datasets")
        if "metadata" not in payload:
            metadata = METADATA_UNSET
        elif payload["metadata"] is None:
            metadata = None
        else:
            metadata = dict(payload["metadata"])

        def _opt_list(key):
            value = payload.get(key)
            return list(value) if value is not None else None

        return cls(
            identity=identity,
            name=str(payload.get("name") or ""),
            primary_type=str(payload.get("primaryType") or ""),
            status=str(payload.get("status") or ""),
            source_project_id=str(payload.get("sourceProjectId") or ""),
            labels=list(payload.get("labels") or []),
            project_ids=list(payload.get("projectIds") or []),
            description=payload.get("description"),
            tags=_opt_list("tags"),
            system_tags=_opt_list("systemTags"),
            preview_file=payload.get("previewFile"),
            preview_file_dataset_id=payload.get("previewFileDatasetId"),
            frozen=payload.get("isFrozen"),
            datasets=(
                [Dataset.from_response(d) for d in datasets] if datasets is not None else None
            ),
            metadata=metadata,
        )

    def to_response(self) -> dict:
        """Serialize back to the service's asset shape."""
        out = {
            "assetId": self.identity.id,
            "assetVersion": self.identity.version,
            "name": self.name,
            "primaryType": self.primary_type,
            "status": self.status,
            "sourceProjectId": self.source_project_id,
            "labels": list(self.labels),
            "projectIds": list(self.project_ids),
        }
        for attr, key in _ASSET_OPTIONAL_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                out[key] = list(value) if isinstance(value, list) else value
        if self.datasets is not None:
            out["datasets"] = [d.to_dict() for d in self.datasets]
        if self.metadata is not METADATA_UNSET:
            out["metadata"] = dict(self.metadata) if self.metadata is not None else None
        return out

    def to_update_request(self) -> dict:
        out = {"name": self.name, "primaryType": self.primary_type}
        if self.description is not None:
            out["description"] = self.description
        if self.metadata is not METADATA_UNSET:
            out["metadata"] = dict(self.metadata) if self.metadata is not None else None
        return out


@dataclass
class MetadataEntry:
    name: str
    value: str | None = None


@dataclass
class MetadataDefinition:
    name: str
    value_type: str = METADATA_FIELD_TYPE

    @classmethod
    def from_response(cls, payload: dict) -> "MetadataDefinition":
        return cls(
            name=str(payload.get("name") or ""),
            value_type=str(payload.get("type") or ""),
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.value_type}


@dataclass
class DownloadItem:
    file_path: str
    url: str


def read_metadata_entries(path) -> list[MetadataEntry]:
    """
    Read a two-column CSV (header `Name, Value`) into metadata entries.

    Header names are matched case-insensitively and spaces after delimiters are
    ignored. An empty value cell yields an entry whose value is None.
    """
    path = Path(path)
    entries: list[MetadataEntry] = []
    try:
        with open(path, newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh, skipinitialspace=True)
            columns = {(name or "").strip().lower(): name for name in (reader.fieldnames or [])}
            if "name" not in columns or "value" not in columns:
                raise ValidationError(f"{path}: expected a header with Name and Value columns")
            for row in reader:
                name = (row.get(columns["name"]) or "").strip()
                if not name:
                    raise ValidationError(f"{path}:{reader.line_num}: missing property name")
                value = row.get(columns["value"])
                value = value.strip() if value is not None else ""
                entries.append(MetadataEntry(name=name, value=value or None))
    except OSError as e:
        raise ValidationError(f"failed to read metadata file {path}: {e}") from e
    except csv.Error as e:
        raise ValidationError(f"CSV format parsing error in {path}: {e}") from e
    return entries


def collect_metadata(entries: Iterable[MetadataEntry]) -> dict[str, str]:
    """Later entries win; names whose final value is missing are dropped."""
    merged: dict[str, str | None] = {}
    for entry in entries:
        merged[entry.name] = entry.value
    return {k: v for k, v in merged.items() if v is not None}


def build_search_request(
    project_id: str,
    identity: AssetIdentity | None = None,
    name: str | None = None,
    token: str | None = None,
) -> dict:
    pagination = {
        "limit": SEARCH_PAGE_SIZE,
        "sortingField": "name",
        "sortingOrder": "Ascending",
    }
    if token:
        pagination["token"] = token

    body = {
        "projectIds": [project_id],
        "includeFields": {"assetFields": ["*"], "datasetFields": ["*"]},
        "pagination": pagination,
    }

    include = {}
    if identity is not None:
        include["assetId"] = {"type": "ExactMatch", "value": identity.id}
        include["assetVersion"] = {"type": "ExactMatch", "value": identity.version}
    if name:
        include["name"] = {"type": "WildcardMatch", "value": f"*{name}*"}
    if include:
        body["filter"] = {"include": include}
    return body


def resolve_download_directory(output_directory=None) -> Path:
    """
    Explicit directory (created if missing), else the OS downloads directory.
    """
    if output_directory is not None:
        target = Path(output_directory).expanduser()
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise NoDownloadDirectoryError(f"cannot use download directory {target}: {e}") from e
        return target

    downloads = platformdirs.user_downloads_path()
    if downloads is not None and Path(downloads).is_dir():
        return Path(downloads)
    raise NoDownloadDirectoryError("no download directory available")


def _safe_join(base: Path, relative: str) -> Path:
    rel = PurePosixPath(str(relative or "").replace("\\", "/"))
    if not rel.parts or rel.is_absolute() or ".." in rel.parts:
        raise ValidationError(f"refusing to write outside the download directory: {relative!r}")
    return base.joinpath(*rel.parts)


def _validate_data_files(paths: list[Path]) -> None:
    for p in paths:
        if not p.is_file():
            raise ValidationError(f"data file not found: {p}")


def _seg(value) -> str:
    return quote(str(value), safe="")


def _json_body(calling_func: str, resp):
    try:
        body = resp.json()
    except ValueError as e:
        raise ApiRequestError(
            calling_func, int(resp.status_code), f"invalid JSON in response body: {e}"
        ) from e
    if not isinstance(body, dict):
        raise ApiRequestError(
            calling_func,
            int(resp.status_code),
            f"expected a JSON object in response body, got {type(body).__name__}",
        )
    return body


class Client:
    """
    Lower-level HTTP client for the Asset Manager REST endpoints.

    Authentication is HTTP Basic with the service-account key id/secret on every
    request. `use_token_exchange=True` switches to the token-exchange endpoint
    and a cached bearer token instead.
    """

    def __init__(
        self,
        organization_id: str,
        project_id: str,
        environment_id: str,
        client_id: str | None,
        client_secret: str | None,
        *,
        session=None,
        http_timeout: tuple[float, float] | None = None,
        use_token_exchange: bool = False,
    ):
        if not organization_id:
            raise ConfigurationError("organization ID is not provided")
        if not project_id:
            raise ConfigurationError("project ID is not provided")
        if not environment_id:
            raise ConfigurationError("environment ID is not provided")
        if not client_id:
            raise ConfigurationError("client ID is not provided or it is invalid")
        if not client_secret:
            raise ConfigurationError("client secret is not provided or it is invalid")

        self._organization_id = organization_id
        self._project_id = project_id
        self._environment_id = environment_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._session = session if session is not None else requests.Session()
        self._http_timeout = tuple(
            http_timeout or (DEFAULT_CONNECT_TIMEOUT_S, DEFAULT_REQUEST_TIMEOUT_S)
        )
        self._transfer_timeout = (self._http_timeout[0], DEFAULT_TRANSFER_TIMEOUT_S)
        self._use_token_exchange = use_token_exchange
        self._access_token = ""

    @property
    def project_id(self) -> str:
        return self._project_id

    def __token_expiry__(self, token: str) -> bool:
        """True when the token is unreadable or expires within the refresh margin."""
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return True
        exp = claims.get("exp")
        if exp is None:
            return False
        return (float(exp) - time.time()) <= _TOKEN_REFRESH_MARGIN_S

    def login(self) -> str:
        """Exchange the service-account key for an access token (JWT)."""
        resp = self.__asset_query_helper__(
            "login",
            "post",
            UNITY_TOKEN_EXCHANGE_URL,
            base_url=None,
            params={"projectId": self._project_id, "environmentId": self._environment_id},
            authenticated=False,
            basic_auth=True,
        )
        token = str(_json_body("login", resp).get("accessToken") or "")
        if not token:
            raise ApiRequestError("login", int(resp.status_code), "response had no accessToken")
        self._access_token = token
        return token

    def __auth_kwargs__(self) -> dict:
        if not self._use_token_exchange:
            return {"auth": (self._client_id, self._client_secret)}
        if not self._access_token or self.__token_expiry__(self._access_token):
            logger.debug("refreshing access token")
            self.login()
        return {"headers": {"Authorization": f"Bearer {self._access_token}"}}

    def __asset_query_helper__(
        self,
        calling_func: str,
        method: str,
        endpoint: str,
        *,
        base_url: str | None = ASSETS_API_URL,
        params: dict | None = None,
        payload=None,
        data=None,
        headers: dict | None = None,
        timeout: tuple[float, float] | None = None,
        authenticated: bool = True,
        basic_auth: bool = False,
        allow_not_found: bool = False,
        stream: bool = False,
    ):
        """
        Issue one request and enforce the response contract.

        Returns the response on 2xx, None on 404 when `allow_not_found` is set,
        and raises ApiRequestError for any other status. `base_url=None` means
        `endpoint` is already an absolute (usually pre-signed) URL.
        """
        if base_url is None:
            url = endpoint
        else:
            url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        request_headers = {"cache-control": "no-cache", "User-Agent": f"uamcli/{_VERSION}"}
        kwargs = {}
        if authenticated:
            auth_kwargs = self.__auth_kwargs__()
            request_headers.update(auth_kwargs.get("headers", {}))
            if "auth" in auth_kwargs:
                kwargs["auth"] = auth_kwargs["auth"]
        elif basic_auth:
            kwargs["auth"] = (self._client_id, self._client_secret)
        if headers:
            request_headers.update(headers)
        if params is not None:
            kwargs["params"] = params
        if payload is not None:
            kwargs["json"] = payload
        if data is not None:
            kwargs["data"] = data
        if stream:
            kwargs["stream"] = True

        logger.debug("%s %s", method.upper(), redact_sensitive_text(url))
        try:
            resp = self._session.request(
                method=method.upper(),
                url=url,
                headers=request_headers,
                timeout=timeout or self._http_timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransportError(calling_func, e) from e

        status = int(resp.status_code)
        if 200 <= status < 300:
            return resp
        if allow_not_found and status == 404:
            logger.debug("%s: not found", calling_func)
            return None
        raise ApiRequestError(calling_func, status, getattr(resp, "text", "") or "")

    def _version_path(self, identity: AssetIdentity) -> str:
        return (
            f"projects/{_seg(self._project_id)}/assets/{_seg(identity.id)}"
            f"/versions/{_seg(identity.version)}"
        )

    def search_assets_page(
        self,
        identity: AssetIdentity | None = None,
        name: str | None = None,
        token: str | None = None,
    ) -> tuple[list[Asset], str]:
        """One page of search results plus the continuation token ("" when done)."""
        resp = self.__asset_query_helper__(
            "search_assets",
            "post",
            f"projects/{_seg(self._project_id)}/assets/search",
            payload=build_search_request(self._project_id, identity, name, token),
        )
        body = _json_body("search_assets", resp)
        assets = [Asset.from_response(a) for a in (body.get("assets") or [])]
        return assets, str(body.get("next") or "")

    def search_assets(
        self, identity: AssetIdentity | None = None, name: str | None = None
    ) -> list[Asset]:
        """Walk every page of a search; any failure discards what was collected."""
        assets: list[Asset] = []
        token = None
        pages = 0
        while True:
            batch, token = self.search_assets_page(identity, name, token)
            pages += 1
            assets.extend(batch)
            logger.debug("search page %d: %d assets", pages, len(batch))
            if not token:
                break
        logger.info("search returned %d assets in %d pages", len(assets), pages)
        return assets

    def get_asset(self, identity: AssetIdentity) -> Asset | None:
        resp = self.__asset_query_helper__(
            "get_asset",
            "get",
            self._version_path(identity),
            params={"includeFields": "*"},
            allow_not_found=True,
        )
        if resp is None:
            return None
        return Asset.from_response(_json_body("get_asset", resp))

    def create_asset_record(
        self,
        name: str,
        description: str | None = None,
        primary_type: str = DEFAULT_PRIMARY_TYPE,
    ) -> tuple[AssetIdentity, list[Dataset]]:
        payload = {"name": name, "primaryType": primary_type}
        if description is not None:
            payload["description"] = description
        resp = self.__asset_query_helper__(
            "create_asset",
            "post",
            f"projects/{_seg(self._project_id)}/assets",
            payload=payload,
        )
        body = _json_body("create_asset", resp)
        try:
            identity = AssetIdentity(str(body["assetId"]), str(body["assetVersion"]))
        except KeyError as e:
            raise ApiRequestError(
                "create_asset", int(resp.status_code), f"response is missing {e}"
            ) from e
        datasets = [Dataset.from_response(d) for d in (body.get("datasets") or [])]
        return identity, datasets

    def set_dataset_type(
        self, identity: AssetIdentity, dataset: Dataset, primary_type: str
    ) -> None:
        request = Dataset(id=dataset.id, name=dataset.name, primary_type=primary_type)
        self.__asset_query_helper__(
            "set_dataset_type",
            "patch",
            f"{self._version_path(identity)}/datasets/{_seg(dataset.id)}",
            base_url=ORGANIZATION_ASSETS_API_URL,
            payload=request.to_dict(),
        )

    def create_file(self, identity: AssetIdentity, dataset_id: str, path: Path) -> str:
        """Register a file under a dataset; returns its single-use upload URL."""
        path = Path(path)
        file_size = path.stat().st_size
        logger.debug("creating remote file %s (%d bytes)", path.name, file_size)
        resp = self.__asset_query_helper__(
            "create_file",
            "post",
            f"{self._version_path(identity)}/datasets/{_seg(dataset_id)}/files",
            payload={"filePath": path.name, "fileSize": file_size},
            timeout=self._transfer_timeout,
        )
        upload_url = str(_json_body("create_file", resp).get("uploadUrl") or "")
        if not upload_url:
            raise ApiRequestError("create_file", int(resp.status_code), "response had no uploadUrl")
        return upload_url

    def upload_file_content(self, upload_url: str, path: Path) -> None:
        """Stream the file as the body of a PUT to a pre-signed URL. One shot."""
        path = Path(path)
        file_size = path.stat().st_size
        with open(path, "rb") as fh:
            self.__asset_query_helper__(
                "upload_file_content",
                "put",
                upload_url,
                base_url=None,
                data=fh,
                headers={"x-ms-blob-type": "BlockBlob", "Content-Length": str(file_size)},
                timeout=self._transfer_timeout,
                authenticated=False,
            )

    def finalize_file_upload(self, identity: AssetIdentity, file_name: str) -> None:
        self.__asset_query_helper__(
            "finalize_file_upload",
            "post",
            f"{self._version_path(identity)}/files/{_seg(file_name)}/finalize",
            headers={"accept": "application/json"},
            timeout=self._transfer_timeout,
        )

    def create_asset(
        self,
        name: str,
        description: str | None = None,
        data_files: Iterable = (),
    ) -> AssetIdentity:
        """
        Create an asset and upload `data_files` into its "Source" dataset.

        Steps run in order and the first failure aborts the rest. Nothing is
        rolled back: a failure after the first step leaves a partially populated
        asset behind, reported through `AssetPipelineError.identity`.
        """
        files = [Path(p) for p in data_files]
        _validate_data_files(files)

        step = "create_asset"
        identity = None
        current = None
        try:
            identity, datasets = self.create_asset_record(name, description)
            logger.info("created asset %s", identity)

            source = next((d for d in datasets if d.name == SOURCE_DATASET_NAME), None)
            if source is None:
                raise NoSourceDatasetError(identity)
            logger.debug("source dataset for %s is %s", identity, source.id)

            step = "set_dataset_type"
            self.set_dataset_type(identity, source, DEFAULT_PRIMARY_TYPE)

            for current in files:
                step = "create_file"
                upload_url = self.create_file(identity, source.id, current)
                step = "upload_file"
                logger.info("uploading %s", current)
                self.upload_file_content(upload_url, current)
                step = "finalize_upload"
                self.finalize_file_upload(identity, current.name)
        except (ApiRequestError, TransportError, OSError) as e:
            raise AssetPipelineError(
                f"asset creation failed at {step}: {e}",
                step=step,
                identity=identity,
                file=current,
            ) from e
        return identity

    def update_asset(self, asset: Asset) -> None:
        """Send the asset's name/description/type/metadata as a PATCH."""
        self.__asset_query_helper__(
            "update_asset",
            "patch",
            self._version_path(asset.identity),
            payload=asset.to_update_request(),
        )

    def set_asset_status(self, identity: AssetIdentity, status) -> None:
        status = AssetStatus.parse(status)
        self.__asset_query_helper__(
            "set_asset_status",
            "patch",
            f"{self._version_path(identity)}/status/{status}",
        )

    def get_asset_download_urls(self, identity: AssetIdentity) -> list[DownloadItem]:
        resp = self.__asset_query_helper__(
            "get_asset_download_urls", "get", f"{self._version_path(identity)}/download-urls"
        )
        body = _json_body("get_asset_download_urls", resp)
        return [
            DownloadItem(file_path=str(f.get("filePath") or ""), url=str(f.get("url") or ""))
            for f in (body.get("files") or [])
        ]

    def download_file(self, item: DownloadItem, output_directory=None) -> Path:
        target_dir = resolve_download_directory(output_directory)
        target = _safe_join(target_dir, item.file_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(item.file_path, str(e)) from e
        logger.info("downloading %s to %s", item.file_path, target)

        resp = self.__asset_query_helper__(
            "download_file",
            "get",
            item.url,
            base_url=None,
            timeout=self._transfer_timeout,
            authenticated=False,
            stream=True,
        )
        tmp_path = None
        try:
            tmp_fh = tempfile.NamedTemporaryFile(
                mode="wb", delete=False, dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
            )
            tmp_path = Path(tmp_fh.name)
            with tmp_fh:
                for chunk in resp.iter_content(chunk_size=_DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        tmp_fh.write(chunk)
            os.replace(tmp_path, target)
        except requests.RequestException as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise TransportError("download_file", e) from e
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise DownloadError(item.file_path, str(e)) from e
        except Exception:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise
        finally:
            close = getattr(resp, "close", None)
            if callable(close):
                close()
        return target

    def download_all_asset_files(self, identity: AssetIdentity, output_directory=None) -> list[Path]:
        logger.info("downloading files for asset %s", identity)
        written: list[Path] = []
        for item in self.get_asset_download_urls(identity):
            written.append(self.download_file(item, output_directory))
        return written

    def get_metadata_definition(self, name: str) -> MetadataDefinition | None:
        resp = self.__asset_query_helper__(
            "get_metadata_definition",
            "get",
            f"organizations/{_seg(self._organization_id)}/templates/fields/{_seg(name)}",
            base_url=ORGANIZATION_ASSETS_API_URL,
            allow_not_found=True,
        )
        if resp is None:
            return None
        return MetadataDefinition.from_response(_json_body("get_metadata_definition", resp))

    def register_metadata_definition(self, name: str) -> None:
        """Register an organization-level field definition (always type text)."""
        self.__asset_query_helper__(
            "register_metadata_definition",
            "post",
            f"organizations/{_seg(self._organization_id)}/templates/fields",
            base_url=ORGANIZATION_ASSETS_API_URL,
            payload=MetadataDefinition(name=name).to_dict(),
        )

    def delete_metadata(self, identity: AssetIdentity, keys: list[str]) -> None:
        keys = [k for k in keys if k]
        if not keys:
            raise ValidationError("at least one metadata key is required")
        self.__asset_query_helper__(
            "delete_metadata",
            "delete",
            f"{self._version_path(identity)}/metadata",
            params={"keys": ",".join(keys)},
        )

    def start_thumbnail_generation(self, identity: AssetIdentity, dataset_id: str) -> None:
        self.__asset_query_helper__(
            "start_thumbnail_generation",
            "post",
            f"{self._version_path(identity)}/datasets/{_seg(dataset_id)}"
            f"/transformations/start/{THUMBNAIL_WORKFLOW}",
            base_url=ORGANIZATION_ASSETS_API_URL,
        )


class Api:
    """
    High-level asset operations.

    `configuration` is anything exposing organization_id, project_id,
    environment_id, client_id and client_secret (see uam_config.Configuration).
    The underlying Client is created on first use, so credential problems are
    reported before any network activity.
    """

    def __init__(
        self,
        configuration,
        *,
        session=None,
        http_timeout: tuple[float, float] | None = None,
        use_token_exchange: bool = False,
    ):
        self.configuration = configuration
        self._session = session
        self._http_timeout = http_timeout
        self._use_token_exchange = use_token_exchange
        self._client: Client | None = None

    @property
    def client(self) -> Client:
        if self._client is None:
            c = self.configuration
            self._client = Client(
                c.organization_id,
                c.project_id,
                c.environment_id,
                c.client_id,
                c.client_secret,
                session=self._session,
                http_timeout=self._http_timeout,
                use_token_exchange=self._use_token_exchange,
            )
        return self._client

    def search_assets(
        self, identity: AssetIdentity | None = None, name: str | None = None
    ) -> list[Asset]:
        return self.client.search_assets(identity, name)

    def get_asset(self, identity: AssetIdentity) -> Asset | None:
        logger.debug("retrieving asset %s", identity)
        return self.client.get_asset(identity)

    def set_asset_status(self, identity: AssetIdentity, status) -> None:
        status = AssetStatus.parse(status)
        logger.info("setting status of %s to %s", identity, status)
        self.client.set_asset_status(identity, status)

    def publish_asset(self, identity: AssetIdentity) -> None:
        """Walk InReview -> Approved -> Published, stopping at the first refusal."""
        for status in PUBLISH_WORKFLOW:
            try:
                self.set_asset_status(identity, status)
            except (ApiRequestError, TransportError) as e:
                raise AssetPipelineError(
                    f"publishing stopped at status {status}: {e}",
                    step=f"set_status:{status}",
                    identity=identity,
                ) from e

    def create_asset(
        self,
        name: str,
        description: str | None = None,
        data_files: Iterable = (),
        publish: bool = False,
    ) -> AssetIdentity:
        identity = self.client.create_asset(name, description, data_files)
        if publish:
            self.publish_asset(identity)
        return identity

    def download_asset(self, identity: AssetIdentity, output_directory=None) -> list[Path]:
        return self.client.download_all_asset_files(identity, output_directory)

    def upload_asset_metadata(self, identity: AssetIdentity, data_file_path) -> dict[str, str]:
        """
        Replace the asset's metadata with the name/value pairs of a CSV file.

        Property names unknown to the organization are registered as text
        fields first. The existing metadata is overwritten, not merged.
        """
        metadata = collect_metadata(read_metadata_entries(data_file_path))

        client = self.client
        asset = client.get_asset(identity)
        if asset is None:
            raise AssetNotFoundError(identity)

        for name in metadata:
            try:
                definition = client.get_metadata_definition(name)
            except (ApiRequestError, TransportError) as e:
                logger.warning("error while obtaining property definition for %s: %s", name, e)
                continue
            if definition is None:
                logger.info("registering metadata field %s", name)
                client.register_metadata_definition(name)

        asset.metadata = dict(metadata)
        client.update_asset(asset)
        return metadata

    def delete_asset_metadata(self, identity: AssetIdentity, keys: list[str]) -> None:
        client = self.client
        if client.get_asset(identity) is None:
            raise AssetNotFoundError(identity)
        client.delete_metadata(identity, keys)

    def generate_asset_thumbnails(self, identity: AssetIdentity | None = None) -> list[Asset]:
        """Start thumbnail generation for every matching asset that has no preview."""
        assets = self.client.search_assets(identity)
        for asset in assets:
            if asset.preview_file:
                continue
            if not asset.preview_file_dataset_id:
                logger.warning("asset %s has no preview dataset; skipping", asset.identity)
                continue
            logger.info("generating thumbnail for %s", asset.identity)
            self.client.start_thumbnail_generation(asset.identity, asset.preview_file_dataset_id)
        return assets
