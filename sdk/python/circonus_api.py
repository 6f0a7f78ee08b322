#!/usr/bin/env python3
"""
circonus_api — Python SDK for the Circonus check bundle API

Zero-dependency client library for the Circonus REST API (v2).
Works with Python 3.8+ using only the standard library.

Quick start:
    from circonus_api import CirconusAPI, CheckBundle, CheckBundleMetric

    api = CirconusAPI("my-api-token")
    bundles = api.check_bundles

    # Create a check bundle
    bundle = bundles.create(CheckBundle(
        display_name="example.com http",
        target="example.com",
        type="http",
        brokers=["/broker/1"],
        config={"url": "https://example.com/"},
        metrics=[CheckBundleMetric(name="duration", type="numeric", status="active")],
        period=60,
        timeout=10,
    ))
    print(f"Created {bundle.cid}")

    # Look it up again
    same = bundles.fetch_by_cid(bundle.cid)

    # Search
    for b in bundles.search("(active:1)"):
        print(b.cid, b.display_name)

API reference: https://login.circonus.com/resources/api/calls/check_bundle
"""

from __future__ import annotations

import http.client
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
)


__version__ = "1.0.0"

logger = logging.getLogger("circonus_api")

DEFAULT_API_URL = "https://api.circonus.com/v2"
DEFAULT_APP_NAME = "circonus-api-python"

IDType = int
CIDType = str
SearchQueryType = str
SearchFilterType = Dict[str, str]


def configure_logging(level: int = logging.INFO) -> None:
    """Send SDK log records to stderr. Intended for scripts and debugging."""
    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(asctime)s [%(levelno)s] [%(name)s %(process)d] %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(level)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CirconusError(Exception):
    """Base exception for everything raised by this SDK."""

    def __init__(self, message: str, status_code: int = 0, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConfigError(CirconusError):
    """Client configuration is incomplete (e.g. no API token)."""
    pass


class InvalidIdentifier(CirconusError):
    """A CID does not address a check bundle. No request was sent."""
    pass


class DecodeError(CirconusError):
    """Response body is not JSON or does not have the expected shape."""
    pass


class TransportError(CirconusError):
    """The underlying HTTP call failed."""
    pass


class APIError(TransportError):
    """HTTP or network failure reported by CirconusAPI."""
    pass


class NotFoundError(APIError):
    """Resource not found (404)."""
    pass


class AuthError(APIError):
    """Token missing, invalid or not allowed (401/403)."""
    pass


class ConflictError(APIError):
    """Conflicting change (409)."""
    pass


class RateLimitError(APIError):
    """Rate limited (429). Check retry_after."""

    def __init__(self, message: str, retry_after: float = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ValidationError(APIError):
    """Request rejected as invalid (400/422)."""
    pass


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

BASE_CHECK_BUNDLE_PATH = "/check_bundle"
_CID_PREFIX = BASE_CHECK_BUNDLE_PATH + "/"
_DIGITS = frozenset("0123456789")


def check_bundle_cid(bundle_id: IDType) -> CIDType:
    """Build the CID for a numeric check bundle id.

    >>> check_bundle_cid(1234)
    '/check_bundle/1234'
    """
    return f"{BASE_CHECK_BUNDLE_PATH}/{bundle_id}"


def is_check_bundle_cid(cid: Any) -> bool:
    """True if ``cid`` matches ``^/check_bundle/[0-9]+$``.

    >>> is_check_bundle_cid("/check_bundle/42")
    True
    >>> is_check_bundle_cid("/check_bundle/")
    False
    >>> is_check_bundle_cid("/check_bundle/42/../1")
    False
    """
    if not isinstance(cid, str) or not cid.startswith(_CID_PREFIX):
        return False
    digits = cid[len(_CID_PREFIX):]
    return bool(digits) and all(c in _DIGITS for c in digits)


def _validate_cid(cid: Any) -> CIDType:
    if not is_check_bundle_cid(cid):
        raise InvalidIdentifier(f"Invalid check bundle CID {cid!r}")
    return cid


# ---------------------------------------------------------------------------
# Wire decoding helpers
# ---------------------------------------------------------------------------


def _as_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise DecodeError(f"{name}: expected string, got {type(value).__name__}", body=value)
    return value


def _as_int(value: Any, name: str) -> int:
    # bool is an int subclass but never a valid wire integer
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{name}: expected integer, got {type(value).__name__}", body=value)
    return value


def _as_str_list(value: Any, name: str) -> List[str]:
    if not isinstance(value, list):
        raise DecodeError(f"{name}: expected array, got {type(value).__name__}", body=value)
    return [_as_str(item, f"{name}[{i}]") for i, item in enumerate(value)]


def _as_object(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"{name}: expected object, got {type(value).__name__}", body=value)
    return value


def _as_config(value: Any, name: str) -> Dict[str, str]:
    return {k: _as_str(v, f"{name}.{k}") for k, v in _as_object(value, name).items()}


def _as_metrics(value: Any, name: str) -> List["CheckBundleMetric"]:
    if not isinstance(value, list):
        raise DecodeError(f"{name}: expected array, got {type(value).__name__}", body=value)
    return [CheckBundleMetric.from_dict(item) for item in value]


_Decoder = Callable[[Any, str], Any]


def _decode_fields(obj: Any, table: Tuple[Tuple[str, str, _Decoder], ...], what: str) -> Dict[str, Any]:
    """Map wire keys to attribute values. Missing keys and nulls are skipped."""
    data = _as_object(obj, what)
    kwargs: Dict[str, Any] = {}
    for attr, wire, decode in table:
        value = data.get(wire)
        if value is not None:
            kwargs[attr] = decode(value, wire)
    return kwargs


def _loads(content: bytes) -> Any:
    try:
        return json.loads(content)
    except (ValueError, RecursionError) as e:
        raise DecodeError(f"Invalid JSON in response: {e}", body=content) from e


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

_METRIC_FIELDS: Tuple[Tuple[str, str, _Decoder], ...] = (
    ("name", "name", _as_str),
    ("type", "type", _as_str),
    ("units", "units", _as_str),
    ("status", "status", _as_str),
    ("tags", "tags", _as_str_list),
)

@dataclass
class CheckBundleMetric:
    """One telemetry stream emitted by a check."""
    name: str = ""
    type: str = ""
    units: str = ""
    status: str = ""
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "units": self.units,
            "status": self.status,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "CheckBundleMetric":
        return cls(**_decode_fields(obj, _METRIC_FIELDS, "metric"))


# (attribute, wire key, decoder); server-assigned fields are omitted when empty
_SERVER_FIELDS: Tuple[Tuple[str, str, _Decoder], ...] = (
    ("check_uuids", "_check_uuids", _as_str_list),
    ("checks", "_checks", _as_str_list),
    ("cid", "_cid", _as_str),
    ("created", "_created", _as_int),
    ("last_modified", "_last_modified", _as_int),
    ("last_modified_by", "_last_modifed_by", _as_str),
    ("reverse_connection_urls", "_reverse_connection_urls", _as_str_list),
)

_CONFIG_FIELDS: Tuple[Tuple[str, str, _Decoder], ...] = (
    ("brokers", "brokers", _as_str_list),
    ("config", "config", _as_config),
    ("display_name", "display_name", _as_str),
    ("metrics", "metrics", _as_metrics),
    ("metric_limit", "metric_limit", _as_int),
    ("notes", "notes", _as_str),
    ("period", "period", _as_int),
    ("status", "status", _as_str),
    ("tags", "tags", _as_str_list),
    ("target", "target", _as_str),
    ("timeout", "timeout", _as_int),
    ("type", "type", _as_str),
)


@dataclass
class CheckBundle:
    """A check bundle definition.

    Fields without a leading underscore on the wire are the configuration
    and are always sent. ``cid``, ``created``, ``last_modified``,
    ``last_modified_by``, ``check_uuids``, ``checks`` and
    ``reverse_connection_urls`` are assigned by the server.
    """
    display_name: str = ""
    target: str = ""
    type: str = ""
    status: str = ""
    period: int = 0
    timeout: int = 0
    metric_limit: int = 0
    notes: str = ""
    tags: List[str] = field(default_factory=list)
    brokers: List[str] = field(default_factory=list)
    config: Dict[str, str] = field(default_factory=dict)
    metrics: List[CheckBundleMetric] = field(default_factory=list)

    cid: CIDType = ""
    created: int = 0
    last_modified: int = 0
    last_modified_by: str = ""
    check_uuids: List[str] = field(default_factory=list)
    checks: List[str] = field(default_factory=list)
    reverse_connection_urls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation, ready for json.dumps."""
        out: Dict[str, Any] = {}
        for attr, wire, _ in _SERVER_FIELDS:
            value = getattr(self, attr)
            if value:
                out[wire] = list(value) if isinstance(value, list) else value
        out.update({
            "brokers": list(self.brokers),
            "config": dict(self.config),
            "display_name": self.display_name,
            "metrics": [m.to_dict() for m in self.metrics],
            "metric_limit": self.metric_limit,
            "notes": self.notes,
            "period": self.period,
            "status": self.status,
            "tags": list(self.tags),
            "target": self.target,
            "timeout": self.timeout,
            "type": self.type,
        })
        return out

    @classmethod
    def from_dict(cls, obj: Any) -> "CheckBundle":
        """Build a CheckBundle from decoded JSON. Raises DecodeError on bad shape."""
        return cls(**_decode_fields(obj, _SERVER_FIELDS + _CONFIG_FIELDS, "check bundle"))

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode()

    @classmethod
    def from_json(cls, content: bytes) -> "CheckBundle":
        return cls.from_dict(_loads(content))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class Transport(Protocol):
    """What CheckBundles needs from an HTTP client.

    Paths are relative to the API root and may carry a query string.
    Failures are raised, preferably as TransportError.
    """

    def get(self, path: str) -> bytes: ...

    def post(self, path: str, data: bytes) -> bytes: ...

    def put(self, path: str, data: bytes) -> bytes: ...

    def delete(self, path: str) -> bytes: ...


def _normalize_url(url: str) -> str:
    """
    >>> _normalize_url("api.circonus.com")
    'https://api.circonus.com/v2'
    >>> _normalize_url("https://circonus.example.org/api/v2/")
    'https://circonus.example.org/api/v2'
    """
    if "://" not in url:
        url = "https://" + url
    url = url.rstrip("/")
    if urllib.parse.urlparse(url).path == "":
        url += "/v2"
    return url


class CirconusAPI:
    """HTTP client for the Circonus API.

    Args:
        token_key: API token. Defaults to $CIRCONUS_API_TOKEN.
        token_app: App name registered for the token. Defaults to
            $CIRCONUS_API_APP, then "circonus-api-python".
        url: API root (e.g. "https://api.circonus.com/v2"). Defaults to
            $CIRCONUS_API_URL.
        timeout: Request timeout in seconds.
        debug: Also log request bodies and response sizes.
    """

    def __init__(
        self,
        token_key: Optional[str] = None,
        *,
        token_app: Optional[str] = None,
        url: Optional[str] = None,
        timeout: int = 30,
        debug: bool = False,
    ):
        self.token_key = token_key or os.environ.get("CIRCONUS_API_TOKEN", "")
        if not self.token_key:
            raise ConfigError("API token is required (pass token_key or set CIRCONUS_API_TOKEN)")
        self.token_app = token_app or os.environ.get("CIRCONUS_API_APP", DEFAULT_APP_NAME)
        self.url = _normalize_url(url or os.environ.get("CIRCONUS_API_URL", DEFAULT_API_URL))
        self.timeout = timeout
        self.debug = debug

    @property
    def check_bundles(self) -> "CheckBundles":
        return CheckBundles(self)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, data: Optional[bytes] = None) -> bytes:
        url = f"{self.url}{path}"
        headers = {
            "X-Circonus-Auth-Token": self.token_key,
            "X-Circonus-App-Name": self.token_app,
            "Accept": "application/json",
        }
        if data is not None:
            headers["Content-Type"] = "application/json"

        if self.debug and data is not None:
            logger.debug("%s %s %s", method, path, data.decode("utf-8", errors="replace"))
        else:
            logger.debug("%s %s", method, path)

        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                content = resp.read()
        except urllib.error.HTTPError as e:
            err = self._http_error(e)
            logger.error("%s %s failed: %s %s", method, path, e.code, err)
            raise err
        except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise APIError(f"{method} {path}: {e}") from e

        if self.debug:
            logger.debug("%s %s -> %d bytes", method, path, len(content))
        return content

    @staticmethod
    def _http_error(e: urllib.error.HTTPError) -> APIError:
        body_bytes = e.read()
        try:
            err_body = json.loads(body_bytes)
        except Exception:
            err_body = body_bytes.decode("utf-8", errors="replace") if body_bytes else None

        msg = str(err_body) if err_body else str(e.reason)
        if isinstance(err_body, dict):
            for k in ("message", "error"):
                if err_body.get(k):
                    msg = str(err_body[k])
                    break

        if e.code == 404:
            return NotFoundError(msg, status_code=404, body=err_body)
        if e.code in (401, 403):
            return AuthError(msg, status_code=e.code, body=err_body)
        if e.code == 409:
            return ConflictError(msg, status_code=409, body=err_body)
        if e.code == 429:
            retry = 0.0
            header = e.headers.get("Retry-After") if e.headers else None
            if header:
                try:
                    retry = float(header)
                except ValueError:
                    pass
            return RateLimitError(msg, retry_after=retry, status_code=429, body=err_body)
        if e.code in (400, 422):
            return ValidationError(msg, status_code=e.code, body=err_body)
        return APIError(msg, status_code=e.code, body=err_body)

    def get(self, path: str) -> bytes:
        return self._request("GET", path)

    def post(self, path: str, data: bytes) -> bytes:
        return self._request("POST", path, data)

    def put(self, path: str, data: bytes) -> bytes:
        return self._request("PUT", path, data)

    def delete(self, path: str) -> bytes:
        return self._request("DELETE", path)


# ---------------------------------------------------------------------------
# Check bundles
# ---------------------------------------------------------------------------


class CheckBundles:
    """Check bundle operations on top of any Transport.

    Holds nothing but the transport, so one instance can be shared freely.
    """

    def __init__(self, transport: Transport):
        self._transport = transport

    def fetch_by_id(self, bundle_id: IDType) -> CheckBundle:
        """Fetch a check bundle by numeric id."""
        return self.fetch_by_cid(check_bundle_cid(bundle_id))

    def fetch_by_cid(self, cid: CIDType) -> CheckBundle:
        """Fetch a check bundle by CID (e.g. "/check_bundle/1234")."""
        _validate_cid(cid)
        return CheckBundle.from_json(self._transport.get(cid))

    def search(self, query: SearchQueryType = "") -> List[CheckBundle]:
        """List check bundles matching a search query. Empty query lists all.

        See https://login.circonus.com/resources/api#searching
        """
        params: Dict[str, str] = {}
        if query:
            params["search"] = query
        return self._list(params)

    def filter_search(
        self,
        query: SearchQueryType,
        filters: Optional[Mapping[str, str]] = None,
    ) -> List[CheckBundle]:
        """List check bundles matching a search query and filter fields.

        Filters (e.g. {"f_tags_has": "env:prod"}) are only sent along with a
        non-empty query; with an empty query this lists all check bundles.
        See https://login.circonus.com/resources/api#filtering
        """
        params: Dict[str, str] = {}
        if query:
            params["search"] = query
            for name, value in (filters or {}).items():
                params[name] = value
        return self._list(params)

    def _list(self, params: Dict[str, str]) -> List[CheckBundle]:
        path = BASE_CHECK_BUNDLE_PATH
        if params:
            path += "?" + urllib.parse.urlencode(params)
        try:
            resp = self._transport.get(path)
        except TransportError as e:
            raise APIError(f"API call error: {e}", status_code=e.status_code, body=e.body) from e

        results = _loads(resp)
        if not isinstance(results, list):
            raise DecodeError(f"check bundle search: expected array, got {type(results).__name__}", body=results)
        return [CheckBundle.from_dict(item) for item in results]

    def create(self, bundle: CheckBundle) -> CheckBundle:
        """Create a check bundle. Returns the server's copy, including its CID."""
        return CheckBundle.from_json(self._transport.post(BASE_CHECK_BUNDLE_PATH, bundle.to_json()))

    def update(self, bundle: CheckBundle) -> CheckBundle:
        """Replace the configuration of an existing check bundle."""
        _validate_cid(bundle.cid)
        return CheckBundle.from_json(self._transport.put(bundle.cid, bundle.to_json()))

    def delete(self, bundle: CheckBundle) -> bool:
        """Delete a check bundle by its CID. Returns True; failures are raised."""
        return self.delete_by_cid(bundle.cid)

    def delete_by_cid(self, cid: CIDType) -> bool:
        """Delete a check bundle. Returns True; failures are raised."""
        _validate_cid(cid)
        self._transport.delete(cid)
        logger.info("Deleted check bundle %s", cid)
        return True
