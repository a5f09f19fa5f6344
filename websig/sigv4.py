"""
AWS Signature Version 4 header signing.

Signing runs as a pipeline of pure functions, each taking the output of the
previous one:

1. ``prepare`` normalizes a ``Request`` into a ``PreparedRequest``
2. ``build_canonical_request`` serializes it in AWS canonical form
3. ``build_string_to_sign`` binds the canonical request to a date and scope
4. ``derive_signing_key`` and ``calculate_signature`` produce the signature

``SigV4Signer`` runs the stages and returns the headers to attach to the
outgoing request. See:
https://docs.aws.amazon.com/IAM/latest/UserGuide/create-signed-request.html
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote, unquote, urlsplit

from .exceptions import RequestError, SignerConfigError
from .hashing import Hasher, Sha256Hasher
from .payload import PayloadSerializer, json_payload_serializer, to_bytes

logger = logging.getLogger(__name__)

Headers = Dict[str, str]
QueryParams = Tuple[Tuple[str, str], ...]

ALGORITHM = 'AWS4-HMAC-SHA256'
SCOPE_TERMINATOR = 'aws4_request'
UNSIGNED_PAYLOAD = 'UNSIGNED-PAYLOAD'

DEFAULT_REGION = 'eu-west-1'
DEFAULT_SERVICE = 'execute-api'
DEFAULT_CONTENT_TYPE = 'application/json'
DEFAULT_ACCEPT_TYPE = 'application/json'
DEFAULT_EXPECT_TYPE = '100-continue'

# Headers returned by SigV4Signer.sign(); anything without a value is left out.
OUTPUT_HEADERS = (
    'accept',
    'expect',
    'authorization',
    'content-type',
    'content-length',
    'x-amz-date',
    'x-amz-security-token',
)

_DEFAULT_PORTS = {'http': 80, 'https': 443}

# Always present in the canonical headers; callers may override but not drop them.
# An overridden x-amz-date becomes the signing timestamp.
_REQUIRED_HEADERS = frozenset({'host', 'x-amz-date'})


class Service(str, Enum):
    EXECUTE_API = 'execute-api'
    S3 = 's3'
    DYNAMODB = 'dynamodb'
    LAMBDA = 'lambda'
    IAM = 'iam'
    STS = 'sts'
    EC2 = 'ec2'


def _require(value: Any, name: str) -> None:
    if not isinstance(value, str) or not value:
        raise SignerConfigError(f"SigV4Signer requires a non-empty {name}")


@dataclass(frozen=True)
class SignerConfig:
    """Long-lived signer settings. Immutable once constructed."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    region: str = DEFAULT_REGION
    service: Union[str, Service] = DEFAULT_SERVICE
    default_content_type: Optional[str] = DEFAULT_CONTENT_TYPE
    default_accept_type: Optional[str] = DEFAULT_ACCEPT_TYPE
    default_expect_type: Optional[str] = DEFAULT_EXPECT_TYPE
    payload_serializer: PayloadSerializer = json_payload_serializer
    hasher: Hasher = field(default_factory=Sha256Hasher)

    def __post_init__(self) -> None:
        _require(self.access_key_id, 'access key ID')
        _require(self.secret_access_key, 'secret access key')
        if isinstance(self.service, Service):
            object.__setattr__(self, 'service', self.service.value)
        _require(self.region, 'region')
        _require(self.service, 'service')
        if self.session_token == '':
            object.__setattr__(self, 'session_token', None)
        if self.session_token is not None and not isinstance(self.session_token, str):
            raise SignerConfigError("Session token must be a string")
        if not callable(self.payload_serializer):
            raise SignerConfigError("Payload serializer must be callable")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> 'SignerConfig':
        """Build a config from the standard AWS environment variables.

        Keyword ``overrides`` take precedence over the environment.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {
            'access_key_id': env.get('AWS_ACCESS_KEY_ID'),
            'secret_access_key': env.get('AWS_SECRET_ACCESS_KEY'),
            'session_token': env.get('AWS_SESSION_TOKEN'),
        }
        region = env.get('AWS_REGION') or env.get('AWS_DEFAULT_REGION')
        if region:
            values['region'] = region
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class Request:
    """An outgoing HTTP request to sign.

    ``body`` is sent verbatim and wins over ``data``; ``data`` is passed through
    the configured payload serializer. An empty ``body`` still counts as a body.
    """

    method: str
    url: str
    headers: Mapping[str, Any] = field(default_factory=dict)
    params: Optional[Mapping[str, Any]] = None
    body: Optional[Union[str, bytes]] = None
    data: Any = None


@dataclass(frozen=True)
class PreparedRequest:
    """Normalized view of a ``Request``, created for a single signing call."""

    method: str
    host: str
    path: str
    query: QueryParams
    headers: Mapping[str, str]
    header_keys: Tuple[str, ...]
    payload: Optional[bytes]
    timestamp: datetime

    @property
    def signed_headers(self) -> str:
        return ';'.join(self.header_keys)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def _to_utc(sign_time: Optional[datetime]) -> datetime:
    if sign_time is None:
        return datetime.now(timezone.utc)
    if not isinstance(sign_time, datetime):
        raise RequestError(f"Sign time must be a datetime, not {type(sign_time).__name__}")
    if sign_time.tzinfo is None:
        return sign_time.replace(tzinfo=timezone.utc)
    return sign_time.astimezone(timezone.utc)


def amz_date(timestamp: datetime, short: bool = False) -> str:
    """Format ``timestamp`` as ``YYYYMMDDTHHMMSSZ``, or ``YYYYMMDD`` if ``short``.

    Naive datetimes are taken to be UTC.
    """
    ts = _to_utc(timestamp)
    date = f"{ts.year:04d}{ts.month:02d}{ts.day:02d}"
    if short:
        return date
    return f"{date}T{ts.hour:02d}{ts.minute:02d}{ts.second:02d}Z"


def _parse_amz_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, '%Y%m%dT%H%M%SZ').replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise RequestError(f"Malformed x-amz-date header {value!r}, expected YYYYMMDDTHHMMSSZ") from e


# ---------------------------------------------------------------------------
# Stage 1: normalize
# ---------------------------------------------------------------------------


def _split_url(url: str) -> Tuple[str, str, str]:
    """Return the Host header value, path and raw query string of ``url``."""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError as e:
        raise RequestError(f"Malformed URL {url!r}: {e}") from e
    if not parts.scheme or not hostname:
        raise RequestError(f"URL must be absolute and include a host: {url!r}")

    host = f"[{hostname}]" if ':' in hostname else hostname
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme):
        host = f"{host}:{port}"
    return host, parts.path or '/', parts.query


def _param_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _merge_query(query: str, params: Optional[Mapping[str, Any]]) -> QueryParams:
    merged: Dict[str, List[str]] = {}
    for pair in query.split('&'):
        if not pair:
            continue
        key, _, value = pair.partition('=')
        # Undecodable escapes survive as surrogates and are re-encoded byte for byte.
        key = unquote(key, errors='surrogateescape')
        merged.setdefault(key, []).append(unquote(value, errors='surrogateescape'))

    if params is not None:
        if not isinstance(params, Mapping):
            raise RequestError(f"Request params must be a mapping, not {type(params).__name__}")
        # Explicit params replace URL values of the same name.
        for key, value in params.items():
            key = str(key)
            if value is None:
                merged.pop(key, None)
            elif isinstance(value, (list, tuple)):
                merged[key] = [_param_value(v) for v in value]
            else:
                merged[key] = [_param_value(value)]

    return tuple(sorted((key, value) for key, values in merged.items() for value in values))


def _payload(config: SignerConfig, request: Request) -> Optional[bytes]:
    if request.body is not None:
        try:
            return to_bytes(request.body)
        except TypeError as e:
            raise RequestError(str(e)) from e
    if request.data is not None:
        return to_bytes(config.payload_serializer(request.data))
    return None


def prepare(config: SignerConfig, request: Request, sign_time: Optional[datetime] = None) -> PreparedRequest:
    """Merge default and caller headers, select the payload and fold query params."""
    if not isinstance(request.method, str) or not request.method:
        raise RequestError("Request method must be a non-empty string")
    if not isinstance(request.url, str):
        raise RequestError(f"Request URL must be a string, not {type(request.url).__name__}")

    host, path, query = _split_url(request.url)
    timestamp = _to_utc(sign_time)

    headers: Dict[str, str] = {'host': host}
    for name, default in (
        ('content-type', config.default_content_type),
        ('accept', config.default_accept_type),
        ('expect', config.default_expect_type),
    ):
        if default is not None:
            headers[name] = default
    headers['x-amz-date'] = amz_date(timestamp)

    payload = _payload(config, request)
    if payload is None:
        # A bodiless request carries no content type.
        headers.pop('content-type', None)

    for name, value in (request.headers or {}).items():
        name = str(name).lower()
        if value is None:
            if name in _REQUIRED_HEADERS:
                raise RequestError(f"Header {name!r} is required for signing and cannot be removed")
            headers.pop(name, None)
        else:
            headers[name] = value if isinstance(value, str) else _param_value(value)

    if headers['x-amz-date'] != amz_date(timestamp):
        # The signing timestamp follows a caller-supplied x-amz-date.
        timestamp = _parse_amz_date(headers['x-amz-date'])

    content_type = headers.get('content-type')
    if content_type is not None:
        headers['content-type'] = content_type.split(';', 1)[0].strip()

    return PreparedRequest(
        method=request.method.upper(),
        host=host,
        path=path,
        query=_merge_query(query, request.params),
        headers=MappingProxyType(headers),
        header_keys=tuple(sorted(headers)),
        payload=payload,
        timestamp=timestamp,
    )


# ---------------------------------------------------------------------------
# Stage 2: canonical request
# ---------------------------------------------------------------------------


def uri_encode(value: str) -> str:
    """Percent-encode everything except RFC 3986 unreserved characters."""
    return quote(value, safe='', errors='surrogateescape')


def canonical_uri(path: str) -> str:
    return '/'.join(uri_encode(segment) for segment in path.split('/'))


def canonical_query_string(query: QueryParams) -> str:
    return '&'.join(f"{uri_encode(key)}={uri_encode(value)}" for key, value in query)


def canonical_headers(headers: Mapping[str, str], header_keys: Tuple[str, ...]) -> str:
    # Values are trimmed and inner whitespace runs collapsed to a single space.
    return ''.join(f"{key}:{' '.join(headers[key].split())}\n" for key in header_keys)


def payload_hash(prepared: PreparedRequest, hasher: Hasher) -> str:
    if prepared.headers.get('x-amz-content-sha256') == UNSIGNED_PAYLOAD:
        return UNSIGNED_PAYLOAD
    return hasher.hash(prepared.payload if prepared.payload is not None else b'')


def build_canonical_request(prepared: PreparedRequest, hasher: Hasher) -> str:
    return '\n'.join([
        prepared.method,
        canonical_uri(prepared.path),
        canonical_query_string(prepared.query),
        canonical_headers(prepared.headers, prepared.header_keys),
        prepared.signed_headers,
        payload_hash(prepared, hasher),
    ])


# ---------------------------------------------------------------------------
# Stage 3: string to sign
# ---------------------------------------------------------------------------


def credential_scope(short_date: str, region: str, service: str) -> str:
    return '/'.join([short_date, region, service, SCOPE_TERMINATOR])


def build_string_to_sign(canonical_request: str, timestamp: datetime, scope: str, hasher: Hasher) -> str:
    return '\n'.join([
        ALGORITHM,
        amz_date(timestamp),
        scope,
        hasher.hash(canonical_request.encode('utf-8')),
    ])


# ---------------------------------------------------------------------------
# Stage 4: signature
# ---------------------------------------------------------------------------


def derive_signing_key(hasher: Hasher, secret_key: str, short_date: str, region: str, service: str) -> bytes:
    """Derive the scoped signing key. Every step keeps the raw HMAC bytes."""
    k_date = hasher.hmac(('AWS4' + secret_key).encode('utf-8'), short_date.encode('utf-8'))
    k_region = hasher.hmac(k_date, region.encode('utf-8'))
    k_service = hasher.hmac(k_region, service.encode('utf-8'))
    return hasher.hmac(k_service, SCOPE_TERMINATOR.encode('utf-8'))


def calculate_signature(hasher: Hasher, signing_key: bytes, string_to_sign: str) -> str:
    return hasher.hmac(signing_key, string_to_sign.encode('utf-8')).hex()


def build_authorization_header(access_key_id: str, scope: str, signed_headers: str, signature: str) -> str:
    return (
        f"{ALGORITHM} Credential={access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )


class SigV4Signer:
    """Computes SigV4 ``Authorization`` and companion headers for HTTP requests.

    A signer holds only its immutable ``SignerConfig``; ``sign`` may be called
    from any number of threads concurrently.
    """

    def __init__(
            self,
            access_key: str,
            secret_key: str,
            region: str = DEFAULT_REGION,
            service: Union[str, Service] = DEFAULT_SERVICE,
            token: Optional[str] = None,
            **options: Any
    ) -> None:
        self._config = SignerConfig(
            access_key_id=access_key,
            secret_access_key=secret_key,
            session_token=token,
            region=region,
            service=service,
            **options
        )

    @classmethod
    def from_config(cls, config: SignerConfig) -> 'SigV4Signer':
        if not isinstance(config, SignerConfig):
            raise SignerConfigError(f"Expected a SignerConfig, got {type(config).__name__}")
        signer = cls.__new__(cls)
        signer._config = config
        return signer

    @property
    def config(self) -> SignerConfig:
        return self._config

    def __repr__(self) -> str:
        return f"SigV4Signer(access_key_id={self._config.access_key_id!r}, region={self._config.region!r}, service={self._config.service!r})"

    def serialize(self, data: Any) -> bytes:
        """Return the body bytes that ``sign`` hashes for a ``data`` payload."""
        return to_bytes(self._config.payload_serializer(data))

    def _sign_parts(self, request: Request, sign_time: Optional[datetime]) -> Tuple[PreparedRequest, str, str, str]:
        config = self._config
        prepared = prepare(config, request, sign_time)
        canonical_request = build_canonical_request(prepared, config.hasher)
        scope = credential_scope(amz_date(prepared.timestamp, short=True), config.region, config.service)
        string_to_sign = build_string_to_sign(canonical_request, prepared.timestamp, scope, config.hasher)
        logger.debug("Canonical request:\n%s", canonical_request)
        logger.debug("String to sign:\n%s", string_to_sign)
        return prepared, canonical_request, scope, string_to_sign

    def canonical_request(self, request: Request, sign_time: Optional[datetime] = None) -> str:
        return self._sign_parts(request, sign_time)[1]

    def string_to_sign(self, request: Request, sign_time: Optional[datetime] = None) -> str:
        return self._sign_parts(request, sign_time)[3]

    def sign(self, request: Request, sign_time: Optional[datetime] = None) -> Headers:
        """Create the signature headers for ``request``.

        The request is not modified. ``sign_time`` defaults to the current UTC
        time. The returned mapping holds only the headers in ``OUTPUT_HEADERS``
        that have a value.
        """
        config = self._config
        prepared, _, scope, string_to_sign = self._sign_parts(request, sign_time)

        signing_key = derive_signing_key(
            config.hasher,
            config.secret_access_key,
            amz_date(prepared.timestamp, short=True),
            config.region,
            config.service,
        )
        signature = calculate_signature(config.hasher, signing_key, string_to_sign)

        values = {
            'accept': prepared.headers.get('accept'),
            'expect': prepared.headers.get('expect'),
            'authorization': build_authorization_header(
                config.access_key_id, scope, prepared.signed_headers, signature
            ),
            'content-type': prepared.headers.get('content-type'),
            'content-length': prepared.headers.get('content-length'),
            'x-amz-date': prepared.headers['x-amz-date'],
            'x-amz-security-token': config.session_token,
        }
        return {name: values[name] for name in OUTPUT_HEADERS if values[name] is not None}

    def create_headers(
            self,
            method: str,
            url: str,
            headers: Optional[Mapping[str, Any]] = None,
            body: Optional[Union[str, bytes]] = None,
            *,
            params: Optional[Mapping[str, Any]] = None,
            data: Any = None,
            sign_time: Optional[datetime] = None
    ) -> Headers:
        request = Request(method=method, url=url, headers=headers or {}, params=params, body=body, data=data)
        return self.sign(request, sign_time)
