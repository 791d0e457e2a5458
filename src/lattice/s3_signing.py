"""Legacy S3 v2 (HMAC-SHA1) request signing.

The string to sign is::

    METHOD \\n content-md5 \\n content-type \\n date \\n
    sorted x-amz-* lines (key:v1,v2 each followed by \\n)
    canonical path [? sorted subresources]
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence, Union
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit

S3_SUBRESOURCES = frozenset(
    {
        "acl",
        "location",
        "logging",
        "notification",
        "partNumber",
        "policy",
        "requestPayment",
        "torrent",
        "uploadId",
        "uploads",
        "versionId",
        "versioning",
        "versions",
        "response-content-type",
        "response-content-language",
        "response-expires",
        "response-cache-control",
        "response-content-disposition",
        "response-content-encoding",
        "website",
        "delete",
    }
)

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

HeaderValue = Union[str, Sequence[str]]


def format_request_date(when: datetime) -> str:
    """RFC 1123 date in UTC, e.g. ``Mon, 02 Jan 2006 15:04:05 UTC``.

    Naive datetimes are taken to be UTC already.
    """
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    when = when.astimezone(timezone.utc)
    return (
        f"{_WEEKDAYS[when.weekday()]}, {when.day:02d} {_MONTHS[when.month - 1]} "
        f"{when.year:04d} {when.hour:02d}:{when.minute:02d}:{when.second:02d} UTC"
    )


@dataclass
class SignedRequest:
    """A request ready to send: final URL and headers including auth."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)


def _values(value: HeaderValue) -> list[str]:
    if isinstance(value, str):
        return [value]
    return list(value)


def string_to_sign(
    method: str,
    canonical_path: str,
    headers: Mapping[str, HeaderValue],
    params: Iterable[tuple[str, str]] = (),
) -> str:
    """Build the canonical v2 string for a request.

    Args:
        method: HTTP method, upper case.
        canonical_path: Decoded URL path, bucket first.
        headers: Request headers; names are matched case-insensitively.
        params: Query parameters. Only S3 subresources are signed. An
            ``Expires`` parameter replaces the date (pre-signed URLs).
    """
    md5 = ""
    content_type = ""
    date = ""
    has_amz_date = False
    amz_lines: list[str] = []

    for name, value in headers.items():
        key = name.lower()
        values = _values(value)
        if key == "content-md5":
            md5 = values[0]
        elif key == "content-type":
            content_type = values[0]
        elif key == "date":
            date = values[0]
        elif key.startswith("x-amz-"):
            amz_lines.append(f"{key}:{','.join(values)}")
            if key == "x-amz-date":
                has_amz_date = True

    if has_amz_date:
        date = ""

    amz = ""
    if amz_lines:
        amz = "\n".join(sorted(amz_lines)) + "\n"

    params = list(params)
    for key, value in params:
        if key == "Expires":
            date = value

    subresources = []
    for key, value in params:
        if key in S3_SUBRESOURCES:
            subresources.append(key if value == "" else f"{key}={value}")
    if subresources:
        canonical_path = canonical_path + "?" + "&".join(sorted(subresources))

    return f"{method}\n{md5}\n{content_type}\n{date}\n{amz}{canonical_path}"


def compute_signature(secret_key: str, payload: str) -> str:
    """Base64 of HMAC-SHA1(secret_key, payload)."""
    digest = hmac.new(secret_key.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_v2(
    access_key: str,
    secret_key: str,
    method: str,
    url: str,
    headers: Mapping[str, HeaderValue] | None = None,
    request_time: datetime | None = None,
) -> SignedRequest:
    """Sign a request with the v2 scheme.

    ``Host`` and ``Date`` headers are set on the result. When the URL has an
    ``Expires`` query parameter the request is pre-signed: ``AWSAccessKeyId``
    and ``Signature`` are added to the query string instead of an
    ``Authorization`` header.

    Args:
        access_key: Access key id.
        secret_key: Secret used as the HMAC key.
        method: HTTP method.
        url: Path-style URL (``http://endpoint/bucket/key``).
        headers: Extra request headers to sign and send.
        request_time: Signing time, defaults to now.

    Returns:
        SignedRequest with the final URL and headers.
    """
    method = method.upper()
    when = request_time or datetime.now(timezone.utc)
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"

    signed_headers: dict[str, str] = {}
    for name, value in (headers or {}).items():
        signed_headers[name] = ",".join(_values(value))
    signed_headers["Host"] = host
    signed_headers["Date"] = format_request_date(when)

    params = parse_qsl(parts.query, keep_blank_values=True)
    presigned = any(key == "Expires" for key, _ in params)

    payload = string_to_sign(method, unquote(parts.path) or "/", signed_headers, params)
    signature = compute_signature(secret_key, payload)

    if presigned:
        params = [(k, v) for k, v in params if k not in ("AWSAccessKeyId", "Signature")]
        params.append(("AWSAccessKeyId", access_key))
        params.append(("Signature", signature))
        url = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))
    else:
        signed_headers["Authorization"] = f"AWS {access_key}:{signature}"

    return SignedRequest(method=method, url=url, headers=signed_headers)


def presign_url(
    access_key: str,
    secret_key: str,
    method: str,
    url: str,
    expires: int,
) -> str:
    """Return ``url`` pre-signed to be valid until the unix time ``expires``."""
    separator = "&" if urlsplit(url).query else "?"
    signed = sign_v2(access_key, secret_key, method, f"{url}{separator}Expires={expires}")
    return signed.url
