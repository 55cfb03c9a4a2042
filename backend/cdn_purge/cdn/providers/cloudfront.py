"""Amazon CloudFront invalidation adapter.

CloudFront takes an XML ``InvalidationBatch`` document per request, signed
with AWS Signature Version 4, and answers with the created invalidation's
``Id``. A request carries at most 3000 paths.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from urllib.parse import quote
from xml.sax.saxutils import escape

from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from cdn_purge.cdn.paths import FULL_PURGE_PATH
from cdn_purge.cdn.provider_config import CloudFrontConfig
from cdn_purge.cdn.providers.base import ProviderAdapter, classify_http_error
from cdn_purge.cdn.providers.registry import AdapterRegistry
from cdn_purge.cdn.types import InvalidationBatch, ProviderType
from cdn_purge.core.errors import (
    AuthenticationError,
    InvalidationError,
    ProviderError,
    RateLimitError,
    SerializationError,
)

CLOUDFRONT_API = "https://cloudfront.amazonaws.com/2020-05-31"
CLOUDFRONT_MAX_PATHS = 3000
SIGNING_SERVICE = "cloudfront"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}
# Characters XML 1.0 cannot carry even when escaped.
_XML_ILLEGAL = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")

_RATE_LIMIT_CODES = {"Throttling", "TooManyInvalidationsInProgress", "RequestLimitExceeded"}
_AUTH_CODES = {
    "AccessDenied",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "InvalidSignatureException",
    "IncompleteSignature",
    "MissingAuthenticationToken",
    "ExpiredToken",
}

INVALIDATION_BATCH_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<InvalidationBatch>
    <Paths>
        <Quantity>{quantity}</Quantity>
        <Items>
            {items}
        </Items>
    </Paths>
    <CallerReference>{caller_reference}</CallerReference>
</InvalidationBatch>"""


def escape_xml(value: str) -> str:
    """Entity-escape ``& < > " '``; everything else, Unicode included, passes through."""

    if _XML_ILLEGAL.search(value):
        raise SerializationError(f"Value contains characters XML cannot represent: {value!r}")
    return escape(value, _XML_ENTITIES)


def build_invalidation_xml(paths: list[str] | tuple[str, ...], caller_reference: str) -> str:
    if not paths:
        raise SerializationError("CloudFront invalidation batch has no paths")
    if len(paths) > CLOUDFRONT_MAX_PATHS:
        raise SerializationError(
            f"CloudFront accepts at most {CLOUDFRONT_MAX_PATHS} paths per invalidation, got {len(paths)}"
        )
    items = "\n            ".join(f"<Path>{escape_xml(path)}</Path>" for path in paths)
    return INVALIDATION_BATCH_TEMPLATE.format(
        quantity=len(paths),
        items=items,
        caller_reference=escape_xml(caller_reference),
    )


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(document: str, name: str) -> str | None:
    """First text of an element called ``name``, ignoring XML namespaces."""

    try:
        root = ET.fromstring(document)
    except ET.ParseError:
        return None
    for element in root.iter():
        if _local_name(element.tag) == name and element.text:
            return element.text.strip()
    return None


@AdapterRegistry.register(ProviderType.CLOUDFRONT)
class CloudFrontAdapter(ProviderAdapter):
    provider_name = "CloudFront"
    config: CloudFrontConfig

    def build_payload(self, batch: InvalidationBatch, caller_reference: str) -> str:
        paths = (FULL_PURGE_PATH,) if batch.purge_everything else batch.paths
        return build_invalidation_xml(paths, caller_reference)

    def endpoint(self) -> str:
        distribution = quote(self.config.distribution_id, safe="")
        return f"{CLOUDFRONT_API}/distribution/{distribution}/invalidation"

    def sign(self, method: str, url: str, body: bytes, headers: dict[str, str]) -> dict[str, str]:
        """Return ``headers`` plus the SigV4 ``Authorization`` and ``X-Amz-Date`` headers."""

        credentials = Credentials(
            self.config.access_key_id,
            self.config.secret_access_key.get_secret_value(),
            self.config.session_token.get_secret_value() if self.config.session_token else None,
        )
        aws_request = AWSRequest(method=method, url=url, data=body, headers=dict(headers))
        SigV4Auth(credentials, SIGNING_SERVICE, self.config.region).add_auth(aws_request)
        return dict(aws_request.headers.items())

    def send(self, batch: InvalidationBatch, caller_reference: str) -> str:
        body = self.build_payload(batch, caller_reference).encode("utf-8")
        url = self.endpoint()
        headers = self.sign(
            "POST", url, body, {"Content-Type": "application/xml; charset=utf-8"}
        )
        response = self._request("POST", url, data=body, headers=headers)
        if response.status_code in (200, 201):
            invalidation_id = _find_text(response.text, "Id")
            if not invalidation_id:
                raise ProviderError(
                    "CloudFront accepted the invalidation but returned no Id",
                    status_code=response.status_code,
                )
            return invalidation_id
        raise self._classify(response)

    def _classify(self, response) -> InvalidationError:
        code = _find_text(response.text, "Code")
        message = _find_text(response.text, "Message")
        detail = ": ".join(part for part in (code, message) if part) or None
        error = classify_http_error(self.provider_name, response, detail)
        if code in _RATE_LIMIT_CODES and not isinstance(error, RateLimitError):
            return RateLimitError(str(error), status_code=response.status_code)
        if code in _AUTH_CODES and not isinstance(error, AuthenticationError):
            return AuthenticationError(str(error), status_code=response.status_code)
        return error
