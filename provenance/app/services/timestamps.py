"""
RFC 3161 time-stamping.

The signature returned by the signing authority is countersigned by a
time-stamp authority (TSA):

    sha256(signature) -> TimeStampReq  -> POST application/timestamp-query
                      <- TimeStampResp (status + TimeStampToken)

The token, a CMS SignedData wrapping a TSTInfo, is embedded in the
provenance record unchanged. Its genTime becomes the recorded signing
time, so certificate validity is judged at a time the signer could not
choose.

verify_timestamp_token() checks a token offline: the message imprint,
the CMS message digest and the TSA signature over the signed attributes.
Anchoring the TSA certificate itself is left to the caller.

ASN.1 is handled by pyasn1 with the RFC 3161 / RFC 5652 modules from
pyasn1-modules; signatures are checked with cryptography.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Optional

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from pyasn1.codec.der import decoder, encoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ
from pyasn1_modules import rfc3161, rfc5652
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from provenance.app.core.config import Settings
from provenance.app.core.errors import (
    SigningTransportError,
    TimestampAuthorityError,
)

logger = logging.getLogger("provenance.timestamps")

QUERY_CONTENT_TYPE = "application/timestamp-query"
REPLY_CONTENT_TYPE = "application/timestamp-reply"

ID_SHA256 = univ.ObjectIdentifier("2.16.840.1.101.3.4.2.1")
ID_RSASSA_PSS = univ.ObjectIdentifier("1.2.840.113549.1.1.10")

_HASHES = {
    "2.16.840.1.101.3.4.2.1": hashes.SHA256,
    "2.16.840.1.101.3.4.2.2": hashes.SHA384,
    "2.16.840.1.101.3.4.2.3": hashes.SHA512,
}

# PKIStatus granted / grantedWithMods
_GRANTED = (0, 1)


class TimestampVerificationError(ValueError):
    """A time-stamp token is malformed or does not cover the signature."""


@dataclass(frozen=True)
class TimestampToken:
    token: bytes
    gen_time: datetime
    serial_number: int
    nonce: Optional[int] = None


# ----------------------------------------------------------------------
# Request / response codec
# ----------------------------------------------------------------------

def build_request(signature: bytes, nonce: int) -> bytes:
    """DER TimeStampReq over sha256(signature), asking for the TSA certificate."""
    request = rfc3161.TimeStampReq()
    request["version"] = "v1"
    request["messageImprint"]["hashAlgorithm"]["algorithm"] = ID_SHA256
    request["messageImprint"]["hashedMessage"] = hashlib.sha256(signature).digest()
    request["nonce"] = nonce
    request["certReq"] = True
    return encoder.encode(request)


def parse_response(data: bytes, signature: bytes) -> TimestampToken:
    """
    Decode a TimeStampResp and verify its token against the signature.

    Raises TimestampAuthorityError for a refusal or an unusable token.
    """
    try:
        response, rest = decoder.decode(data, asn1Spec=rfc3161.TimeStampResp())
    except PyAsn1Error as exc:
        raise TimestampAuthorityError(
            f"Timestamp response is not a DER TimeStampResp: {exc}"
        ) from exc
    if rest:
        raise TimestampAuthorityError("Trailing bytes after TimeStampResp")

    status = response["status"]["status"]
    if int(status) not in _GRANTED:
        raise TimestampAuthorityError(
            f"Timestamp authority refused the request ({status.prettyPrint()})"
        )
    if not response["timeStampToken"].isValue:
        raise TimestampAuthorityError("Timestamp response carries no token")

    try:
        return verify_timestamp_token(
            encoder.encode(response["timeStampToken"]), signature
        )
    except TimestampVerificationError as exc:
        raise TimestampAuthorityError(f"Unusable timestamp token: {exc}") from exc


# ----------------------------------------------------------------------
# Token verification
# ----------------------------------------------------------------------

def verify_timestamp_token(token: bytes, signature: bytes) -> TimestampToken:
    """
    Check that token is a TSA-signed time-stamp over this signature.

    Raises TimestampVerificationError on any mismatch or malformed input.
    """
    try:
        return _verify_token(token, signature)
    except PyAsn1Error as exc:
        raise TimestampVerificationError(
            f"Timestamp token is malformed: {exc}"
        ) from exc


def _verify_token(token: bytes, signature: bytes) -> TimestampToken:
    content_info, rest = decoder.decode(token, asn1Spec=rfc5652.ContentInfo())
    if rest:
        raise TimestampVerificationError("Trailing bytes after timestamp token")
    if content_info["contentType"] != rfc5652.id_signedData:
        raise TimestampVerificationError("Timestamp token is not CMS SignedData")

    signed_data, _ = decoder.decode(
        content_info["content"].asOctets(), asn1Spec=rfc5652.SignedData()
    )
    e_content = signed_data["encapContentInfo"]["eContent"]
    if not e_content.isValue:
        raise TimestampVerificationError("Timestamp token has no TSTInfo")
    tst_der = e_content.asOctets()
    tst_info, _ = decoder.decode(tst_der, asn1Spec=rfc3161.TSTInfo())

    imprint = tst_info["messageImprint"]
    expected = _digest(_hash_for(imprint["hashAlgorithm"]["algorithm"]), signature)
    if imprint["hashedMessage"].asOctets() != expected:
        raise TimestampVerificationError(
            "Timestamp message imprint does not match the signature"
        )

    signer_infos = signed_data["signerInfos"]
    if len(signer_infos) != 1:
        raise TimestampVerificationError(
            f"Timestamp token has {len(signer_infos)} signers, expected 1"
        )
    _check_signer(token, signer_infos[0], tst_der)

    nonce = tst_info["nonce"]
    return TimestampToken(
        token=token,
        gen_time=tst_info["genTime"].asDateTime.astimezone(timezone.utc),
        serial_number=int(tst_info["serialNumber"]),
        nonce=int(nonce) if nonce.isValue else None,
    )


def _check_signer(token: bytes, signer_info, content: bytes) -> None:
    hash_cls = _hash_for(signer_info["digestAlgorithm"]["algorithm"])

    signed_attrs = signer_info["signedAttrs"]
    if not signed_attrs.isValue:
        raise TimestampVerificationError("Timestamp signer has no signed attributes")

    message_digest = None
    for attribute in signed_attrs:
        if attribute["attrType"] == rfc5652.id_messageDigest:
            value, _ = decoder.decode(
                attribute["attrValues"][0].asOctets(), asn1Spec=univ.OctetString()
            )
            message_digest = value.asOctets()
    if message_digest != _digest(hash_cls, content):
        raise TimestampVerificationError(
            "TSTInfo does not match the signed message digest"
        )

    # Signed over the SET OF encoding, not the [0] IMPLICIT one
    signed_bytes = bytearray(encoder.encode(signed_attrs))
    signed_bytes[0] = 0x31

    certificate = _signer_certificate(token, signer_info)
    try:
        _verify_signature(
            certificate.public_key(), signer_info, bytes(signed_bytes), hash_cls
        )
    except InvalidSignature as exc:
        raise TimestampVerificationError(
            "Timestamp authority signature does not verify"
        ) from exc


def _signer_certificate(token: bytes, signer_info) -> x509.Certificate:
    try:
        certificates = pkcs7.load_der_pkcs7_certificates(token)
    except ValueError as exc:
        raise TimestampVerificationError(
            "Timestamp token certificates cannot be read"
        ) from exc

    sid = signer_info["sid"]
    for cert in certificates:
        if sid.getName() == "issuerAndSerialNumber":
            serial = int(sid["issuerAndSerialNumber"]["serialNumber"])
            if cert.serial_number == serial:
                return cert
        elif _key_identifier(cert) == sid["subjectKeyIdentifier"].asOctets():
            return cert
    raise TimestampVerificationError(
        "Timestamp token does not carry its signer certificate"
    )


def _verify_signature(public_key, signer_info, data: bytes, hash_cls) -> None:
    signature = signer_info["signature"].asOctets()
    if isinstance(public_key, rsa.RSAPublicKey):
        if signer_info["signatureAlgorithm"]["algorithm"] == ID_RSASSA_PSS:
            pad = padding.PSS(
                mgf=padding.MGF1(hash_cls()),
                salt_length=padding.PSS.AUTO,
            )
        else:
            pad = padding.PKCS1v15()
        public_key.verify(signature, data, pad, hash_cls())
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, data, ec.ECDSA(hash_cls()))
    else:
        raise TimestampVerificationError(
            f"Unsupported timestamp signer key {type(public_key).__name__}"
        )


def _key_identifier(cert: x509.Certificate) -> Optional[bytes]:
    try:
        return cert.extensions.get_extension_for_class(
            x509.SubjectKeyIdentifier
        ).value.digest
    except x509.ExtensionNotFound:
        return None


def _hash_for(oid) -> type:
    try:
        return _HASHES[str(oid)]
    except KeyError:
        raise TimestampVerificationError(
            f"Unsupported timestamp hash algorithm {oid}"
        ) from None


def _digest(hash_cls, data: bytes) -> bytes:
    hasher = hashes.Hash(hash_cls())
    hasher.update(data)
    return hasher.finalize()


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------

class RFC3161TimestampClient:
    """
    Async RFC 3161 client.

    Shares the signing client's httpx pool. Transport failures and 5xx
    answers are retried with bounded backoff; a refusal or an unusable
    token raises TimestampAuthorityError and is never retried.
    """

    def __init__(
        self,
        url: str,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        settings: Settings,
    ):
        self.url = str(url)
        self.client = http_client
        self.settings = settings

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
    ) -> Optional["RFC3161TimestampClient"]:
        if settings.time_authority_url is None:
            return None
        return cls(str(settings.time_authority_url), http_client, settings)

    async def timestamp(
        self,
        signature: bytes,
        *,
        correlation_id: Optional[str] = None,
    ) -> TimestampToken:
        """Obtain a verified time-stamp token over signature."""
        nonce = secrets.randbits(63)
        response = await self._post(build_request(signature, nonce), correlation_id)

        token = parse_response(response.content, signature)
        if token.nonce != nonce:
            raise TimestampAuthorityError(
                "Timestamp response nonce does not match the request"
            )

        logger.info(
            "signature_timestamped",
            extra={
                "trace_id": correlation_id,
                "gen_time": token.gen_time.isoformat(),
                "serial_number": token.serial_number,
            },
        )
        return token

    async def _post(
        self,
        body: bytes,
        correlation_id: Optional[str],
    ) -> httpx.Response:
        initial = self.settings.poll_initial_delay_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.signing_max_attempts),
            wait=wait_exponential(
                multiplier=initial,
                max=self.settings.poll_max_delay_seconds,
            ) + wait_random(0, initial),
            retry=retry_if_exception_type(
                (httpx.TransportError, httpx.HTTPStatusError)
            ),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.client.post(
                        self.url,
                        content=body,
                        headers={
                            "Content-Type": QUERY_CONTENT_TYPE,
                            "Accept": REPLY_CONTENT_TYPE,
                        },
                        timeout=30.0,
                    )
                    if response.status_code >= 500:
                        response.raise_for_status()
        except httpx.TransportError as exc:
            logger.error(
                "timestamp_transport_failed",
                extra={
                    "trace_id": correlation_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise SigningTransportError(
                f"Timestamp authority unreachable: {type(exc).__name__}: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise SigningTransportError(
                f"Timestamp authority returned HTTP {exc.response.status_code}"
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "timestamp_request_rejected",
                extra={
                    "trace_id": correlation_id,
                    "status_code": response.status_code,
                },
            )
            raise TimestampAuthorityError(
                f"Timestamp authority returned HTTP {response.status_code}"
            )
        return response
