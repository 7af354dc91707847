"""
Certificate chain handling for Azure Artifact Signing responses.

Azure returns the signing certificate as a PKCS#7 bundle. This module
normalizes the blob, extracts the X.509 certificates, and orders them
leaf first so they can be embedded as-is.

It also loads the configured trust anchors and decides whether an
embedded chain leads to one of them.
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import List, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from provenance.app.core.errors import SigningAuthorityError

logger = logging.getLogger("provenance.certificates")


def normalize_azure_blob(blob: bytes) -> bytes:
    """
    Normalize Azure output into bytes consumable by cryptography.

    Azure Artifact Signing may return:
    - Base64-encoded PKCS#7 (often with newlines)
    - PEM PKCS#7 or CERTIFICATE
    - Raw DER (rare)
    """
    data = blob.strip()

    if data.startswith(b"-----BEGIN"):
        return data

    if data[:1] == b"\x30":  # ASN.1 SEQUENCE, already DER
        return data

    try:
        decoded = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError):
        return data

    if decoded and decoded[0] == 0x30:
        return decoded
    return data


def extract_certificates(data: bytes) -> List[x509.Certificate]:
    """
    Extract X.509 certificates from PKCS#7 or standalone certificate blobs.
    """
    pem = data.startswith(b"-----BEGIN")

    # PKCS#7 (PEM or DER)
    try:
        if pem:
            certs = pkcs7.load_pem_pkcs7_certificates(data)
        else:
            certs = pkcs7.load_der_pkcs7_certificates(data)
        if certs:
            return list(certs)
    except ValueError:
        pass

    # Single X.509 certificate
    try:
        if pem:
            return [x509.load_pem_x509_certificate(data)]
        return [x509.load_der_x509_certificate(data)]
    except ValueError as exc:
        raise SigningAuthorityError(
            "Azure signingCertificate is not PKCS#7 or X.509 (PEM or DER)"
        ) from exc


def order_chain(certs: List[x509.Certificate]) -> List[x509.Certificate]:
    """
    Order certificates leaf first.

    The top of the chain is the self-signed root if one is present,
    otherwise the certificate whose issuer is not in the bundle. The
    self-signed root is not included in the result when other
    certificates exist; verifiers anchor trust themselves.
    """
    if not certs:
        raise SigningAuthorityError("Certificate bundle is empty")

    if len(certs) == 1:
        return list(certs)

    subjects = {cert.subject for cert in certs}
    issued_by = {}  # issuer name -> certificate it issued
    roots = []
    for cert in certs:
        if cert.subject == cert.issuer:
            roots.append(cert)
        else:
            issued_by[cert.issuer] = cert

    if roots:
        chain = [roots[0]]
    else:
        top = [c for issuer, c in issued_by.items() if issuer not in subjects]
        if not top:
            raise SigningAuthorityError("Certificate bundle has no chain top")
        chain = [top[0]]

    while len(chain) < len(certs):
        child = issued_by.get(chain[-1].subject)
        if child is None:
            raise SigningAuthorityError(
                "Certificate bundle does not form a single chain"
            )
        chain.append(child)

    chain.reverse()
    for cert in chain:
        logger.debug(
            "certificate_chain_entry",
            extra={
                "subject": cert.subject.rfc4514_string(),
                "issuer": cert.issuer.rfc4514_string(),
            },
        )

    if chain[-1].subject == chain[-1].issuer:
        chain = chain[:-1]
    return chain


def parse_certificate_chain(blob: bytes) -> List[bytes]:
    """Azure signingCertificate blob -> DER certificates, leaf first."""
    certs = extract_certificates(normalize_azure_blob(blob))
    return [
        cert.public_bytes(serialization.Encoding.DER)
        for cert in order_chain(certs)
    ]


# ----------------------------------------------------------------------
# Trust anchors
# ----------------------------------------------------------------------

def load_trust_anchors(path: Union[str, Path]) -> List[x509.Certificate]:
    """
    Load a PEM bundle of trusted root certificates.

    Raises RuntimeError when the bundle cannot be read or holds no
    certificate, so a misconfigured deployment fails at startup.
    """
    try:
        anchors = x509.load_pem_x509_certificates(Path(path).read_bytes())
    except (OSError, ValueError) as exc:
        logger.error(
            "trust_anchor_load_failed",
            extra={"path": str(path), "error": str(exc)},
        )
        raise RuntimeError(f"Trust anchor configuration failed: {exc}") from exc

    logger.info(
        "trust_anchors_loaded",
        extra={
            "count": len(anchors),
            "subjects": [a.subject.rfc4514_string() for a in anchors],
        },
    )
    return anchors


def chain_is_anchored(
    chain: Sequence[x509.Certificate],
    anchors: Sequence[x509.Certificate],
) -> bool:
    """
    True when a chain certificate is itself an anchor, or the top of the
    chain was issued by one. Links inside the chain are checked elsewhere.
    """
    if not chain:
        return False
    if any(cert in anchors for cert in chain):
        return True

    top = chain[-1]
    for anchor in anchors:
        if anchor.subject != top.issuer:
            continue
        try:
            top.verify_directly_issued_by(anchor)
        except (ValueError, TypeError, InvalidSignature):
            continue
        return True
    return False
