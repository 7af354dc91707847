"""
Cryptographic hashing utilities.

Provides the digest algorithms used for content binding and for the
to-be-signed digest, and the mapping from signature algorithm
identifiers to their message digest.

IMPORTANT DESIGN RULE:
- Canonicalization MUST occur outside this module.
- This module hashes bytes, and bytes only.
"""

import hashlib
from typing import Iterable, Union

from cryptography.hazmat.primitives import hashes

_HASHLIB_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}

# Azure API identifiers (NOT JOSE semantics)
_SIGNING_ALGORITHM_DIGESTS = {
    "RS256": "sha256",
    "PS256": "sha256",
    "RS384": "sha384",
    "PS384": "sha384",
    "RS512": "sha512",
    "PS512": "sha512",
}

_CRYPTOGRAPHY_HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def digest_algorithm_for(signing_algorithm: str) -> str:
    """Return the message digest name used by a signature algorithm."""
    try:
        return _SIGNING_ALGORITHM_DIGESTS[signing_algorithm]
    except KeyError:
        raise ValueError(
            f"Unsupported signing algorithm: {signing_algorithm}"
        ) from None


def cryptography_hash_for(signing_algorithm: str) -> hashes.HashAlgorithm:
    return _CRYPTOGRAPHY_HASHES[digest_algorithm_for(signing_algorithm)]()


def compute_digest(
    chunks: Union[bytes, bytearray, Iterable[Union[bytes, memoryview]]],
    algorithm: str,
) -> bytes:
    """
    Hash raw bytes, or an ordered sequence of byte chunks, as one stream.
    """
    if algorithm not in _HASHLIB_ALGORITHMS:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    hasher = _HASHLIB_ALGORITHMS[algorithm]()
    if isinstance(chunks, (bytes, bytearray)):
        hasher.update(chunks)
    else:
        for chunk in chunks:
            hasher.update(chunk)
    return hasher.digest()
