import base64

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from provenance.app.core.errors import SigningAuthorityError
from provenance.app.services.certificates import (
    chain_is_anchored,
    load_trust_anchors,
    normalize_azure_blob,
    order_chain,
    parse_certificate_chain,
)
from provenance.tests.fixtures.authority import certificate_authority
from provenance.tests.fixtures.timestamps import time_stamping_identity


def _der(cert):
    return cert.public_bytes(serialization.Encoding.DER)


def test_root_first_bundle_is_returned_leaf_first_without_root():
    ca = certificate_authority()
    chain = parse_certificate_chain(ca.pkcs7_base64().encode("ascii"))

    assert chain == [_der(ca.leaf), _der(ca.intermediate)]


def test_pem_bundle_is_accepted():
    ca = certificate_authority()
    pem = pkcs7.serialize_certificates(
        [ca.leaf, ca.root, ca.intermediate],
        serialization.Encoding.PEM,
    )
    assert parse_certificate_chain(pem) == [_der(ca.leaf), _der(ca.intermediate)]


def test_base64_with_line_breaks_is_normalized():
    ca = certificate_authority()
    encoded = ca.pkcs7_base64()
    wrapped = "\n".join(encoded[i:i + 64] for i in range(0, len(encoded), 64))

    assert normalize_azure_blob(wrapped.encode("ascii")) == base64.b64decode(encoded)


def test_single_certificate_is_accepted():
    ca = certificate_authority()
    blob = base64.b64encode(_der(ca.leaf))
    assert parse_certificate_chain(blob) == [_der(ca.leaf)]


def test_chain_without_root_finds_its_top():
    ca = certificate_authority()
    ordered = order_chain([ca.intermediate, ca.leaf])
    assert ordered == [ca.leaf, ca.intermediate]


def test_disconnected_bundle_is_rejected():
    ca = certificate_authority()
    with pytest.raises(SigningAuthorityError):
        order_chain([ca.root, ca.leaf])


def test_garbage_is_rejected():
    with pytest.raises(SigningAuthorityError):
        parse_certificate_chain(base64.b64encode(b"\x30\x03not-a-certificate"))


def test_trust_anchors_are_loaded_from_a_pem_bundle(tmp_path):
    ca = certificate_authority()
    bundle = tmp_path / "anchors.pem"
    bundle.write_bytes(ca.root.public_bytes(serialization.Encoding.PEM))

    anchors = load_trust_anchors(bundle)

    assert anchors == [ca.root]
    assert chain_is_anchored([ca.leaf, ca.intermediate], anchors)
    assert chain_is_anchored([ca.leaf, ca.intermediate, ca.root], anchors)


def test_chain_issued_elsewhere_is_not_anchored():
    ca = certificate_authority()
    foreign = time_stamping_identity()[0]
    assert not chain_is_anchored([ca.leaf, ca.intermediate], [foreign])
    assert not chain_is_anchored([], [ca.root])


@pytest.mark.parametrize("content", [b"", b"not a certificate"])
def test_unreadable_trust_anchors_fail_loudly(tmp_path, content):
    bundle = tmp_path / "anchors.pem"
    bundle.write_bytes(content)

    with pytest.raises(RuntimeError, match="Trust anchor"):
        load_trust_anchors(bundle)


def test_missing_trust_anchor_file_fails_loudly(tmp_path):
    with pytest.raises(RuntimeError, match="Trust anchor"):
        load_trust_anchors(tmp_path / "missing.pem")
