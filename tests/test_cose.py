import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from fido2.cose import CoseKey

from passkey_server import cose
from passkey_server.errors import MalformedResponse
from software_authenticator import cose_key_from_public_key, generate_private_key, sign

ALGORITHMS = [-7, -257, -8, -37, -38, -39]


def test_supported_algorithms_are_the_advertised_set():
    assert tuple(cose.SUPPORTED_ALGORITHMS) == (-7, -257, -8, -37, -38, -39)
    assert [cose.algorithm_name(alg) for alg in ALGORITHMS] == [
        "ES256",
        "RS256",
        "EdDSA",
        "PS256",
        "PS384",
        "PS512",
    ]
    assert cose.algorithm_name(-36) == "-36"


@pytest.mark.parametrize("alg", [-38, -39])
def test_pss_keys_are_registered_with_fido2(alg):
    assert CoseKey.for_alg(alg) is {-38: cose.PS384, -39: cose.PS512}[alg]


@pytest.mark.parametrize("alg", ALGORITHMS)
def test_verify_signature_per_algorithm(alg):
    private_key = generate_private_key(alg)
    cose_key = cose_key_from_public_key(private_key.public_key(), alg)
    message = b"authenticator data || client data hash"
    signature = sign(private_key, alg, message)

    assert cose_key[3] == alg
    assert cose.verify_signature(cose_key, message, signature)
    assert not cose.verify_signature(cose_key, message + b"!", signature)
    assert not cose.verify_signature(cose_key, message, b"\x00" * len(signature))


@pytest.mark.parametrize("alg", ALGORITHMS)
def test_parse_key_returns_fido2_key(alg):
    private_key = generate_private_key(alg)
    key = cose.parse_key(cose_key_from_public_key(private_key.public_key(), alg))
    assert isinstance(key, CoseKey)
    assert key.ALGORITHM == alg


def test_signature_from_another_key_is_rejected():
    signer = generate_private_key(-7)
    other = generate_private_key(-7)
    cose_key = cose_key_from_public_key(other.public_key(), -7)
    assert not cose.verify_signature(cose_key, b"msg", sign(signer, -7, b"msg"))


def test_pss_hash_must_match_algorithm():
    private_key = generate_private_key(-37)
    signature = sign(private_key, -38, b"msg")
    cose_key = cose_key_from_public_key(private_key.public_key(), -37)
    assert not cose.verify_signature(cose_key, b"msg", signature)


@pytest.mark.parametrize("alg, hash_alg", [(-38, hashes.SHA384()), (-39, hashes.SHA512())])
def test_pss_salt_must_be_max_length(alg, hash_alg):
    private_key = generate_private_key(alg)
    cose_key = cose_key_from_public_key(private_key.public_key(), alg)
    short_salt = private_key.sign(
        b"msg",
        padding.PSS(mgf=padding.MGF1(hash_alg), salt_length=hash_alg.digest_size),
        hash_alg,
    )
    assert not cose.verify_signature(cose_key, b"msg", short_salt)
    assert cose.verify_signature(cose_key, b"msg", sign(private_key, alg, b"msg"))


def test_unknown_algorithm_is_malformed():
    with pytest.raises(MalformedResponse):
        cose.parse_key({1: 2, 3: -36, -1: 3, -2: b"x", -3: b"y"})


def test_missing_algorithm_is_malformed():
    with pytest.raises(MalformedResponse):
        cose.parse_key({1: 2, -1: 1, -2: b"x", -3: b"y"})


def test_non_map_key_is_malformed():
    with pytest.raises(MalformedResponse):
        cose.parse_key([1, 2, 3])


def test_key_type_must_fit_algorithm():
    private_key = generate_private_key(-7)
    cose_key = cose_key_from_public_key(private_key.public_key(), -7)
    cose_key[3] = -257
    with pytest.raises(MalformedResponse):
        cose.parse_key(cose_key)


def test_truncated_rsa_key_is_malformed():
    cose_key = cose_key_from_public_key(generate_private_key(-257).public_key(), -257)
    del cose_key[-2]
    with pytest.raises(MalformedResponse):
        cose.parse_key(cose_key)


def test_point_not_on_curve_is_malformed():
    with pytest.raises(MalformedResponse):
        cose.parse_key({1: 2, 3: -7, -1: 1, -2: b"\x01" * 32, -3: b"\x02" * 32})


def test_wrong_curve_is_malformed():
    private_key = ec.generate_private_key(ec.SECP384R1())
    numbers = private_key.public_key().public_numbers()
    cose_key = {
        1: 2,
        3: -7,
        -1: 2,
        -2: numbers.x.to_bytes(48, "big"),
        -3: numbers.y.to_bytes(48, "big"),
    }
    with pytest.raises(MalformedResponse):
        cose.parse_key(cose_key)


def test_verify_with_certificate_key_checks_key_type():
    ec_key = generate_private_key(-7)
    with pytest.raises(MalformedResponse):
        cose.verify_with_certificate_key(ec_key.public_key(), -8, b"msg", b"sig")


def test_verify_with_certificate_key_rejects_unknown_algorithm():
    ec_key = generate_private_key(-7)
    with pytest.raises(MalformedResponse):
        cose.verify_with_certificate_key(ec_key.public_key(), -36, b"msg", b"sig")


@pytest.mark.parametrize("alg", ALGORITHMS)
def test_verify_with_certificate_key_per_algorithm(alg):
    private_key = generate_private_key(alg)
    signature = sign(private_key, alg, b"msg")
    assert cose.verify_with_certificate_key(private_key.public_key(), alg, b"msg", signature)
    assert not cose.verify_with_certificate_key(private_key.public_key(), alg, b"other", signature)
