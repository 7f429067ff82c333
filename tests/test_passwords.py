from tokenward.service.passwords import Argon2PasswordHasher


def _hasher(time_cost=1):
    return Argon2PasswordHasher(time_cost=time_cost, memory_cost=1024)


def test_hash_and_verify():
    hasher = _hasher()
    stored = hasher.hash("Secr3t!pass")
    assert stored != "Secr3t!pass"
    assert hasher.verify("Secr3t!pass", stored)
    assert not hasher.verify("wrong", stored)


def test_hashes_are_salted():
    hasher = _hasher()
    assert hasher.hash("Secr3t!pass") != hasher.hash("Secr3t!pass")


def test_malformed_hash_verifies_false():
    hasher = _hasher()
    assert not hasher.verify("Secr3t!pass", "not-a-hash")
    assert hasher.needs_rehash("not-a-hash")


def test_dummy_verification_never_succeeds():
    assert _hasher().verify_dummy("anything") is False


def test_parameter_change_requests_rehash():
    stored = _hasher(time_cost=1).hash("Secr3t!pass")
    assert not _hasher(time_cost=1).needs_rehash(stored)
    assert _hasher(time_cost=2).needs_rehash(stored)
