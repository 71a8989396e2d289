"""
Random sequences of overlapping observations must keep every cluster
well formed after each call.
"""

import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import assert_invariants, at
from db_models import IdentifyRequest
from identity import identify

EMAILS = ["a@x.com", "b@x.com", "c@x.com", "d@x.com", "e@x.com", "f@x.com"]
PHONES = ["100", "200", "300", "400", "500", "600"]


def random_observation(rng):
    email = rng.choice(EMAILS + [None, None])
    phone = rng.choice(PHONES + [None, None])
    if email is None and phone is None:
        email = rng.choice(EMAILS)
    return IdentifyRequest(email=email, phoneNumber=phone)


@pytest.mark.parametrize("seed_value", [1, 7, 42, 1234, 9001])
def test_random_sequences_keep_invariants(db_path, contacts, seed_value):
    rng = random.Random(seed_value)

    for step in range(60):
        observation = random_observation(rng)
        response = identify(observation, db_name=db_path, now=at(step))

        rows = contacts()
        assert_invariants(rows)
        assert rows[response.primaryContactId].is_primary

        # resubmitting is a read-only no-op
        again = identify(observation, db_name=db_path, now=at(step))
        assert again == response
        assert contacts() == rows


def test_concurrent_requests_converge(db_path, contacts):
    rng = random.Random(5)
    observations = [random_observation(rng) for _ in range(80)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda obs: identify(obs, db_name=db_path), observations))

    rows = contacts()
    assert_invariants(rows)
    for observation in observations:
        response = identify(observation, db_name=db_path)
        assert response.primaryContactId in rows
    assert contacts() == rows
