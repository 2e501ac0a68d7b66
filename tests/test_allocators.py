"""Tests for game code and port allocation."""

import random

import pytest

from allocators import PortAllocator, generate_letter_code
from errors import PortUnavailableError


def test_letter_code_shape():
    code = generate_letter_code(length=4, rng=random.Random(1))
    assert len(code) == 4
    assert code.isalpha() and code.isupper()


def test_letter_code_skips_taken_codes():
    rng = random.Random(7)
    first = generate_letter_code(length=1, rng=random.Random(7))
    code = generate_letter_code(exclude={first}, length=1, rng=rng)
    assert code != first


def test_letter_code_space_exhausted():
    every = {chr(c) for c in range(ord("A"), ord("Z") + 1)}
    with pytest.raises(ValueError):
        generate_letter_code(exclude=every, length=1)


def test_port_in_range():
    allocator = PortAllocator(base=40000, span=10, in_use=set, can_bind=lambda port: True)
    for _ in range(20):
        assert 40000 <= allocator.allocate() < 40010


def test_port_skips_ports_in_use():
    allocator = PortAllocator(base=40000, span=3, in_use=lambda: {40000, 40001}, can_bind=lambda port: True)
    assert allocator.allocate() == 40002


def test_port_skips_unbindable_ports():
    allocator = PortAllocator(base=40000, span=2, in_use=set, can_bind=lambda port: port == 40001)
    assert allocator.allocate() == 40001


def test_port_retries_are_bounded():
    calls = []

    def can_bind(port):
        calls.append(port)
        return False

    allocator = PortAllocator(base=40000, span=100, max_attempts=5, in_use=set, can_bind=can_bind)
    with pytest.raises(PortUnavailableError):
        allocator.allocate()
    assert len(calls) <= 5


def test_invalid_port_range():
    with pytest.raises(ValueError):
        PortAllocator(base=80, span=10)
    with pytest.raises(ValueError):
        PortAllocator(base=65530, span=10)
