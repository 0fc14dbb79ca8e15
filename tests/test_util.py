import pytest

from sqengine.ber import encode_oid
from sqengine.util import (
    SidGenerator,
    dump_buf,
    object_to_ip,
    object_to_string,
    oid_to_str,
)


def test_object_to_string_from_bytes_and_str():
    assert object_to_string(b"public") == "public"
    assert object_to_string("community") == "community"


def test_object_to_string_from_integer():
    assert object_to_string(7667) == "7667"


def test_object_to_string_size_limit():
    assert object_to_string(b"x" * 15, 16) == "x" * 15
    with pytest.raises(ValueError):
        object_to_string(b"x" * 16, 16)


@pytest.mark.parametrize("obj", [None, True, -5, 1.5, [b"a"], {b"a": 1}])
def test_object_to_string_rejects_other_types(obj):
    with pytest.raises(ValueError):
        object_to_string(obj)


def test_object_to_ip_valid():
    assert object_to_ip(b"255.255.255.252") == "255.255.255.252"
    assert object_to_ip("127.0.0.1") == "127.0.0.1"


@pytest.mark.parametrize("obj", [b"1.2.3", "1.2.3.256", "not-an-ip", "1.2.3.4.5.6.7.8.9", 12345])
def test_object_to_ip_invalid(obj):
    with pytest.raises(ValueError):
        object_to_ip(obj)


def test_dump_buf_empty():
    assert dump_buf(b"") == ""


def test_dump_buf_layout():
    out = dump_buf(b"AB")
    assert out.startswith("41 42")
    line = out.rstrip("\n")
    assert line[51:53] == "AB"
    assert out.endswith("\n")


def test_dump_buf_line_count_and_width():
    data = bytes(range(40))
    lines = dump_buf(data).splitlines()
    assert len(lines) == 3
    assert all(len(line) == 67 for line in lines)


def test_dump_buf_non_printable():
    assert dump_buf(b"\x00").rstrip("\n")[51] == "."


@pytest.mark.parametrize("oid", ["1.3.6.1.2.1.2.2.1.2.1001", "1.3.6.1.2.1.47.1.3.1.1.1.1.1954816511"])
def test_oid_to_str_round_trip(oid):
    assert oid_to_str(encode_oid(oid)) == oid


def test_oid_to_str_bad_input():
    assert oid_to_str(b"\x04\x00") == "oid-too-long"
    assert oid_to_str(b"") == "oid-too-long"


def test_sid_generator_increments():
    gen = SidGenerator(seed=1000)
    first = gen.next_sid()
    second = gen.next_sid()
    assert second == first + 1


def test_sid_generator_skips_zero():
    gen = SidGenerator(seed=0xFFFFFFFE)
    assert gen.next_sid() == 0xFFFFFFFF
    assert gen.next_sid() == 1


def test_sid_generator_default_seed_in_range():
    sid = SidGenerator().next_sid()
    assert 1 <= sid <= 0xFFFFFFFF