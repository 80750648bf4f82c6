from datetime import datetime, timedelta, timezone

import pytest

from kvsession import DataError, compare_keys
from kvsession._store.keys import decode_key, encode_key, is_valid_key


def test_encoded_order_follows_key_order() -> None:
    when = datetime(2024, 5, 1, tzinfo=timezone.utc)
    ordered = [
        -1.5,
        0,
        2,
        10 ** 6,
        when,
        when + timedelta(seconds=1),
        "",
        "a",
        "a\x00",
        "a\x01",
        "b",
        b"",
        b"\x00",
        b"a",
        [],
        [1],
        [1, "a"],
        ["a"],
    ]
    encoded = [encode_key(key) for key in ordered]
    assert encoded == sorted(encoded)
    assert len(set(encoded)) == len(encoded)


def test_compare_keys_orders_across_types() -> None:
    assert compare_keys(1, "1") == -1
    assert compare_keys("b", "a") == 1
    assert compare_keys([1, 2], [1, 2]) == 0
    assert compare_keys(-0.0, 0) == 0
    assert compare_keys(b"z", [0]) == -1


def test_decode_restores_keys() -> None:
    assert decode_key(encode_key(3.0)) == 3
    assert isinstance(decode_key(encode_key(3.0)), int)
    assert decode_key(encode_key(1.5)) == 1.5
    assert decode_key(encode_key([1, "a", b"x\x00y"])) == [1, "a", b"x\x00y"]

    when = datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone(timedelta(hours=2)))
    restored = decode_key(encode_key(when))
    assert restored == when
    assert restored.tzinfo is not None


@pytest.mark.parametrize(
    "value",
    [None, True, False, float("nan"), datetime(2024, 1, 1), {"a": 1}, object()],
)
def test_invalid_keys(value) -> None:
    assert not is_valid_key(value)
    with pytest.raises(DataError):
        compare_keys(value, 1)
