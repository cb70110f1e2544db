from __future__ import annotations

import re
import string

import pytest
from hypothesis import given
from hypothesis import strategies as st

from TrackSearch.errors import InvalidIdentifier, ValidationError
from TrackSearch.identity import derive_id, normalize_isrc, validate_isrc

ALPHANUMERIC = string.ascii_letters + string.digits
isrcs = st.text(alphabet=ALPHANUMERIC, min_size=12, max_size=12)
UUID_SHAPE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


@given(isrcs)
def test_derive_id_is_stable_and_uuid_shaped(isrc: str) -> None:
    first = derive_id(isrc)
    assert first == derive_id(isrc)
    assert UUID_SHAPE.fullmatch(first)


@given(isrcs)
def test_derive_id_ignores_letter_case(isrc: str) -> None:
    assert derive_id(isrc.lower()) == derive_id(isrc.upper())


@given(isrcs, isrcs)
def test_distinct_isrcs_get_distinct_ids(a: str, b: str) -> None:
    if a.upper() != b.upper():
        assert derive_id(a) != derive_id(b)


def test_derive_id_known_value_is_lowercase_hex() -> None:
    point_id = derive_id("USRC17607839")
    assert point_id == derive_id("usrc17607839")
    assert point_id == point_id.lower()


@pytest.mark.parametrize(
    "value",
    ["", "USRC1760783", "USRC176078390", "USRC-7607839", "USRC 7607839", "ÜSRC17607839", None, 123456789012],
)
def test_invalid_isrcs_are_rejected(value: object) -> None:
    assert not validate_isrc(value)
    with pytest.raises(InvalidIdentifier) as excinfo:
        derive_id(value)
    assert isinstance(excinfo.value, ValidationError)


def test_normalize_uppercases() -> None:
    assert normalize_isrc("usrc17607839") == "USRC17607839"
