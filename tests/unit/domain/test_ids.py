"""Identity generation and validation tests."""

from __future__ import annotations

import pytest

from persistor.domain import ids


def test_ulid_is_deterministic_with_injected_clock_and_entropy() -> None:
    first = ids.generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=lambda n: b"\x00" * n)
    second = ids.generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=lambda n: b"\x00" * n)

    assert first == second
    assert len(first) == ids.ULID_LENGTH
    assert first.endswith("0" * 16)
    assert ids.ulid_timestamp_ms(first) == 1_700_000_000_000


def test_ulids_sort_by_timestamp() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000)
    later = ids.generate_ulid(timestamp_ms=2_000)
    assert earlier < later


def test_prefixed_ids_validate_against_their_prefix() -> None:
    object_id = ids.generate_object_id()
    event_id = ids.generate_event_id()

    ids.validate_object_id(object_id)
    ids.validate_event_id(event_id)
    assert object_id.startswith("obj-")
    assert ids.generate_context_id().startswith("ctx-")
    assert ids.generate_lane_id().startswith("lane-")
    assert ids.generate_session_id().startswith("ses-")

    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_event_id(object_id)


@pytest.mark.parametrize(
    "value",
    ["", "obj-", "obj-not-a-ulid", "obj-" + "I" * ids.ULID_LENGTH, "obj-" + "8" * 26, 42],
)
def test_invalid_object_ids_are_rejected(value: object) -> None:
    with pytest.raises(ValueError):
        ids.validate_object_id(value)  # type: ignore[arg-type]


@pytest.mark.parametrize("timestamp_ms", [-1, 1 << 48, True])
def test_out_of_range_timestamps_are_rejected(timestamp_ms: int) -> None:
    with pytest.raises(ValueError, match="timestamp_ms"):
        ids.generate_ulid(timestamp_ms=timestamp_ms)


def test_randbytes_must_return_exact_length() -> None:
    with pytest.raises(ValueError, match="exactly"):
        ids.generate_ulid(randbytes=lambda n: b"\x00" * (n - 1))
